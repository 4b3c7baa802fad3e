from __future__ import annotations

import threading
from typing import Any, Dict, Optional, Set

from eoty.logging import get_logger
from eoty.storage.models import Capability

logger = get_logger(__name__)


class SchemaProbe:
    """Detect optional schema features once per process.

    The first call to :meth:`has` asks the store which optional tables and
    columns exist; the answer is cached for the life of the probe. A failing
    probe is treated as "nothing optional is present" so callers degrade
    instead of erroring.
    """

    def __init__(self, store: Any) -> None:
        self.store = store
        self._present: Optional[Set[str]] = None
        self._lock = threading.Lock()

    def _load(self) -> Set[str]:
        if self._present is not None:
            return self._present
        with self._lock:
            if self._present is None:
                try:
                    present = {str(c) for c in self.store.probe_capabilities()}
                except Exception as exc:
                    logger.warning(
                        "schema_probe_failed",
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    present = set()
                logger.info("schema_probe_complete", capabilities=sorted(present))
                self._present = present
        return self._present

    def has(self, capability: Capability | str) -> bool:
        key = capability.value if isinstance(capability, Capability) else str(capability)
        return key in self._load()

    def snapshot(self) -> Dict[str, bool]:
        present = self._load()
        return {c.value: c.value in present for c in Capability}
