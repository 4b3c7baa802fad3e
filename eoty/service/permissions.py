from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List

from eoty.logging import get_logger
from eoty.service.schema_probe import SchemaProbe
from eoty.storage.models import Capability, Role

logger = get_logger(__name__)


@dataclass
class EffectivePermissions:
    role: str
    permissions: List[str] = field(default_factory=list)


class PermissionResolver:
    """Project a role onto the permission catalog.

    Admins receive the whole catalog; other roles get their mapped keys. Any
    missing catalog table or store failure yields an empty set.
    """

    def __init__(self, store: Any, probe: SchemaProbe) -> None:
        self.store = store
        self.probe = probe

    def resolve(self, role: str) -> EffectivePermissions:
        if not self.probe.has(Capability.PERMISSION_CATALOG):
            return EffectivePermissions(role=role)
        try:
            if role == Role.ADMIN.value:
                keys = self.store.all_permission_keys()
            else:
                keys = self.store.role_permission_keys(role)
        except Exception as exc:
            logger.warning("permission_lookup_failed", role=role, error=str(exc))
            return EffectivePermissions(role=role)
        return EffectivePermissions(role=role, permissions=sorted(set(keys)))

    def has_permission(self, role: str, key: str) -> bool:
        return key in self.resolve(role).permissions
