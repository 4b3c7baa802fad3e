from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from eoty.config import get_settings, reset_settings_cache
from eoty.logging import get_logger
from eoty.service.activity import ActivityLog
from eoty.service.anomaly import AnomalyDetector
from eoty.service.auth import AuthService
from eoty.service.email import EmailService
from eoty.service.oauth import build_providers
from eoty.service.permissions import PermissionResolver
from eoty.service.schema_probe import SchemaProbe
from eoty.service.sessions import SessionIssuer
from eoty.service.tokens import TokenRegistry
from eoty.storage.memory import MemoryStore
from eoty.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore()
                self.store.create_chapter("Default Chapter", "Local")
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info("runtime_store_initialized", store_type=self.store.store_kind())
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.probe = SchemaProbe(self.store)
        self.tokens = TokenRegistry(self.store, self.settings)
        self.email = EmailService.from_settings(self.settings)
        self.detector = AnomalyDetector(self.store, self.settings, self.probe)
        self.activity = ActivityLog(self.store, self.probe, self.detector)
        self.sessions = SessionIssuer(self.settings)
        self.permissions = PermissionResolver(self.store, self.probe)
        self.providers = build_providers(self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            probe=self.probe,
            tokens=self.tokens,
            email=self.email,
            activity=self.activity,
            sessions=self.sessions,
            permissions=self.permissions,
            providers=self.providers,
        )

        logger.info(
            "runtime_initialized",
            store_type=self.store.store_kind(),
            mail_transport=self.email.transport.name,
            google_configured=self.providers["google"].configured,
            facebook_configured=self.providers["facebook"].configured,
            lockout_enabled=self.settings.account_lockout_enabled,
        )

    def close(self) -> None:
        try:
            self.store.close()
        except Exception as exc:
            logger.warning("runtime_store_close_failed", error=str(exc))


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime
