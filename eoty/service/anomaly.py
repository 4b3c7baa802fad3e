from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from eoty.config import Settings
from eoty.logging import get_logger
from eoty.service.schema_probe import SchemaProbe
from eoty.storage.common import generate_uuid
from eoty.storage.models import (
    ActivityEvent,
    ActivityKind,
    AlertKind,
    AnomalyAlert,
    Capability,
    Severity,
)

logger = get_logger(__name__)


class AnomalyDetector:
    """Rules evaluated against the activity log right after each write.

    Three rules exist: many distinct origins for successful logins, a burst of
    failed logins, and a login from an origin other than the previous one.
    Alerts are keyed by ``(user, kind)``; an open alert newer than the dedup
    window is updated in place instead of duplicated.
    """

    def __init__(self, store: Any, settings: Settings, probe: SchemaProbe) -> None:
        self.store = store
        self.settings = settings
        self.probe = probe

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def evaluate(self, event: ActivityEvent) -> List[AnomalyAlert]:
        """Run every rule for ``event``; never raises."""
        if not event.user_id or not self.probe.has(Capability.ANOMALY_ALERTS):
            return []
        raised: List[AnomalyAlert] = []
        try:
            kind = getattr(event.kind, "value", event.kind)
            if kind == ActivityKind.LOGIN.value and event.success:
                alert = self._check_multiple_ips(event)
                if alert:
                    raised.append(alert)
                alert = self._check_suspicious_location(event)
                if alert:
                    raised.append(alert)
            if kind == ActivityKind.FAILED_LOGIN.value and not event.success:
                alert = self._check_failed_attempts(event)
                if alert:
                    raised.append(alert)
        except Exception as exc:
            logger.error(
                "anomaly_check_failed",
                user_id=event.user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        return raised

    def _check_multiple_ips(self, event: ActivityEvent) -> Optional[AnomalyAlert]:
        since = self._now() - timedelta(hours=24)
        origins = self.store.distinct_login_origins(event.user_id, since)
        if len(origins) <= self.settings.anomaly_multiple_ips_threshold:
            return None
        return self.create_or_update_alert(
            event.user_id,
            AlertKind.MULTIPLE_IPS,
            description=(
                f"User logged in from {len(origins)} different IP addresses "
                "in the last 24 hours"
            ),
            severity=Severity.MEDIUM,
            activity_data={"ipAddresses": origins},
        )

    def _check_failed_attempts(self, event: ActivityEvent) -> Optional[AnomalyAlert]:
        window = self.settings.anomaly_failed_attempts_window_minutes
        since = self._now() - timedelta(minutes=window)
        count = self.store.count_recent_failures(
            since=since, ip_address=event.ip_address, user_id=event.user_id
        )
        if count < self.settings.anomaly_failed_attempts_threshold:
            return None
        return self.create_or_update_alert(
            event.user_id,
            AlertKind.FAILED_ATTEMPTS,
            description=f"{count} failed login attempts in the last {window} minutes",
            severity=Severity.HIGH,
            activity_data={"attemptCount": count, "ipAddress": event.ip_address},
        )

    def _check_suspicious_location(self, event: ActivityEvent) -> Optional[AnomalyAlert]:
        if not event.ip_address:
            return None
        previous = self.store.latest_login_from_other_origin(event.user_id, event.ip_address)
        if not previous or not previous.location:
            return None
        return self.create_or_update_alert(
            event.user_id,
            AlertKind.SUSPICIOUS_LOCATION,
            description=(
                f"Login from new location. Previous: {previous.location}, "
                f"Current: {event.ip_address}"
            ),
            severity=Severity.MEDIUM,
            activity_data={
                "previousLocation": previous.location,
                "currentIP": event.ip_address,
            },
        )

    def create_or_update_alert(
        self,
        user_id: str,
        kind: AlertKind | str,
        *,
        description: str,
        severity: Severity | str = Severity.MEDIUM,
        activity_data: Optional[Dict[str, Any]] = None,
    ) -> AnomalyAlert:
        kind_value = getattr(kind, "value", kind)
        severity_value = getattr(severity, "value", severity)
        data = dict(activity_data or {})
        now = self._now()
        since = now - timedelta(minutes=self.settings.anomaly_dedup_window_minutes)
        existing = self.store.find_open_alert(user_id, kind_value, since)
        if existing:
            updated = self.store.update_alert(
                existing.id,
                description=description,
                severity=severity_value,
                activity_data=data,
            )
            logger.info(
                "anomaly_alert_updated", user_id=user_id, alert_type=kind_value
            )
            return updated or existing
        alert = AnomalyAlert(
            id=generate_uuid(),
            user_id=user_id,
            kind=kind_value,
            description=description,
            severity=severity_value,
            activity_data=data,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_alert(alert)
        logger.warning(
            "anomaly_alert_raised",
            user_id=user_id,
            alert_type=kind_value,
            severity=severity_value,
        )
        return alert
