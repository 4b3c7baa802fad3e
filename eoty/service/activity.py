from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from eoty.logging import get_logger
from eoty.service.anomaly import AnomalyDetector
from eoty.service.schema_probe import SchemaProbe
from eoty.storage.errors import CapabilityMissing
from eoty.storage.models import (
    ActivityEvent,
    ActivityKind,
    ActivityQuery,
    AnomalyAlert,
    Capability,
)

logger = get_logger(__name__)

LOOPBACK_ORIGINS = {"::1", "127.0.0.1", "::ffff:127.0.0.1"}


@dataclass
class DeviceInfo:
    device_type: str
    browser: str
    os: str


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """Derive coarse device, browser and OS labels by substring matching."""
    if not user_agent:
        return DeviceInfo(device_type="unknown", browser="unknown", os="unknown")
    ua = user_agent.lower()

    device_type = "desktop"
    if "mobile" in ua or "android" in ua:
        device_type = "mobile"
    elif "tablet" in ua or "ipad" in ua:
        device_type = "tablet"

    browser = "unknown"
    if "chrome" in ua and "edg" not in ua:
        browser = "chrome"
    elif "firefox" in ua:
        browser = "firefox"
    elif "safari" in ua and "chrome" not in ua:
        browser = "safari"
    elif "edg" in ua:
        browser = "edge"

    # first match wins; iPhone agents mention "Mac OS X" and land on macos
    os_name = "unknown"
    if "windows" in ua:
        os_name = "windows"
    elif "mac" in ua:
        os_name = "macos"
    elif "linux" in ua:
        os_name = "linux"
    elif "android" in ua:
        os_name = "android"
    elif "ios" in ua or "iphone" in ua or "ipad" in ua:
        os_name = "ios"

    return DeviceInfo(device_type=device_type, browser=browser, os=os_name)


def location_for(ip_address: Optional[str]) -> str:
    """Placeholder geolocation: loopback is ``Local``, everything else ``Unknown``."""
    if not ip_address:
        return "Local"
    candidate = ip_address.strip()
    if candidate in LOOPBACK_ORIGINS:
        return "Local"
    try:
        if ipaddress.ip_address(candidate).is_loopback:
            return "Local"
    except ValueError:
        pass
    return "Unknown"


class ActivityLog:
    """Append-only audit trail for auth-relevant actions.

    Writes never raise: a missing table or a failing store only produces a log
    line. The anomaly detector runs synchronously after each successful write
    for events that carry a user id.
    """

    def __init__(
        self, store: Any, probe: SchemaProbe, detector: Optional[AnomalyDetector] = None
    ) -> None:
        self.store = store
        self.probe = probe
        self.detector = detector

    def record(
        self,
        kind: ActivityKind | str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        failure_reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[ActivityEvent]:
        kind_value = getattr(kind, "value", kind)
        if not self.probe.has(Capability.ACTIVITY_LOG):
            logger.debug("activity_log_unavailable", activity_type=kind_value)
            return None
        device = parse_user_agent(user_agent)
        event = ActivityEvent(
            kind=kind_value,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            device_type=device.device_type,
            browser=device.browser,
            os=device.os,
            location=location_for(ip_address),
            success=success,
            failure_reason=failure_reason,
            metadata=dict(metadata or {}),
        )
        try:
            stored = self.store.insert_activity_event(event)
        except CapabilityMissing:
            logger.warning("activity_log_table_missing", activity_type=kind_value)
            return None
        except Exception as exc:
            logger.error(
                "activity_log_write_failed",
                activity_type=kind_value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None
        if self.detector and stored.user_id:
            self.detector.evaluate(stored)
        return stored

    def history_for(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        kind: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[ActivityEvent]:
        if not self.probe.has(Capability.ACTIVITY_LOG):
            return []
        query = ActivityQuery(
            limit=max(1, min(limit, 200)),
            offset=max(0, offset),
            kind=kind,
            since=since,
            until=until,
        )
        try:
            return self.store.list_activity_events(user_id, query)
        except CapabilityMissing:
            return []

    def recent_failures(
        self,
        *,
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None,
        window_minutes: int = 15,
    ) -> int:
        if not self.probe.has(Capability.ACTIVITY_LOG):
            return 0
        since = datetime.now(timezone.utc) - timedelta(minutes=window_minutes)
        try:
            return self.store.count_recent_failures(
                since=since, ip_address=ip_address, user_id=user_id
            )
        except CapabilityMissing:
            return 0

    def alerts_for(self, user_id: str) -> List[AnomalyAlert]:
        if not self.probe.has(Capability.ANOMALY_ALERTS):
            return []
        try:
            return self.store.list_open_alerts(user_id)
        except CapabilityMissing:
            return []

    def resolve_alert(self, alert_id: str, resolved_by: str) -> Optional[AnomalyAlert]:
        if not self.probe.has(Capability.ANOMALY_ALERTS):
            return None
        alert = self.store.resolve_alert(alert_id, resolved_by)
        if alert:
            logger.info("anomaly_alert_resolved", alert_id=alert_id, resolved_by=resolved_by)
        return alert
