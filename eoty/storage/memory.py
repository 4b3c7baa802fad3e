from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from eoty.logging import get_logger
from eoty.storage.common import (
    event_from_row,
    event_to_row,
    generate_uuid,
    get_default_permission_catalog,
    get_default_role_permissions,
    normalize_email,
)
from eoty.storage.errors import CapabilityMissing, ConstraintViolation
from eoty.storage.models import (
    EXTENDED_PROFILE_KEYS,
    ActivityEvent,
    ActivityKind,
    ActivityQuery,
    AnomalyAlert,
    Capability,
    Chapter,
    EmailVerificationToken,
    FederatedIdentityLink,
    OtpCode,
    PasswordResetToken,
    Permission,
    User,
    utcnow,
)

_PROFILE_COLUMNS = {"first_name", "last_name", "bio", "phone", "location", "profile_picture"}


class MemoryStore:
    """Process-local backing store used for tests and single-node development.

    ``missing_capabilities`` simulates a partially migrated database: calls that
    need an absent table or column raise :class:`CapabilityMissing` just as the
    Postgres store surfaces ``UndefinedTable``/``UndefinedColumn``.
    """

    def __init__(
        self,
        *,
        missing_capabilities: Optional[Iterable[Capability | str]] = None,
        fail_probe: bool = False,
        seed_permissions: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.chapters: Dict[int, Chapter] = {}
        self.links: List[FederatedIdentityLink] = []
        self.otps: Dict[str, OtpCode] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.verification_tokens: Dict[str, EmailVerificationToken] = {}
        self.activity_rows: List[Dict[str, Any]] = []
        self.alerts: Dict[str, AnomalyAlert] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: Dict[str, Set[str]] = {}
        self._chapter_seq: int = 1
        # RLock so helpers can call each other while holding the lock
        self._data_lock = threading.RLock()
        self.probe_calls = 0
        self._fail_probe = fail_probe
        self._missing: Set[str] = {
            Capability(c).value for c in (missing_capabilities or [])
        }
        if seed_permissions:
            self.seed_permissions(
                get_default_permission_catalog(), get_default_role_permissions()
            )

    def _require(self, capability: Capability) -> None:
        if capability.value in self._missing:
            raise CapabilityMissing(capability.value)

    # -- capabilities -------------------------------------------------------

    def probe_capabilities(self) -> Set[str]:
        with self._data_lock:
            self.probe_calls += 1
            if self._fail_probe:
                raise RuntimeError("capability probe failed")
            return {c.value for c in Capability} - self._missing

    def store_kind(self) -> str:
        return "memory"

    # -- chapters -----------------------------------------------------------

    def create_chapter(
        self, name: str, location: Optional[str] = None, *, is_active: bool = True
    ) -> Chapter:
        with self._data_lock:
            chapter = Chapter(
                id=self._chapter_seq, name=name, location=location, is_active=is_active
            )
            self._chapter_seq += 1
            self.chapters[chapter.id] = chapter
            return replace(chapter)

    def get_chapter(self, chapter_id: int) -> Optional[Chapter]:
        with self._data_lock:
            chapter = self.chapters.get(int(chapter_id))
            return replace(chapter) if chapter else None

    def default_chapter(self) -> Optional[Chapter]:
        with self._data_lock:
            active = sorted(
                (c for c in self.chapters.values() if c.is_active), key=lambda c: c.id
            )
            return replace(active[0]) if active else None

    # -- users --------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        role: str = "user",
        chapter_id: Optional[int] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        is_active: bool = True,
        profile_picture: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=generate_uuid(),
                email=normalized,
                first_name=first_name,
                last_name=last_name,
                role=role,
                chapter_id=chapter_id,
                password_hash=password_hash,
                password_algo=password_algo,
                is_active=is_active,
                profile_picture=profile_picture,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def get_user_by_provider(self, provider: str, provider_user_id: str) -> Optional[User]:
        with self._data_lock:
            for link in self.links:
                if link.provider == provider and link.provider_user_id == provider_user_id:
                    return self.get_user(link.user_id)
            return None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[:limit]]

    def _mutate_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            return replace(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._mutate_user(user_id, role=role)

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        return self._mutate_user(user_id, is_active=active)

    def set_two_factor_enabled(self, user_id: str, enabled: bool) -> Optional[User]:
        self._require(Capability.TWO_FACTOR)
        return self._mutate_user(user_id, is_2fa_enabled=enabled)

    def update_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> Optional[User]:
        return self._mutate_user(
            user_id, password_hash=password_hash, password_algo=password_algo
        )

    def update_profile(
        self,
        user_id: str,
        fields: Optional[Dict[str, Any]] = None,
        extras: Optional[Dict[str, Any]] = None,
    ) -> Optional[User]:
        fields = dict(fields or {})
        unknown = set(fields) - _PROFILE_COLUMNS
        if unknown:
            raise ValueError(f"unknown profile columns: {sorted(unknown)}")
        if extras:
            self._require(Capability.EXTENDED_PROFILE)
            bad = set(extras) - set(EXTENDED_PROFILE_KEYS)
            if bad:
                raise ValueError(f"unknown profile extras: {sorted(bad)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if extras:
                fields["profile_extras"] = {**user.profile_extras, **extras}
            return self._mutate_user(user_id, **fields)

    def touch_last_login(
        self, user_id: str, *, profile_picture: Optional[str] = None
    ) -> Optional[User]:
        changes: Dict[str, Any] = {"last_login_at": utcnow()}
        if profile_picture:
            changes["profile_picture"] = profile_picture
        return self._mutate_user(user_id, **changes)

    def record_failed_login(self, user_id: str) -> int:
        self._require(Capability.LOCKOUT_COLUMNS)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0
            user.failed_login_attempts += 1
            return user.failed_login_attempts

    def lock_account(self, user_id: str, until: datetime) -> None:
        self._require(Capability.LOCKOUT_COLUMNS)
        self._mutate_user(user_id, account_locked_until=until)

    def reset_failed_logins(self, user_id: str) -> None:
        self._require(Capability.LOCKOUT_COLUMNS)
        self._mutate_user(user_id, failed_login_attempts=0, account_locked_until=None)

    # -- federated identity -------------------------------------------------

    def link_provider(self, user_id: str, provider: str, provider_user_id: str) -> None:
        with self._data_lock:
            for link in self.links:
                if link.provider == provider and link.provider_user_id == provider_user_id:
                    # ON CONFLICT DO UPDATE
                    link.user_id = user_id
                    link.last_used_at = utcnow()
                    return
            self.links.append(
                FederatedIdentityLink(
                    user_id=user_id,
                    provider=provider,
                    provider_user_id=provider_user_id,
                    last_used_at=utcnow(),
                )
            )

    def touch_provider_link(self, provider: str, provider_user_id: str) -> None:
        with self._data_lock:
            for link in self.links:
                if link.provider == provider and link.provider_user_id == provider_user_id:
                    link.last_used_at = utcnow()

    def list_provider_links(self, user_id: str) -> List[FederatedIdentityLink]:
        with self._data_lock:
            return [replace(link) for link in self.links if link.user_id == user_id]

    # -- one-time codes and tokens ------------------------------------------

    def insert_otp(self, otp: OtpCode) -> OtpCode:
        self._require(Capability.TWO_FACTOR)
        with self._data_lock:
            self.otps[otp.id] = replace(otp)
            return otp

    def list_active_otps(self, user_id: str, now: Optional[datetime] = None) -> List[OtpCode]:
        """Unexpired codes for ``user_id``, newest first."""
        now = now or utcnow()
        with self._data_lock:
            rows = [
                replace(o)
                for o in self.otps.values()
                if o.user_id == user_id and o.expires_at > now
            ]
            return sorted(rows, key=lambda o: o.created_at, reverse=True)

    def delete_otp(self, otp_id: str) -> bool:
        with self._data_lock:
            return self.otps.pop(otp_id, None) is not None

    def count_otps(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for o in self.otps.values() if o.user_id == user_id)

    def insert_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            self.reset_tokens[token.id] = replace(token)
            return token

    def find_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            for token in self.reset_tokens.values():
                if token.token_hash == token_hash:
                    return replace(token)
            return None

    def mark_reset_token_used(self, token_id: str) -> bool:
        """Flip ``used``; returns False when another caller already did."""
        with self._data_lock:
            token = self.reset_tokens.get(token_id)
            if not token or token.used:
                return False
            token.used = True
            return True

    def insert_verification_token(
        self, token: EmailVerificationToken
    ) -> EmailVerificationToken:
        with self._data_lock:
            self.verification_tokens[token.id] = replace(token)
            return token

    def find_verification_token(self, token_hash: str) -> Optional[EmailVerificationToken]:
        with self._data_lock:
            for token in self.verification_tokens.values():
                if token.token_hash == token_hash:
                    return replace(token)
            return None

    def mark_verification_token_used(self, token_id: str, *, verified: bool) -> bool:
        with self._data_lock:
            token = self.verification_tokens.get(token_id)
            if not token or token.used:
                return False
            token.used = True
            if verified:
                token.verified = True
                token.verified_at = utcnow()
            return True

    def has_verified_email(self, user_id: str) -> bool:
        with self._data_lock:
            return any(
                t.user_id == user_id and t.verified
                for t in self.verification_tokens.values()
            )

    # -- activity log -------------------------------------------------------

    def insert_activity_event(self, event: ActivityEvent) -> ActivityEvent:
        self._require(Capability.ACTIVITY_LOG)
        row = event_to_row(event)
        with self._data_lock:
            self.activity_rows.append(row)
        return event_from_row(row)

    def _events(self) -> List[ActivityEvent]:
        with self._data_lock:
            return [event_from_row(row) for row in self.activity_rows]

    def list_activity_events(
        self, user_id: str, query: Optional[ActivityQuery] = None
    ) -> List[ActivityEvent]:
        self._require(Capability.ACTIVITY_LOG)
        query = query or ActivityQuery()
        matched = []
        for event in self._events():
            if event.user_id != user_id:
                continue
            if query.kind and event.kind != query.kind:
                continue
            if query.since and event.created_at < query.since:
                continue
            if query.until and event.created_at > query.until:
                continue
            matched.append(event)
        # stable sort keeps insertion order for identical timestamps
        matched = list(reversed(matched))
        matched.sort(key=lambda e: e.created_at, reverse=True)
        return matched[query.offset : query.offset + query.limit]

    def count_recent_failures(
        self,
        *,
        since: datetime,
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int:
        self._require(Capability.ACTIVITY_LOG)
        count = 0
        for event in self._events():
            if event.kind != ActivityKind.FAILED_LOGIN.value or event.success:
                continue
            if event.created_at < since:
                continue
            if ip_address and event.ip_address != ip_address:
                continue
            if user_id and event.user_id != user_id:
                continue
            count += 1
        return count

    def distinct_login_origins(self, user_id: str, since: datetime) -> List[Optional[str]]:
        self._require(Capability.ACTIVITY_LOG)
        origins: List[Optional[str]] = []
        for event in self._events():
            if (
                event.user_id == user_id
                and event.kind == ActivityKind.LOGIN.value
                and event.success
                and event.created_at >= since
                and event.ip_address not in origins
            ):
                origins.append(event.ip_address)
        return origins

    def latest_login_from_other_origin(
        self, user_id: str, ip_address: str
    ) -> Optional[ActivityEvent]:
        self._require(Capability.ACTIVITY_LOG)
        candidates = [
            e
            for e in self._events()
            if e.user_id == user_id
            and e.kind == ActivityKind.LOGIN.value
            and e.success
            and e.ip_address is not None
            and e.ip_address != ip_address
        ]
        if not candidates:
            return None
        candidates.reverse()
        candidates.sort(key=lambda e: e.created_at, reverse=True)
        return candidates[0]

    # -- alerts -------------------------------------------------------------

    def find_open_alert(self, user_id: str, kind: str, since: datetime) -> Optional[AnomalyAlert]:
        self._require(Capability.ANOMALY_ALERTS)
        with self._data_lock:
            for alert in self.alerts.values():
                if (
                    alert.user_id == user_id
                    and alert.kind == kind
                    and not alert.is_resolved
                    and alert.created_at >= since
                ):
                    return replace(alert)
            return None

    def insert_alert(self, alert: AnomalyAlert) -> AnomalyAlert:
        self._require(Capability.ANOMALY_ALERTS)
        with self._data_lock:
            self.alerts[alert.id] = replace(alert)
            return alert

    def update_alert(
        self, alert_id: str, *, description: str, severity: str, activity_data: Dict
    ) -> Optional[AnomalyAlert]:
        self._require(Capability.ANOMALY_ALERTS)
        with self._data_lock:
            alert = self.alerts.get(alert_id)
            if not alert:
                return None
            alert.description = description
            alert.severity = severity
            alert.activity_data = dict(activity_data)
            alert.updated_at = utcnow()
            return replace(alert)

    def list_open_alerts(self, user_id: str) -> List[AnomalyAlert]:
        self._require(Capability.ANOMALY_ALERTS)
        with self._data_lock:
            rows = [
                replace(a)
                for a in self.alerts.values()
                if a.user_id == user_id and not a.is_resolved
            ]
            return sorted(rows, key=lambda a: a.created_at, reverse=True)

    def list_alerts(self, user_id: str, kind: Optional[str] = None) -> List[AnomalyAlert]:
        with self._data_lock:
            return [
                replace(a)
                for a in self.alerts.values()
                if a.user_id == user_id and (kind is None or a.kind == kind)
            ]

    def resolve_alert(self, alert_id: str, resolved_by: str) -> Optional[AnomalyAlert]:
        self._require(Capability.ANOMALY_ALERTS)
        with self._data_lock:
            alert = self.alerts.get(alert_id)
            if not alert:
                return None
            now = utcnow()
            alert.is_resolved = True
            alert.resolved_by = resolved_by
            alert.resolved_at = now
            alert.updated_at = now
            return replace(alert)

    # -- permissions --------------------------------------------------------

    def seed_permissions(
        self, catalog: Iterable[Permission], role_map: Dict[str, List[str]]
    ) -> None:
        with self._data_lock:
            for permission in catalog:
                self.permissions[permission.key] = permission
            for role, keys in role_map.items():
                self.role_permissions.setdefault(role, set()).update(
                    k for k in keys if k in self.permissions
                )

    def all_permission_keys(self) -> List[str]:
        self._require(Capability.PERMISSION_CATALOG)
        with self._data_lock:
            return sorted(self.permissions)

    def role_permission_keys(self, role: str) -> List[str]:
        self._require(Capability.PERMISSION_CATALOG)
        with self._data_lock:
            return sorted(self.role_permissions.get(role, set()) & set(self.permissions))

    def close(self) -> None:
        return None
