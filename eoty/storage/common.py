"""Common storage utilities shared between memory and postgres implementations.

Rows flow through the builders here in both directions so the two backends
agree on how bags, enums and timestamps are represented.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from eoty.storage.models import (
    ActivityEvent,
    AnomalyAlert,
    Chapter,
    EmailVerificationToken,
    OtpCode,
    PasswordResetToken,
    Permission,
    User,
)


# ============================================================================
# BAG CODEC
# ============================================================================

def encode_bag(bag: Optional[Mapping[str, Any]]) -> str:
    """Serialize a free-form bag to its stored JSON text.

    Non-JSON values (datetimes, enums) are stringified instead of failing the
    write; bags are pass-through data and never block the caller.
    """
    return json.dumps(dict(bag or {}), default=str, separators=(",", ":"))


def decode_bag(raw: Any) -> Dict[str, Any]:
    """Parse a stored bag from JSON text, bytes or an already-decoded dict."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, (bytes, bytearray, memoryview)):
        raw = bytes(raw).decode("utf-8", errors="replace")
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


# ============================================================================
# NORMALIZATION
# ============================================================================

def normalize_email(email: Optional[str]) -> str:
    """Case-fold and trim an address; every lookup goes through this."""
    return (email or "").strip().casefold()


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps coming back from the database as UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ROW BUILDERS
# ============================================================================

def user_from_row(row: Mapping[str, Any]) -> User:
    chapter = safe_row_value(row, "chapter_id")
    return User(
        id=str(row["id"]),
        email=row["email"],
        first_name=safe_row_value(row, "first_name") or "",
        last_name=safe_row_value(row, "last_name") or "",
        role=safe_row_value(row, "role") or "user",
        chapter_id=int(chapter) if chapter is not None else None,
        password_hash=safe_row_value(row, "password_hash"),
        password_algo=safe_row_value(row, "password_algo"),
        is_active=bool(safe_row_value(row, "is_active", True)),
        is_2fa_enabled=bool(safe_row_value(row, "is_2fa_enabled", False)),
        profile_picture=safe_row_value(row, "profile_picture"),
        bio=safe_row_value(row, "bio"),
        phone=safe_row_value(row, "phone"),
        location=safe_row_value(row, "location"),
        profile_extras=decode_bag(safe_row_value(row, "profile_extras")),
        failed_login_attempts=int(safe_row_value(row, "failed_login_attempts") or 0),
        account_locked_until=ensure_aware(safe_row_value(row, "account_locked_until")),
        created_at=ensure_aware(row["created_at"]),
        updated_at=ensure_aware(safe_row_value(row, "updated_at") or row["created_at"]),
        last_login_at=ensure_aware(safe_row_value(row, "last_login_at")),
    )


def chapter_from_row(row: Mapping[str, Any]) -> Chapter:
    return Chapter(
        id=int(row["id"]),
        name=row["name"],
        location=safe_row_value(row, "location"),
        is_active=bool(safe_row_value(row, "is_active", True)),
    )


def otp_from_row(row: Mapping[str, Any]) -> OtpCode:
    return OtpCode(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        code_hash=row["code_hash"],
        expires_at=ensure_aware(row["expires_at"]),
        created_at=ensure_aware(row["created_at"]),
    )


def reset_token_from_row(row: Mapping[str, Any]) -> PasswordResetToken:
    return PasswordResetToken(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_hash=row["token_hash"],
        expires_at=ensure_aware(row["expires_at"]),
        used=bool(row["used"]),
        created_at=ensure_aware(row["created_at"]),
    )


def verification_token_from_row(row: Mapping[str, Any]) -> EmailVerificationToken:
    return EmailVerificationToken(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        email=row["email"],
        token_hash=row["token_hash"],
        expires_at=ensure_aware(row["expires_at"]),
        used=bool(row["used"]),
        verified=bool(safe_row_value(row, "verified", False)),
        verified_at=ensure_aware(safe_row_value(row, "verified_at")),
        created_at=ensure_aware(row["created_at"]),
    )


def event_to_row(event: ActivityEvent) -> Dict[str, Any]:
    """Flatten an event for insertion; the kind is stored as its plain value."""
    kind = event.kind.value if hasattr(event.kind, "value") else str(event.kind)
    return {
        "id": event.id or generate_uuid(),
        "user_id": event.user_id,
        "activity_type": kind,
        "ip_address": event.ip_address,
        "user_agent": event.user_agent,
        "device_type": event.device_type,
        "browser": event.browser,
        "os": event.os,
        "location": event.location,
        "success": bool(event.success),
        "failure_reason": event.failure_reason,
        "metadata": encode_bag(event.metadata),
        "created_at": event.created_at,
    }


def event_from_row(row: Mapping[str, Any]) -> ActivityEvent:
    user_id = safe_row_value(row, "user_id")
    return ActivityEvent(
        id=str(row["id"]),
        kind=row["activity_type"],
        user_id=str(user_id) if user_id is not None else None,
        ip_address=safe_row_value(row, "ip_address"),
        user_agent=safe_row_value(row, "user_agent"),
        device_type=safe_row_value(row, "device_type"),
        browser=safe_row_value(row, "browser"),
        os=safe_row_value(row, "os"),
        location=safe_row_value(row, "location"),
        success=bool(safe_row_value(row, "success", True)),
        failure_reason=safe_row_value(row, "failure_reason"),
        metadata=decode_bag(safe_row_value(row, "metadata")),
        created_at=ensure_aware(row["created_at"]),
    )


def alert_from_row(row: Mapping[str, Any]) -> AnomalyAlert:
    return AnomalyAlert(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        kind=row["alert_type"],
        description=row["description"],
        severity=row["severity"],
        activity_data=decode_bag(safe_row_value(row, "activity_data")),
        is_resolved=bool(safe_row_value(row, "is_resolved", False)),
        resolved_by=safe_row_value(row, "resolved_by"),
        resolved_at=ensure_aware(safe_row_value(row, "resolved_at")),
        created_at=ensure_aware(row["created_at"]),
        updated_at=ensure_aware(safe_row_value(row, "updated_at") or row["created_at"]),
    )


# ============================================================================
# DEFAULT PERMISSION CATALOG
# ============================================================================

def get_default_permission_catalog() -> List[Permission]:
    """Permission keys seeded into a fresh deployment.

    Returns:
        Catalog entries ordered by category then key
    """
    entries = [
        ("course:view", "View courses"),
        ("course:create", "Create courses"),
        ("course:edit_own", "Edit own courses"),
        ("course:edit_any", "Edit any courses"),
        ("course:delete_own", "Delete own courses"),
        ("course:delete_any", "Delete any courses"),
        ("course:publish", "Publish courses"),
        ("lesson:view", "View lessons"),
        ("lesson:create", "Create lessons"),
        ("lesson:edit_own", "Edit own lessons"),
        ("lesson:edit_any", "Edit any lessons"),
        ("lesson:delete_own", "Delete own lessons"),
        ("lesson:delete_any", "Delete any lessons"),
        ("video:upload", "Upload videos"),
        ("video:stream", "Stream videos"),
        ("video:delete_own", "Delete own videos"),
        ("video:delete_any", "Delete any videos"),
        ("quiz:take", "Take quizzes"),
        ("quiz:create", "Create quizzes"),
        ("quiz:edit_own", "Edit own quizzes"),
        ("quiz:edit_any", "Edit any quizzes"),
        ("discussion:view", "View discussions"),
        ("discussion:create", "Create discussions"),
        ("discussion:moderate", "Moderate discussions"),
        ("discussion:delete_any", "Delete any discussions"),
        ("user:view", "View user profiles"),
        ("user:edit_own", "Edit own profile"),
        ("user:edit_any", "Edit any user profile"),
        ("user:manage_roles", "Change user roles"),
        ("progress:view", "View progress"),
        ("notes:create", "Create notes"),
        ("notes:view_own", "View own notes"),
        ("chapter:view", "View chapters"),
        ("chapter:manage", "Manage chapters"),
        ("analytics:view", "View platform analytics"),
        ("analytics:view_own", "View own analytics"),
        ("audit:view", "View audit logs"),
        ("system:admin", "Full system administration"),
    ]
    return [
        Permission(key=key, description=description, category=key.split(":", 1)[0])
        for key, description in entries
    ]


def get_default_role_permissions() -> Dict[str, List[str]]:
    """Role to permission-key projection for non-admin roles.

    Admins are not listed; they always receive the whole catalog.
    """
    learner = [
        "course:view",
        "lesson:view",
        "video:stream",
        "quiz:take",
        "discussion:view",
        "discussion:create",
        "user:view",
        "user:edit_own",
        "progress:view",
        "notes:create",
        "notes:view_own",
        "chapter:view",
    ]
    teacher = learner + [
        "course:create",
        "course:edit_own",
        "course:delete_own",
        "course:publish",
        "lesson:create",
        "lesson:edit_own",
        "lesson:delete_own",
        "video:upload",
        "video:delete_own",
        "quiz:create",
        "quiz:edit_own",
        "analytics:view_own",
    ]
    return {"user": learner, "teacher": teacher}
