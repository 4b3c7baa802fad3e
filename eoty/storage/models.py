from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    TEACHER = "teacher"
    ADMIN = "admin"


class Capability(str, Enum):
    """Optional schema features that may be absent on older deployments."""

    LOCKOUT_COLUMNS = "lockout_columns"
    TWO_FACTOR = "two_factor"
    ACTIVITY_LOG = "activity_log"
    EXTENDED_PROFILE = "extended_profile"
    PERMISSION_CATALOG = "permission_catalog"
    ANOMALY_ALERTS = "anomaly_alerts"


class ActivityKind(str, Enum):
    """Audit event kinds. Unknown kinds read back from storage stay plain strings."""

    LOGIN = "login"
    FAILED_LOGIN = "failed_login"
    LOGOUT = "logout"
    LOGIN_2FA = "login_2fa"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFIED = "email_verified"
    VERIFICATION_EMAIL_SENT = "verification_email_sent"
    REGISTER = "register"
    PROFILE_UPDATED = "profile_updated"


class AlertKind(str, Enum):
    MULTIPLE_IPS = "multiple_ips"
    FAILED_ATTEMPTS = "failed_attempts"
    SUSPICIOUS_LOCATION = "suspicious_location"


class Severity(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"


# Keys held in the profile extras bag
EXTENDED_PROFILE_KEYS = (
    "specialties",
    "teaching_experience",
    "education",
    "interests",
    "learning_goals",
    "date_of_birth",
)


@dataclass
class User:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: str = Role.USER.value
    chapter_id: Optional[int] = None
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    is_active: bool = True
    is_2fa_enabled: bool = False
    profile_picture: Optional[str] = None
    bio: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    profile_extras: Dict = field(default_factory=dict)
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


@dataclass
class Chapter:
    id: int
    name: str
    location: Optional[str] = None
    is_active: bool = True


@dataclass
class FederatedIdentityLink:
    user_id: str
    provider: str
    provider_user_id: str
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class OtpCode:
    id: str
    user_id: str
    code_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetToken:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class EmailVerificationToken:
    id: str
    user_id: str
    email: str
    token_hash: str
    expires_at: datetime
    used: bool = False
    verified: bool = False
    verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ActivityEvent:
    """Immutable audit record.

    ``metadata`` is passed through untouched; only the consumer that wrote a key
    knows what it means.
    """

    kind: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    location: Optional[str] = None
    success: bool = True
    failure_reason: Optional[str] = None
    metadata: Dict = field(default_factory=dict)
    id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AnomalyAlert:
    id: str
    user_id: str
    kind: str
    description: str
    severity: str
    activity_data: Dict = field(default_factory=dict)
    is_resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    key: str
    description: Optional[str] = None
    category: Optional[str] = None


@dataclass
class ActivityQuery:
    limit: int = 50
    offset: int = 0
    kind: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
