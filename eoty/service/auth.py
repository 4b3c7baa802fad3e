from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from eoty.config import Settings
from eoty.logging import get_logger, redact_email
from eoty.service.activity import ActivityLog
from eoty.service.email import EmailService
from eoty.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InternalError,
    LockedError,
    MailDeliveryError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from eoty.service.oauth import OAuthIdentity, OAuthProvider
from eoty.service.permissions import EffectivePermissions, PermissionResolver
from eoty.service.schema_probe import SchemaProbe
from eoty.service.sessions import SessionClaims, SessionIssuer
from eoty.service.tokens import TokenRegistry
from eoty.storage.common import normalize_email
from eoty.storage.errors import CapabilityMissing, ConstraintViolation
from eoty.storage.models import (
    ActivityEvent,
    ActivityKind,
    AnomalyAlert,
    Capability,
    Role,
    User,
)

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
REGISTRATION_ROLES = (Role.USER.value, Role.TEACHER.value)

INVALID_CREDENTIALS = "Invalid email or password"
ACCOUNT_DEACTIVATED = "Account is deactivated. Please contact administrator."
FEDERATED_ONLY = (
    "This account was created with Google. To sign in with a password, "
    'please use the "Forgot Password" link to set one.'
)
ACCOUNT_LOCKED = (
    "Account is temporarily locked due to too many failed login attempts. "
    "Please try again later."
)
RESET_SENT = "If an account with this email exists, a password reset link has been sent."
VERIFICATION_SENT = (
    "If an account with this email exists, a verification link has been sent."
)
INVALID_RESET_TOKEN = "Invalid or expired reset token"
INVALID_VERIFICATION_TOKEN = "Invalid or expired verification token"

# camelCase request key -> (column or extras key, lives in the extras bag)
PROFILE_FIELDS: Dict[str, Tuple[str, bool]] = {
    "firstName": ("first_name", False),
    "lastName": ("last_name", False),
    "bio": ("bio", False),
    "phone": ("phone", False),
    "location": ("location", False),
    "profilePicture": ("profile_picture", False),
    "specialties": ("specialties", True),
    "teachingExperience": ("teaching_experience", True),
    "education": ("education", True),
    "interests": ("interests", True),
    "learningGoals": ("learning_goals", True),
    "dateOfBirth": ("date_of_birth", True),
}


def registration_password_error(password: str) -> Optional[str]:
    """Legacy floor applied at sign-up."""
    if len(password) < 6:
        return "Password must be at least 6 characters long"
    return None


def reset_password_error(password: str) -> Optional[str]:
    """Complexity policy applied when a password is reset."""
    if len(password) < 8:
        return "Password must be at least 8 characters long"
    if not re.search(r"[a-z]", password) or not re.search(r"[A-Z]", password):
        return "Password must contain at least one uppercase and one lowercase letter"
    if not re.search(r"\d", password):
        return "Password must contain at least one number"
    if not re.search(r"[^A-Za-z0-9]", password):
        return "Password must contain at least one special character"
    if re.search(r"\s", password):
        return "Password cannot contain spaces"
    return None


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email or ""))


def canonical_picture_url(path: Optional[str], server_url: str) -> Optional[str]:
    if not path:
        return None
    if path.startswith("http://") or path.startswith("https://"):
        return path
    base = server_url.rstrip("/")
    return f"{base}{path if path.startswith('/') else '/' + path}"


def relative_picture_path(url: Optional[str], server_url: str) -> Optional[str]:
    if not url:
        return url
    base = server_url.rstrip("/")
    if base and url.startswith(base + "/"):
        return url[len(base):]
    return url


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


def profile_completion(user: User) -> Dict[str, Any]:
    checks = {
        "profilePicture": _has_value(user.profile_picture),
        "bio": _has_value(user.bio),
        "phone": _has_value(user.phone),
        "location": _has_value(user.location),
    }
    if user.role == Role.TEACHER.value:
        extras = user.profile_extras or {}
        checks["specialties"] = _has_value(extras.get("specialties"))
        checks["education"] = _has_value(extras.get("education"))
    completed = sum(1 for ok in checks.values() if ok)
    total = len(checks)
    percentage = round(completed / total * 100) if total else 0
    return {
        "percentage": percentage,
        "completedFields": completed,
        "totalFields": total,
        "isComplete": percentage >= 80,
        "missingFields": [name for name, ok in checks.items() if not ok],
    }


@dataclass
class RequestContext:
    """Network facts about the caller, captured once per request."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_token: Optional[str] = None


@dataclass
class AuthOutcome:
    message: str
    user: Optional[User] = None
    token: Optional[str] = None
    requires_2fa: bool = False
    device_token: Optional[str] = None
    status_code: int = 200
    extra: Dict[str, Any] = field(default_factory=dict)


class AuthService:
    """Sequence credential checks, the email OTP challenge and session minting.

    A login moves from anonymous to credential-checked, then either straight to
    authenticated or to a pending challenge that a later ``verify_two_factor``
    call completes. Every branch leaves an activity event behind.
    """

    def __init__(
        self,
        store: Any,
        settings: Settings,
        *,
        probe: SchemaProbe,
        tokens: TokenRegistry,
        email: EmailService,
        activity: ActivityLog,
        sessions: SessionIssuer,
        permissions: PermissionResolver,
        providers: Optional[Dict[str, OAuthProvider]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.probe = probe
        self.tokens = tokens
        self.email = email
        self.activity = activity
        self.sessions = sessions
        self.permissions = permissions
        self.providers = providers or {}
        self._pwd_hasher = PasswordHasher(
            type=Type.ID,
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- password hashing ---------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            return False
        if user.password_algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=user.password_algo)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def hash_password(self, password: str) -> Tuple[str, str]:
        return await asyncio.to_thread(self._hash_password, password)

    async def verify_password(self, user: User, password: str) -> bool:
        return await asyncio.to_thread(self._verify_password, user, password)

    # -- payload helpers ----------------------------------------------------

    def public_user(self, user: User) -> Dict[str, Any]:
        return {
            "id": user.id,
            "firstName": user.first_name,
            "lastName": user.last_name,
            "email": user.email,
            "role": user.role,
            "chapter": user.chapter_id,
            "isActive": user.is_active,
            "profilePicture": canonical_picture_url(
                user.profile_picture, self.settings.server_url
            ),
        }

    def outcome_payload(self, outcome: AuthOutcome) -> Dict[str, Any]:
        if outcome.requires_2fa:
            data: Dict[str, Any] = {
                "requires2FA": True,
                "userId": outcome.user.id if outcome.user else None,
                "email": outcome.user.email if outcome.user else None,
            }
        else:
            data = {}
            if outcome.user:
                data["user"] = self.public_user(outcome.user)
            if outcome.token:
                data["token"] = outcome.token
        data.update(outcome.extra)
        return data

    def _two_factor_active(self, user: User) -> bool:
        return self.probe.has(Capability.TWO_FACTOR) and user.is_2fa_enabled

    def _record_failure(
        self,
        reason: str,
        ctx: RequestContext,
        *,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.activity.record(
            ActivityKind.FAILED_LOGIN,
            user_id=user_id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            success=False,
            failure_reason=reason,
            metadata=metadata,
        )

    # -- lockout ------------------------------------------------------------

    def _lockout_active(self) -> bool:
        return self.settings.account_lockout_enabled and self.probe.has(
            Capability.LOCKOUT_COLUMNS
        )

    def _register_failed_password(self, user: User) -> None:
        if not self._lockout_active():
            return
        try:
            attempts = self.store.record_failed_login(user.id)
            if attempts >= self.settings.account_lockout_threshold:
                until = self._now() + timedelta(minutes=self.settings.account_lockout_minutes)
                self.store.lock_account(user.id, until)
                logger.warning("account_locked", user_id=user.id, attempts=attempts)
        except CapabilityMissing:
            logger.warning("lockout_columns_missing", user_id=user.id)

    def _clear_failed_passwords(self, user: User) -> None:
        if not self._lockout_active() or not user.failed_login_attempts:
            return
        try:
            self.store.reset_failed_logins(user.id)
        except CapabilityMissing:
            logger.warning("lockout_columns_missing", user_id=user.id)

    def _is_locked(self, user: User) -> bool:
        return bool(
            self._lockout_active()
            and user.account_locked_until
            and user.account_locked_until > self._now()
        )

    # -- challenge and completion -------------------------------------------

    async def _issue_challenge(self, user: User, ctx: RequestContext) -> AuthOutcome:
        """Issue and mail an OTP; a delivery failure fails the login."""
        otp = self.tokens.issue_otp(user.id)
        try:
            await asyncio.to_thread(
                self.email.send_two_factor_code, user.email, otp.code, user.first_name
            )
        except MailDeliveryError as exc:
            logger.error(
                "two_factor_mail_failed", user_id=user.id, to=redact_email(user.email), error=str(exc)
            )
            raise InternalError("Failed to send verification code. Please try again.") from exc
        logger.info("two_factor_challenge_issued", user_id=user.id)
        return AuthOutcome(
            message="Verification code sent to your email",
            user=user,
            requires_2fa=True,
        )

    def _complete_login(
        self,
        user: User,
        ctx: RequestContext,
        *,
        message: str,
        kind: ActivityKind = ActivityKind.LOGIN,
        metadata: Optional[Dict[str, Any]] = None,
        profile_picture: Optional[str] = None,
        with_device_token: bool = False,
    ) -> AuthOutcome:
        refreshed = self.store.touch_last_login(user.id, profile_picture=profile_picture) or user
        self._clear_failed_passwords(user)
        self.activity.record(
            kind,
            user_id=user.id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            success=True,
            metadata=metadata,
        )
        token = self.sessions.issue_session(refreshed)
        device_token = self.sessions.issue_device_token(user.id) if with_device_token else None
        logger.info("login_success", user_id=user.id, activity_type=getattr(kind, "value", kind))
        return AuthOutcome(
            message=message, user=refreshed, token=token, device_token=device_token
        )

    # -- password login -----------------------------------------------------

    async def login(
        self, email: Optional[str], password: Optional[str], ctx: RequestContext
    ) -> AuthOutcome:
        try:
            return await self._login(email, password, ctx)
        except ServiceError:
            raise
        except Exception as exc:
            logger.exception("login_internal_error", error=str(exc))
            try:
                self._record_failure("internal", ctx, metadata={"email": email})
            except Exception as log_exc:
                logger.warning("login_failure_event_failed", error=str(log_exc))
            raise InternalError("Internal server error during login") from exc

    async def _login(
        self, email: Optional[str], password: Optional[str], ctx: RequestContext
    ) -> AuthOutcome:
        if not email or not password:
            self._record_failure("Missing email or password", ctx, metadata={"email": email})
            raise ValidationError("Email and password are required")

        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if not user:
            self._record_failure("User not found", ctx, metadata={"email": normalized})
            raise AuthenticationError(INVALID_CREDENTIALS)

        if self._is_locked(user):
            self._record_failure("Account locked", ctx, user_id=user.id)
            raise LockedError(ACCOUNT_LOCKED)

        if not user.is_active:
            self._record_failure("Account deactivated", ctx, user_id=user.id)
            raise AuthenticationError(ACCOUNT_DEACTIVATED)

        if not user.has_password:
            self._record_failure("Google account - no password login", ctx, user_id=user.id)
            raise AuthenticationError(FEDERATED_ONLY, error_code="GOOGLE_ACCOUNT_NO_PASSWORD")

        if not await self.verify_password(user, password):
            self._record_failure("Invalid password", ctx, user_id=user.id)
            self._register_failed_password(user)
            raise AuthenticationError(INVALID_CREDENTIALS)

        metadata = {"loginMethod": "password"}
        if self._two_factor_active(user):
            if self.sessions.verify_device_token(ctx.device_token, user.id):
                logger.info("two_factor_bypassed_trusted_device", user_id=user.id)
                return self._complete_login(
                    user,
                    ctx,
                    message="Login successful",
                    metadata={**metadata, "trustedDevice": True},
                    with_device_token=True,
                )
            return await self._issue_challenge(user, ctx)

        return self._complete_login(user, ctx, message="Login successful", metadata=metadata)

    async def verify_two_factor(
        self, user_id: Optional[str], code: Optional[str], ctx: RequestContext
    ) -> AuthOutcome:
        try:
            return await self._verify_two_factor(user_id, code, ctx)
        except ServiceError:
            raise
        except Exception as exc:
            logger.exception("verify_two_factor_internal_error", user_id=user_id, error=str(exc))
            try:
                self._record_failure("internal", ctx, metadata={"userId": user_id})
            except Exception as log_exc:
                logger.warning("login_failure_event_failed", error=str(log_exc))
            raise InternalError("Internal server error during verification") from exc

    async def _verify_two_factor(
        self, user_id: Optional[str], code: Optional[str], ctx: RequestContext
    ) -> AuthOutcome:
        if not user_id or not code:
            raise ValidationError("User ID and verification code are required")
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if not user.is_active:
            # reported as unknown; only 400 and 404 leave this endpoint
            self._record_failure("Account deactivated", ctx, user_id=user.id)
            raise NotFoundError("User not found")
        if not self.tokens.consume_otp(user.id, code):
            self._record_failure("Invalid verification code", ctx, user_id=user.id)
            raise ValidationError("Invalid or expired verification code")
        return self._complete_login(
            user,
            ctx,
            message="Login successful",
            kind=ActivityKind.LOGIN_2FA,
            with_device_token=True,
        )

    def logout(self, claims: Optional[SessionClaims], ctx: RequestContext) -> AuthOutcome:
        if claims:
            self.activity.record(
                ActivityKind.LOGOUT,
                user_id=claims.user_id,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
            )
        return AuthOutcome(message="Logout successful")

    # -- registration -------------------------------------------------------

    def _validate_registration(
        self,
        first_name: Optional[str],
        last_name: Optional[str],
        email: Optional[str],
        password: Optional[str],
        chapter: Any,
        role: Optional[str],
    ) -> int:
        if not all([first_name, last_name, email, password]) or chapter in (None, ""):
            raise ValidationError("All fields are required")
        if not is_valid_email(email.strip()):
            raise ValidationError("Invalid email format")
        policy_error = registration_password_error(password)
        if policy_error:
            raise ValidationError(policy_error)
        if role not in REGISTRATION_ROLES:
            raise ValidationError("Invalid role specified")
        if self.store.get_user_by_email(email):
            raise ConflictError("User with this email already exists")
        try:
            chapter_id = int(str(chapter).strip())
        except ValueError as exc:
            raise ValidationError("Invalid chapter selection") from exc
        found = self.store.get_chapter(chapter_id)
        if not found or not found.is_active:
            raise ValidationError("Selected chapter is not valid or active")
        return chapter_id

    async def register(
        self,
        *,
        first_name: Optional[str],
        last_name: Optional[str],
        email: Optional[str],
        password: Optional[str],
        chapter: Any,
        role: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> AuthOutcome:
        ctx = ctx or RequestContext()
        role = role or Role.USER.value
        chapter_id = self._validate_registration(
            first_name, last_name, email, password, chapter, role
        )
        password_hash, algo = await self.hash_password(password)
        try:
            user = self.store.create_user(
                email,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                role=role,
                chapter_id=chapter_id,
                password_hash=password_hash,
                password_algo=algo,
            )
        except ConstraintViolation as exc:
            raise ConflictError("User with this email already exists") from exc
        logger.info("user_registered", user_id=user.id, role=role, chapter_id=chapter_id)
        self.activity.record(
            ActivityKind.REGISTER,
            user_id=user.id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            metadata={"role": role, "chapter": chapter_id},
        )

        two_factor = self._enable_two_factor(user)
        if two_factor:
            user.is_2fa_enabled = True

        code: Optional[str] = None
        if two_factor:
            try:
                code = self.tokens.issue_otp(user.id).code
            except Exception as exc:
                logger.warning("registration_otp_failed", user_id=user.id, error=str(exc))

        verification_token: Optional[str] = None
        try:
            verification_token = self.tokens.issue_verification_token(user.id, user.email).token
        except Exception as exc:
            logger.warning("registration_verification_token_failed", user_id=user.id, error=str(exc))

        await self._send_onboarding_mail(user, code, verification_token, ctx)

        if role == Role.TEACHER.value:
            message = (
                "Teacher account created successfully! Please check your email to verify "
                "your account. You now have access to creator tools."
            )
        else:
            message = (
                "Account created successfully! Please check your email to verify your account."
            )
        extra: Dict[str, Any] = {"userId": user.id, "email": user.email, "requires2FA": two_factor}
        token = None
        if not two_factor:
            token = self.sessions.issue_session(user)
            extra["user"] = self.public_user(user)
            extra["token"] = token
        return AuthOutcome(
            message=message,
            user=user,
            token=token,
            requires_2fa=two_factor,
            status_code=201,
            extra=extra,
        )

    def _enable_two_factor(self, user: User) -> bool:
        if not self.probe.has(Capability.TWO_FACTOR):
            return False
        try:
            self.store.set_two_factor_enabled(user.id, True)
        except Exception as exc:
            logger.warning("two_factor_enable_failed", user_id=user.id, error=str(exc))
            return False
        return True

    async def _send_onboarding_mail(
        self,
        user: User,
        code: Optional[str],
        verification_token: Optional[str],
        ctx: RequestContext,
    ) -> None:
        try:
            if code and verification_token:
                await asyncio.to_thread(
                    self.email.send_registration_verification,
                    user.email,
                    code=code,
                    token=verification_token,
                    first_name=user.first_name,
                )
            elif verification_token:
                await asyncio.to_thread(
                    self.email.send_verification_link,
                    user.email,
                    verification_token,
                    user.first_name,
                )
            elif code:
                await asyncio.to_thread(
                    self.email.send_two_factor_code, user.email, code, user.first_name
                )
            else:
                return
        except Exception as exc:
            logger.warning("registration_mail_failed", user_id=user.id, error=str(exc))
            return
        if verification_token:
            self.activity.record(
                ActivityKind.VERIFICATION_EMAIL_SENT,
                user_id=user.id,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                metadata={"email": user.email},
            )

    # -- federated login ----------------------------------------------------

    async def federated_login(
        self,
        provider_name: str,
        code: Optional[str],
        redirect_uri: Optional[str],
        ctx: RequestContext,
    ) -> AuthOutcome:
        provider = self.providers.get(provider_name)
        if not provider:
            raise ValidationError(f"Unsupported provider: {provider_name}")
        identity = await provider.exchange(code, redirect_uri)
        if not identity.email:
            raise ValidationError("Email permission is required")
        try:
            return await self._federated_login(provider, identity, ctx)
        except ServiceError:
            raise
        except Exception as exc:
            logger.exception(
                "federated_login_internal_error", provider=provider.name, error=str(exc)
            )
            try:
                self._record_failure(
                    "internal",
                    ctx,
                    metadata={"loginMethod": f"{provider.name}_oauth"},
                )
            except Exception as log_exc:
                logger.warning("login_failure_event_failed", error=str(log_exc))
            raise InternalError(
                f"Internal server error during {provider.display_name} authentication"
            ) from exc

    async def _federated_login(
        self, provider: OAuthProvider, identity: OAuthIdentity, ctx: RequestContext
    ) -> AuthOutcome:
        created = False
        user = self.store.get_user_by_provider(provider.name, identity.provider_id)
        if user:
            self.store.touch_provider_link(provider.name, identity.provider_id)
        else:
            user = self.store.get_user_by_email(identity.email)
            if user:
                self.store.link_provider(user.id, provider.name, identity.provider_id)
                logger.info("provider_linked_by_email", user_id=user.id, provider=provider.name)
            else:
                user = self._create_federated_user(provider, identity)
                created = True

        if not user.is_active:
            self._record_failure(
                "Account deactivated",
                ctx,
                user_id=user.id,
                metadata={"loginMethod": f"{provider.name}_oauth"},
            )
            raise AuthenticationError(ACCOUNT_DEACTIVATED)

        metadata = {"loginMethod": f"{provider.name}_oauth"}
        message = f"{provider.display_name} login successful"
        if self._two_factor_active(user):
            if created:
                return await self._issue_challenge(user, ctx)
            if self.sessions.verify_device_token(ctx.device_token, user.id):
                return self._complete_login(
                    user,
                    ctx,
                    message=message,
                    metadata={**metadata, "trustedDevice": True},
                    profile_picture=identity.picture,
                    with_device_token=True,
                )
            return await self._issue_challenge(user, ctx)
        return self._complete_login(
            user, ctx, message=message, metadata=metadata, profile_picture=identity.picture
        )

    def _create_federated_user(self, provider: OAuthProvider, identity: OAuthIdentity) -> User:
        try:
            user = self.store.create_user(
                identity.email,
                first_name=identity.given_name,
                last_name=identity.surname,
                role=Role.USER.value,
                chapter_id=None,
                profile_picture=identity.picture,
            )
        except ConstraintViolation as exc:
            raise ConflictError("User with this email already exists") from exc
        self.store.link_provider(user.id, provider.name, identity.provider_id)
        if self._enable_two_factor(user):
            user.is_2fa_enabled = True
        logger.info("federated_user_created", user_id=user.id, provider=provider.name)
        return user

    # -- password reset -----------------------------------------------------

    def _require_email(self, email: Optional[str]) -> str:
        if not email or not email.strip():
            raise ValidationError("Email address is required")
        if not is_valid_email(email.strip()):
            raise ValidationError("Invalid email address format")
        return normalize_email(email)

    async def forgot_password(self, email: Optional[str], ctx: RequestContext) -> AuthOutcome:
        normalized = self._require_email(email)
        user = self.store.get_user_by_email(normalized)
        if not user:
            self.activity.record(
                ActivityKind.PASSWORD_RESET_REQUEST,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                success=False,
                failure_reason="User not found",
                metadata={"email": normalized},
            )
            return AuthOutcome(message=RESET_SENT)
        if not user.is_active:
            raise ForbiddenError(ACCOUNT_DEACTIVATED)

        issued = self.tokens.issue_reset_token(user.id)
        try:
            await asyncio.to_thread(
                self.email.send_password_reset, user.email, issued.token, user.first_name
            )
        except MailDeliveryError as exc:
            logger.warning("password_reset_mail_failed", user_id=user.id, error=str(exc))
        self.activity.record(
            ActivityKind.PASSWORD_RESET_REQUEST,
            user_id=user.id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            metadata={"email": user.email},
        )
        return AuthOutcome(message=RESET_SENT)

    def verify_reset_token(self, token: Optional[str]) -> AuthOutcome:
        if not token:
            raise ValidationError("Reset token is required")
        if not self.tokens.verify_reset_token(token):
            raise ValidationError(INVALID_RESET_TOKEN)
        return AuthOutcome(message="Token is valid")

    async def reset_password(
        self, token: Optional[str], new_password: Optional[str], ctx: RequestContext
    ) -> AuthOutcome:
        if not token or not new_password:
            raise ValidationError("Token and new password are required")
        policy_error = reset_password_error(new_password)
        if policy_error:
            raise ValidationError(policy_error)
        # hash before consuming so a hashing failure leaves the token usable
        password_hash, algo = await self.hash_password(new_password)
        user_id = self.tokens.consume_reset_token(token)
        if not user_id:
            raise ValidationError(INVALID_RESET_TOKEN)
        user = self.store.update_password(user_id, password_hash, algo)
        if not user:
            raise ValidationError(INVALID_RESET_TOKEN)
        self._clear_failed_passwords(user)
        self.activity.record(
            ActivityKind.PASSWORD_RESET,
            user_id=user.id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        logger.info("password_reset_complete", user_id=user.id)
        return AuthOutcome(message="Password has been reset successfully")

    # -- email verification -------------------------------------------------

    async def verify_email(self, token: Optional[str], ctx: RequestContext) -> AuthOutcome:
        if not token:
            raise ValidationError("Verification token is required")
        record = self.tokens.verify_verification_token(token)
        if not record:
            raise ValidationError(INVALID_VERIFICATION_TOKEN)
        user = self.store.get_user(record.user_id)
        if not user:
            raise NotFoundError("User not found")
        if not user.is_active:
            raise ForbiddenError("Account is deactivated")

        if self.store.has_verified_email(user.id):
            self.tokens.consume_verification_token(record, verified=True)
            return AuthOutcome(message="Email is already verified", extra={"email": user.email})

        if not self.tokens.consume_verification_token(record, verified=True):
            raise ValidationError(INVALID_VERIFICATION_TOKEN)
        self.activity.record(
            ActivityKind.EMAIL_VERIFIED,
            user_id=user.id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            metadata={"email": record.email},
        )
        try:
            await asyncio.to_thread(self.email.send_welcome, user.email, user.first_name)
        except Exception as exc:
            logger.warning("welcome_mail_failed", user_id=user.id, error=str(exc))
        return AuthOutcome(message="Email verified successfully", extra={"email": user.email})

    async def resend_verification(
        self, email: Optional[str], ctx: RequestContext
    ) -> AuthOutcome:
        normalized = self._require_email(email)
        user = self.store.get_user_by_email(normalized)
        if not user:
            return AuthOutcome(message=VERIFICATION_SENT)
        if not user.is_active:
            raise ForbiddenError(ACCOUNT_DEACTIVATED)
        if self.store.has_verified_email(user.id):
            return AuthOutcome(message="Email is already verified.")

        issued = self.tokens.issue_verification_token(user.id, user.email)
        try:
            await asyncio.to_thread(
                self.email.send_verification_link, user.email, issued.token, user.first_name
            )
        except MailDeliveryError as exc:
            logger.warning("verification_mail_failed", user_id=user.id, error=str(exc))
            raise InternalError(
                "Internal server error during verification email request"
            ) from exc
        self.activity.record(
            ActivityKind.VERIFICATION_EMAIL_SENT,
            user_id=user.id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            metadata={"email": user.email},
        )
        return AuthOutcome(message=VERIFICATION_SENT)

    # -- current user -------------------------------------------------------

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def profile(self, user_id: str) -> Dict[str, Any]:
        user = self._require_user(user_id)
        payload = self.public_user(user)
        payload.update(
            {
                "lastLoginAt": user.last_login_at.isoformat() if user.last_login_at else None,
                "bio": user.bio or "",
                "phone": user.phone or "",
                "location": user.location or "",
                "is2faEnabled": user.is_2fa_enabled,
            }
        )
        if self.probe.has(Capability.EXTENDED_PROFILE):
            extras = user.profile_extras or {}
            payload.update(
                {
                    "specialties": extras.get("specialties") or [],
                    "teachingExperience": extras.get("teaching_experience") or 0,
                    "education": extras.get("education") or "",
                    "interests": extras.get("interests") or [],
                    "learningGoals": extras.get("learning_goals") or "",
                    "dateOfBirth": extras.get("date_of_birth"),
                }
            )
        payload["profileCompletion"] = profile_completion(user)
        return payload

    def update_profile(self, user_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        self._require_user(user_id)
        if not patch:
            raise ValidationError("No profile fields provided")
        fields: Dict[str, Any] = {}
        extras: Dict[str, Any] = {}
        for key, value in patch.items():
            mapped = PROFILE_FIELDS.get(key)
            if not mapped:
                raise ValidationError(f"Unknown profile field: {key}")
            column, in_bag = mapped
            if in_bag:
                extras[column] = value
            elif column == "profile_picture":
                fields[column] = relative_picture_path(value, self.settings.server_url)
            elif column in ("first_name", "last_name"):
                if not value or not str(value).strip():
                    raise ValidationError("First name and last name cannot be empty")
                fields[column] = str(value).strip()
            else:
                fields[column] = value
        if extras and not self.probe.has(Capability.EXTENDED_PROFILE):
            raise ValidationError("Extended profile fields are not available")
        try:
            self.store.update_profile(user_id, fields, extras or None)
        except CapabilityMissing as exc:
            raise ValidationError("Extended profile fields are not available") from exc
        self.activity.record(
            ActivityKind.PROFILE_UPDATED,
            user_id=user_id,
            metadata={"fields": sorted(patch)},
        )
        return self.profile(user_id)

    def effective_permissions(self, user_id: str) -> EffectivePermissions:
        user = self._require_user(user_id)
        return self.permissions.resolve(user.role)

    def activity_history(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        kind: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[ActivityEvent]:
        return self.activity.history_for(
            user_id, limit=limit, offset=offset, kind=kind, since=since, until=until
        )

    def open_alerts(self, user_id: str) -> List[AnomalyAlert]:
        return self.activity.alerts_for(user_id)

    def resolve_alert(self, alert_id: str, resolved_by: str) -> AnomalyAlert:
        alert = self.activity.resolve_alert(alert_id, resolved_by)
        if not alert:
            raise NotFoundError("Alert not found")
        return alert
