from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from eoty.config import Settings
from eoty.logging import get_logger
from eoty.storage.common import generate_uuid
from eoty.storage.models import EmailVerificationToken, OtpCode, PasswordResetToken

logger = get_logger(__name__)

OTP_MIN = 100000
OTP_MAX = 999999


@dataclass
class IssuedOtp:
    code: str
    code_hash: str
    expires_at: datetime


@dataclass
class IssuedToken:
    token: str
    expires_at: datetime


def hash_token(token: str) -> str:
    """One-way digest used to store URL-safe tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def hash_otp(code: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(8)
    digest = hashlib.sha256(f"{salt}:{code}".encode("utf-8")).hexdigest()
    return f"{salt}${digest}"


def otp_matches(code: str, stored: str) -> bool:
    try:
        salt, _ = stored.split("$", 1)
    except ValueError:
        return False
    return hmac.compare_digest(hash_otp(code, salt), stored)


class TokenRegistry:
    """Issue and redeem OTP codes, password-reset and email-verification tokens.

    Plaintext values are returned to the caller once and never stored. Each
    redemption relies on a conditional store write (row delete or ``used``
    flip) so a token can only be redeemed by one caller.
    """

    def __init__(self, store: Any, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- OTP ----------------------------------------------------------------

    def issue_otp(self, user_id: str) -> IssuedOtp:
        code = str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))
        now = self._now()
        expires_at = now + timedelta(minutes=self.settings.otp_ttl_minutes)
        code_hash = hash_otp(code)
        self.store.insert_otp(
            OtpCode(
                id=generate_uuid(),
                user_id=user_id,
                code_hash=code_hash,
                expires_at=expires_at,
                created_at=now,
            )
        )
        logger.info("otp_issued", user_id=user_id, expires_at=expires_at.isoformat())
        return IssuedOtp(code=code, code_hash=code_hash, expires_at=expires_at)

    def consume_otp(self, user_id: str, code: Optional[str]) -> bool:
        candidate = (code or "").strip()
        if len(candidate) != 6 or not candidate.isdigit():
            return False
        for row in self.store.list_active_otps(user_id, self._now()):
            if otp_matches(candidate, row.code_hash):
                if self.store.delete_otp(row.id):
                    logger.info("otp_consumed", user_id=user_id)
                    return True
                # lost the race to a concurrent verifier
                return False
        logger.info("otp_rejected", user_id=user_id)
        return False

    # -- password reset -----------------------------------------------------

    def issue_reset_token(self, user_id: str) -> IssuedToken:
        token = secrets.token_urlsafe(18)
        now = self._now()
        expires_at = now + timedelta(minutes=self.settings.reset_token_ttl_minutes)
        self.store.insert_reset_token(
            PasswordResetToken(
                id=generate_uuid(),
                user_id=user_id,
                token_hash=hash_token(token),
                expires_at=expires_at,
                created_at=now,
            )
        )
        return IssuedToken(token=token, expires_at=expires_at)

    def _valid_reset_row(self, token: Optional[str]) -> Optional[PasswordResetToken]:
        if not token:
            return None
        row = self.store.find_reset_token(hash_token(token))
        if not row or row.used or row.expires_at <= self._now():
            return None
        return row

    def verify_reset_token(self, token: Optional[str]) -> Optional[str]:
        """Return the owning user id without consuming the token."""
        row = self._valid_reset_row(token)
        return row.user_id if row else None

    def consume_reset_token(self, token: Optional[str]) -> Optional[str]:
        row = self._valid_reset_row(token)
        if not row:
            return None
        if not self.store.mark_reset_token_used(row.id):
            return None
        return row.user_id

    # -- email verification -------------------------------------------------

    def issue_verification_token(self, user_id: str, email: str) -> IssuedToken:
        token = secrets.token_urlsafe(18)
        now = self._now()
        expires_at = now + timedelta(hours=self.settings.verification_token_ttl_hours)
        self.store.insert_verification_token(
            EmailVerificationToken(
                id=generate_uuid(),
                user_id=user_id,
                email=email,
                token_hash=hash_token(token),
                expires_at=expires_at,
                created_at=now,
            )
        )
        return IssuedToken(token=token, expires_at=expires_at)

    def verify_verification_token(
        self, token: Optional[str]
    ) -> Optional[EmailVerificationToken]:
        if not token:
            return None
        row = self.store.find_verification_token(hash_token(token))
        if not row or row.used or row.expires_at <= self._now():
            return None
        return row

    def consume_verification_token(
        self, record: EmailVerificationToken, *, verified: bool = True
    ) -> bool:
        return self.store.mark_verification_token_used(record.id, verified=verified)
