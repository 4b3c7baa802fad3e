from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from eoty.config import Settings
from eoty.logging import get_logger
from eoty.storage.models import User

logger = get_logger(__name__)

SESSION_TOKEN = "session"
DEVICE_TOKEN = "device"


@dataclass
class SessionClaims:
    user_id: str
    email: str
    role: str
    given_name: str
    surname: str
    chapter: Optional[int]
    expires_at: datetime
    jti: str


class SessionIssuer:
    """Mint and verify HS256 bearer credentials.

    Session tokens carry the principal's identity claims; trusted-device tokens
    carry only the subject. Both share the process-wide signing secret and are
    never stored server-side.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        if not payload.get("sub"):
            return None
        return payload

    def _base_claims(self, subject: str, token_type: str, ttl: timedelta) -> dict[str, Any]:
        now = self._now()
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "token_type": token_type,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }

    def issue_session(self, user: User) -> str:
        payload = self._base_claims(
            user.id, SESSION_TOKEN, timedelta(minutes=self.settings.session_ttl_minutes)
        )
        payload.update(
            {
                "email": user.email,
                "role": user.role,
                "given_name": user.first_name,
                "family_name": user.last_name,
                "chapter": user.chapter_id,
            }
        )
        return self._encode_jwt(payload)

    def issue_device_token(self, user_id: str) -> str:
        payload = self._base_claims(
            user_id, DEVICE_TOKEN, timedelta(days=self.settings.device_token_ttl_days)
        )
        return self._encode_jwt(payload)

    def verify_session(self, token: Optional[str]) -> Optional[SessionClaims]:
        if not token:
            return None
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != SESSION_TOKEN:
            return None
        required = ("email", "role", "given_name", "family_name", "chapter")
        if any(key not in payload for key in required):
            return None
        return SessionClaims(
            user_id=str(payload["sub"]),
            email=payload["email"],
            role=payload["role"],
            given_name=payload["given_name"],
            surname=payload["family_name"],
            chapter=payload["chapter"],
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            jti=str(payload.get("jti", "")),
        )

    def verify_device_token(self, token: Optional[str], user_id: str) -> bool:
        if not token:
            return False
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != DEVICE_TOKEN:
            return False
        return hmac.compare_digest(str(payload.get("sub")), str(user_id))

    def extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None
