from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from eoty.logging import get_logger

logger = get_logger(__name__)


class MailTransportKind(str, Enum):
    """Outbound mail transports selectable at process start."""

    SMTP = "smtp"
    API = "api"


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings for the identity and session service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field("postgresql://localhost:5432/eoty", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and other deterministic test behaviour.",
    )
    cors_allow_origins: str = env_field(
        "http://localhost:3000",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed browser origins",
    )
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    server_url: str = env_field("http://localhost:8000", "SERVER_URL")

    # Signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("eoty", "JWT_ISSUER")
    jwt_audience: str = env_field("eoty-clients", "JWT_AUDIENCE")

    # Lifetimes
    session_ttl_minutes: int = env_field(24 * 60, "SESSION_TTL_MINUTES")
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    verification_token_ttl_hours: int = env_field(24, "VERIFICATION_TOKEN_TTL_HOURS")
    device_token_ttl_days: int = env_field(30, "DEVICE_TOKEN_TTL_DAYS")

    # Password hashing (argon2id work factors)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")

    # Mail
    email_service_type: MailTransportKind = env_field(
        MailTransportKind.SMTP, "EMAIL_SERVICE_TYPE"
    )
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_service_api_url: str | None = env_field(None, "EMAIL_SERVICE_API_URL")
    email_service_api_key: str | None = env_field(None, "EMAIL_SERVICE_API_KEY")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("EOTY Platform", "EMAIL_FROM_NAME")

    # OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    facebook_app_id: str | None = env_field(None, "FACEBOOK_APP_ID")
    facebook_app_secret: str | None = env_field(None, "FACEBOOK_APP_SECRET")
    oauth_timeout_seconds: float = env_field(10.0, "OAUTH_TIMEOUT_SECONDS")

    # Anomaly rules
    anomaly_multiple_ips_threshold: int = env_field(
        3,
        "ANOMALY_MULTIPLE_IPS_THRESHOLD",
        description="Alert when distinct login origins in 24h exceed this count",
    )
    anomaly_failed_attempts_threshold: int = env_field(
        5, "ANOMALY_FAILED_ATTEMPTS_THRESHOLD"
    )
    anomaly_failed_attempts_window_minutes: int = env_field(
        15, "ANOMALY_FAILED_ATTEMPTS_WINDOW_MINUTES"
    )
    anomaly_dedup_window_minutes: int = env_field(60, "ANOMALY_DEDUP_WINDOW_MINUTES")

    # Lockout (disabled unless explicitly turned on)
    account_lockout_enabled: bool = env_field(False, "ACCOUNT_LOCKOUT_ENABLED")
    account_lockout_threshold: int = env_field(5, "ACCOUNT_LOCKOUT_THRESHOLD")
    account_lockout_minutes: int = env_field(15, "ACCOUNT_LOCKOUT_MINUTES")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("email_service_type", mode="before")
    @classmethod
    def _validate_mail_transport(cls, value: Any) -> MailTransportKind:
        if isinstance(value, MailTransportKind):
            return value
        normalized = str(value or "").strip().lower()
        try:
            return MailTransportKind(normalized)
        except ValueError:
            logger.warning("email_service_type_unknown", value=normalized, fallback="smtp")
            return MailTransportKind.SMTP

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value or not value.strip():
            raise ValueError("JWT_SECRET must be set")
        return value

    @field_validator(
        "session_ttl_minutes",
        "otp_ttl_minutes",
        "reset_token_ttl_minutes",
        "verification_token_ttl_hours",
        "device_token_ttl_days",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
