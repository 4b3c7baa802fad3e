from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_STRING_LENGTH = 1024


class _Request(BaseModel):
    """Request bodies accept camelCase aliases and snake_case names alike.

    Fields are optional so the service layer can answer with its own messages
    for missing values rather than a schema error.
    """

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=False)


class Envelope(BaseModel):
    """Response wrapper shared by every endpoint."""

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    code: Optional[str] = None

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class RegisterRequest(_Request):
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=128)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=128)
    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=128)
    chapter: Optional[Union[int, str]] = None
    role: Optional[str] = Field(default=None, max_length=32)

    @field_validator("chapter", mode="before")
    @classmethod
    def _chapter_as_text(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return str(value)
        return value


class LoginRequest(_Request):
    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=128)


class VerifyTwoFactorRequest(_Request):
    user_id: Optional[str] = Field(default=None, alias="userId", max_length=64)
    code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("code", mode="before")
    @classmethod
    def _code_as_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return f"{value:06d}"
        return value


class OAuthCallbackRequest(_Request):
    code: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH * 4)
    redirect_uri: Optional[str] = Field(default=None, alias="redirectUri", max_length=2048)


class EmailRequest(_Request):
    email: Optional[str] = Field(default=None, max_length=320)


class TokenRequest(_Request):
    token: Optional[str] = Field(default=None, max_length=256)


class ResetPasswordRequest(_Request):
    token: Optional[str] = Field(default=None, max_length=256)
    new_password: Optional[str] = Field(default=None, alias="newPassword", max_length=128)


class ActivityEventResponse(BaseModel):
    id: Optional[str] = None
    activityType: str
    ipAddress: Optional[str] = None
    userAgent: Optional[str] = None
    deviceType: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    location: Optional[str] = None
    success: bool
    failureReason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    createdAt: Optional[datetime] = None


class AlertResponse(BaseModel):
    id: str
    alertType: str
    description: str
    severity: str
    activityData: Dict[str, Any] = Field(default_factory=dict)
    isResolved: bool = False
    resolvedBy: Optional[str] = None
    resolvedAt: Optional[datetime] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class PermissionsResponse(BaseModel):
    role: str
    permissions: List[str] = Field(default_factory=list)
