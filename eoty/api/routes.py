from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, Query, Request, Response

from eoty.api.schemas import (
    ActivityEventResponse,
    AlertResponse,
    EmailRequest,
    Envelope,
    LoginRequest,
    OAuthCallbackRequest,
    PermissionsResponse,
    RegisterRequest,
    ResetPasswordRequest,
    TokenRequest,
    VerifyTwoFactorRequest,
)
from eoty.logging import get_logger
from eoty.service.auth import AuthOutcome, RequestContext
from eoty.service.errors import AuthenticationError, ForbiddenError
from eoty.service.runtime import get_runtime
from eoty.service.sessions import SessionClaims
from eoty.storage.models import ActivityEvent, AnomalyAlert, Role

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

REMEMBER_DEVICE_COOKIE = "remember_device"


def _client_ip(request: Request) -> Optional[str]:
    # proxy headers are resolved by uvicorn (--proxy-headers / --forwarded-allow-ips)
    return request.client.host if request.client else None


def get_request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        device_token=request.cookies.get(REMEMBER_DEVICE_COOKIE),
    )


async def get_optional_principal(
    authorization: Optional[str] = Header(None),
) -> Optional[SessionClaims]:
    runtime = get_runtime()
    token = runtime.sessions.extract_bearer(authorization)
    if not token:
        return None
    return runtime.sessions.verify_session(token)


async def get_principal(
    authorization: Optional[str] = Header(None),
) -> SessionClaims:
    runtime = get_runtime()
    token = runtime.sessions.extract_bearer(authorization)
    if not token:
        raise AuthenticationError("Access token required")
    claims = runtime.sessions.verify_session(token)
    if not claims:
        raise AuthenticationError("Invalid or expired token")
    return claims


async def get_admin_principal(
    principal: SessionClaims = Depends(get_principal),
) -> SessionClaims:
    if principal.role != Role.ADMIN.value:
        raise ForbiddenError("Admin access required")
    return principal


def _set_device_cookie(response: Response, token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        REMEMBER_DEVICE_COOKIE,
        token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.device_token_ttl_days * 24 * 60 * 60,
        path="/",
    )


def _outcome_envelope(outcome: AuthOutcome, response: Response) -> Envelope:
    runtime = get_runtime()
    if outcome.device_token:
        _set_device_cookie(response, outcome.device_token)
    data = runtime.auth.outcome_payload(outcome)
    return Envelope(success=True, message=outcome.message, data=data or None)


def _event_payload(event: ActivityEvent) -> Dict[str, Any]:
    return ActivityEventResponse(
        id=event.id,
        activityType=event.kind,
        ipAddress=event.ip_address,
        userAgent=event.user_agent,
        deviceType=event.device_type,
        browser=event.browser,
        os=event.os,
        location=event.location,
        success=event.success,
        failureReason=event.failure_reason,
        metadata=event.metadata or {},
        createdAt=event.created_at,
    ).model_dump(mode="json")


def _alert_payload(alert: AnomalyAlert) -> Dict[str, Any]:
    return AlertResponse(
        id=alert.id,
        alertType=alert.kind,
        description=alert.description,
        severity=alert.severity,
        activityData=alert.activity_data or {},
        isResolved=alert.is_resolved,
        resolvedBy=alert.resolved_by,
        resolvedAt=alert.resolved_at,
        createdAt=alert.created_at,
        updatedAt=alert.updated_at,
    ).model_dump(mode="json")


@router.post("/register", response_model=Envelope, response_model_exclude_none=True, status_code=201)
async def register(
    body: RegisterRequest,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
):
    """Create an account bound to an active chapter.

    Sends one onboarding mail carrying the sign-in code and the email
    verification link; a mail failure does not fail the registration.
    """
    runtime = get_runtime()
    outcome = await runtime.auth.register(
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        password=body.password,
        chapter=body.chapter,
        role=body.role,
        ctx=ctx,
    )
    response.status_code = outcome.status_code
    return Envelope(success=True, message=outcome.message, data=outcome.extra)


@router.post("/login", response_model=Envelope, response_model_exclude_none=True)
async def login(
    body: LoginRequest,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
):
    """Check credentials and either mint a session or issue an email challenge."""
    runtime = get_runtime()
    outcome = await runtime.auth.login(body.email, body.password, ctx)
    return _outcome_envelope(outcome, response)


@router.post("/verify-2fa", response_model=Envelope, response_model_exclude_none=True)
async def verify_two_factor(
    body: VerifyTwoFactorRequest,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
):
    runtime = get_runtime()
    outcome = await runtime.auth.verify_two_factor(body.user_id, body.code, ctx)
    return _outcome_envelope(outcome, response)


@router.post("/logout", response_model=Envelope, response_model_exclude_none=True)
async def logout(
    principal: Optional[SessionClaims] = Depends(get_optional_principal),
    ctx: RequestContext = Depends(get_request_context),
):
    runtime = get_runtime()
    outcome = runtime.auth.logout(principal, ctx)
    return Envelope(success=True, message=outcome.message)


async def _federated(
    provider: str, body: OAuthCallbackRequest, response: Response, ctx: RequestContext
) -> Envelope:
    runtime = get_runtime()
    outcome = await runtime.auth.federated_login(provider, body.code, body.redirect_uri, ctx)
    return _outcome_envelope(outcome, response)


@router.post("/google/callback", response_model=Envelope, response_model_exclude_none=True)
async def google_callback(
    body: OAuthCallbackRequest,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
):
    return await _federated("google", body, response, ctx)


@router.post("/facebook/callback", response_model=Envelope, response_model_exclude_none=True)
async def facebook_callback(
    body: OAuthCallbackRequest,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
):
    return await _federated("facebook", body, response, ctx)


@router.post("/forgot-password", response_model=Envelope, response_model_exclude_none=True)
async def forgot_password(
    body: EmailRequest, ctx: RequestContext = Depends(get_request_context)
):
    """Always answers with the same message when the address is unknown."""
    runtime = get_runtime()
    outcome = await runtime.auth.forgot_password(body.email, ctx)
    return Envelope(success=True, message=outcome.message)


@router.post("/verify-reset-token", response_model=Envelope, response_model_exclude_none=True)
async def verify_reset_token(body: TokenRequest):
    runtime = get_runtime()
    outcome = runtime.auth.verify_reset_token(body.token)
    return Envelope(success=True, message=outcome.message)


@router.post("/reset-password", response_model=Envelope, response_model_exclude_none=True)
async def reset_password(
    body: ResetPasswordRequest, ctx: RequestContext = Depends(get_request_context)
):
    runtime = get_runtime()
    outcome = await runtime.auth.reset_password(body.token, body.new_password, ctx)
    return Envelope(success=True, message=outcome.message)


@router.post("/verify-email", response_model=Envelope, response_model_exclude_none=True)
async def verify_email(body: TokenRequest, ctx: RequestContext = Depends(get_request_context)):
    runtime = get_runtime()
    outcome = await runtime.auth.verify_email(body.token, ctx)
    return Envelope(success=True, message=outcome.message, data=outcome.extra or None)


@router.post("/resend-verification", response_model=Envelope, response_model_exclude_none=True)
async def resend_verification(
    body: EmailRequest, ctx: RequestContext = Depends(get_request_context)
):
    runtime = get_runtime()
    outcome = await runtime.auth.resend_verification(body.email, ctx)
    return Envelope(success=True, message=outcome.message)


@router.get("/me", response_model=Envelope, response_model_exclude_none=True)
async def me(principal: SessionClaims = Depends(get_principal)):
    runtime = get_runtime()
    return Envelope(success=True, data={"user": runtime.auth.profile(principal.user_id)})


@router.put("/profile", response_model=Envelope, response_model_exclude_none=True)
async def update_profile(
    patch: Dict[str, Any] = Body(...),
    principal: SessionClaims = Depends(get_principal),
):
    runtime = get_runtime()
    user = runtime.auth.update_profile(principal.user_id, patch)
    return Envelope(success=True, message="Profile updated successfully", data={"user": user})


@router.get("/permissions", response_model=Envelope, response_model_exclude_none=True)
async def permissions(principal: SessionClaims = Depends(get_principal)):
    runtime = get_runtime()
    effective = runtime.auth.effective_permissions(principal.user_id)
    payload = PermissionsResponse(role=effective.role, permissions=effective.permissions)
    return Envelope(success=True, data=payload.model_dump())


@router.get("/activity-logs", response_model=Envelope, response_model_exclude_none=True)
async def activity_logs(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    activity_type: Optional[str] = Query(None, alias="activityType", max_length=64),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    principal: SessionClaims = Depends(get_principal),
):
    runtime = get_runtime()
    events = runtime.auth.activity_history(
        principal.user_id,
        limit=limit,
        offset=offset,
        kind=activity_type,
        since=since,
        until=until,
    )
    return Envelope(success=True, data={"logs": [_event_payload(e) for e in events]})


@router.get("/alerts", response_model=Envelope, response_model_exclude_none=True)
async def alerts(principal: SessionClaims = Depends(get_principal)):
    runtime = get_runtime()
    open_alerts = runtime.auth.open_alerts(principal.user_id)
    return Envelope(success=True, data={"alerts": [_alert_payload(a) for a in open_alerts]})


@router.post(
    "/alerts/{alert_id}/resolve", response_model=Envelope, response_model_exclude_none=True
)
async def resolve_alert(alert_id: str, principal: SessionClaims = Depends(get_admin_principal)):
    runtime = get_runtime()
    alert = runtime.auth.resolve_alert(alert_id, principal.user_id)
    return Envelope(success=True, message="Alert resolved", data={"alert": _alert_payload(alert)})
