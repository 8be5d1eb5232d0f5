from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from turnstile.api.schemas import (
    AckResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    OrganizationDecision,
    OrganizationStatusResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordResetWithToken,
    PrincipalResponse,
    RefreshRequest,
    RegisterRequest,
    ResendCodeRequest,
    ResetTokenExchange,
    ResetTokenResponse,
    TokenPairResponse,
    VerifyCodeRequest,
)
from turnstile.config import RateLimitRule
from turnstile.logging import get_logger
from turnstile.service.authorization import AuthContext
from turnstile.service.collaborators import call_collaborator
from turnstile.service.errors import AuthenticationError, NotFoundError, RateLimitedError
from turnstile.service.runtime import Runtime
from turnstile.service.session import Acknowledgement, RegistrationDraft, SessionTokens
from turnstile.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
# Refresh cookie only travels to the auth endpoints
REFRESH_COOKIE_PATH = "/v1/auth"


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _access_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    # Header wins over cookie when both are present
    return _extract_bearer(authorization) or request.cookies.get(ACCESS_COOKIE)


def require_roles(*roles: Role, verified_org: bool = True) -> Callable:
    """Dependency factory: authenticate, then check role and live org status."""

    async def dependency(
        request: Request,
        authorization: Optional[str] = Header(None),
        runtime: Runtime = Depends(get_runtime),
    ) -> AuthContext:
        return await runtime.authorizer.authorize(
            _access_token(request, authorization),
            roles or None,
            require_verified_org=verified_org,
        )

    return dependency


get_current_context = require_roles(verified_org=False)


async def get_optional_context(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Optional[AuthContext]:
    token = _access_token(request, authorization)
    if not token:
        return None
    try:
        return runtime.authorizer.authenticate(token)
    except AuthenticationError:
        return None


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _enforce_rate_limit(runtime: Runtime, scope: str, identity: str, rule: RateLimitRule) -> None:
    decision = runtime.rate_limiter.check(f"{scope}:{identity}", rule.limit, rule.window_seconds)
    if not decision.allowed:
        raise RateLimitedError(retry_after=decision.retry_after)


def _apply_session_cookies(response: Response, runtime: Runtime, tokens: SessionTokens) -> None:
    secure = runtime.settings.cookie_secure
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=tokens.access_expires_at,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite="strict",
        expires=tokens.refresh_expires_at,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_session_cookies(response: Response, runtime: Runtime) -> None:
    secure = runtime.settings.cookie_secure
    response.delete_cookie(ACCESS_COOKIE, path="/", secure=secure, httponly=True, samesite="lax")
    response.delete_cookie(
        REFRESH_COOKIE, path=REFRESH_COOKIE_PATH, secure=secure, httponly=True, samesite="strict"
    )


def _token_envelope(tokens: SessionTokens) -> Envelope:
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=tokens.access_token,
            access_expires_at=tokens.access_expires_at,
            refresh_token=tokens.refresh_token,
            refresh_expires_at=tokens.refresh_expires_at,
            principal=PrincipalResponse.from_principal(tokens.principal),
        ),
    )


def _ack_envelope(ack: Acknowledgement) -> Envelope:
    return Envelope(
        status="ok",
        data=AckResponse(message=ack.message, subject_id=ack.subject_id, debug_code=ack.debug_code),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, runtime: Runtime = Depends(get_runtime)):
    _enforce_rate_limit(
        runtime, "register", _client_address(request), runtime.settings.register_rate_limit
    )
    ack = await runtime.sessions.complete_registration(
        RegistrationDraft(
            email=body.email,
            secret=body.password,
            role=body.role,
            name=body.name,
            organization_name=body.organization_name,
        )
    )
    return _ack_envelope(ack)


@router.post("/auth/verify-code", response_model=Envelope, tags=["auth"])
async def verify_code(
    body: VerifyCodeRequest, response: Response, runtime: Runtime = Depends(get_runtime)
):
    _enforce_rate_limit(runtime, "otp-verify", body.email, runtime.settings.otp_verify_rate_limit)
    tokens = await runtime.sessions.verify_email(body.email, body.code)
    _apply_session_cookies(response, runtime, tokens)
    return _token_envelope(tokens)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response, runtime: Runtime = Depends(get_runtime)):
    _enforce_rate_limit(runtime, "login", body.email, runtime.settings.login_rate_limit)
    tokens = await runtime.sessions.login(body.email, body.password)
    _apply_session_cookies(response, runtime, tokens)
    return _token_envelope(tokens)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    presented = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not presented:
        raise AuthenticationError("invalid or expired token")
    tokens = await runtime.sessions.refresh(presented)
    _apply_session_cookies(response, runtime, tokens)
    return _token_envelope(tokens)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    presented = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    await runtime.sessions.logout(presented)
    _clear_session_cookies(response, runtime)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    body: PasswordResetRequest, runtime: Runtime = Depends(get_runtime)
):
    _enforce_rate_limit(
        runtime, "password-reset", body.email, runtime.settings.password_reset_rate_limit
    )
    ack = await runtime.sessions.request_password_reset(body.email)
    return _ack_envelope(ack)


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(
    body: PasswordResetConfirm, response: Response, runtime: Runtime = Depends(get_runtime)
):
    _enforce_rate_limit(runtime, "otp-verify", body.email, runtime.settings.otp_verify_rate_limit)
    await runtime.sessions.complete_password_reset(body.email, body.code, body.new_password)
    _clear_session_cookies(response, runtime)
    return Envelope(status="ok", data={"message": "password updated; sign in again"})


@router.post("/auth/password-reset/exchange", response_model=Envelope, tags=["auth"])
async def exchange_reset_code(body: ResetTokenExchange, runtime: Runtime = Depends(get_runtime)):
    _enforce_rate_limit(runtime, "otp-verify", body.email, runtime.settings.otp_verify_rate_limit)
    issued = await runtime.sessions.exchange_reset_code(body.email, body.code)
    return Envelope(
        status="ok",
        data=ResetTokenResponse(reset_token=issued.token, expires_at=issued.expires_at),
    )


@router.post("/auth/password-reset/complete", response_model=Envelope, tags=["auth"])
async def complete_password_reset(
    body: PasswordResetWithToken, response: Response, runtime: Runtime = Depends(get_runtime)
):
    await runtime.sessions.complete_password_reset_with_token(body.reset_token, body.new_password)
    _clear_session_cookies(response, runtime)
    return Envelope(status="ok", data={"message": "password updated; sign in again"})


@router.post("/auth/resend-code", response_model=Envelope, tags=["auth"])
async def resend_code(body: ResendCodeRequest, runtime: Runtime = Depends(get_runtime)):
    _enforce_rate_limit(runtime, "otp-resend", body.email, runtime.settings.otp_resend_rate_limit)
    ack = await runtime.sessions.resend_code(body.email, body.purpose)
    return _ack_envelope(ack)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(
    context: AuthContext = Depends(get_current_context),
    runtime: Runtime = Depends(get_runtime),
):
    principal = await runtime.sessions.current_principal(context.subject_id)
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.get("/org/status", response_model=Envelope, tags=["org"])
async def organization_status(context: AuthContext = Depends(require_roles(Role.ORG_ADMIN))):
    organization = context.organization
    return Envelope(
        status="ok",
        data=OrganizationStatusResponse(
            status=organization.status,
            rejection_reason=organization.rejection_reason,
            organization_id=organization.organization_id,
        ),
    )


@router.post(
    "/admin/organizations/{principal_id}/status", response_model=Envelope, tags=["admin"]
)
async def decide_organization(
    principal_id: str,
    body: OrganizationDecision,
    context: AuthContext = Depends(require_roles(Role.SYSTEM_ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    state = await call_collaborator(
        "set_organization_status",
        runtime.directory.set_organization_status,
        principal_id,
        body.status,
        body.rejection_reason,
        timeout=runtime.settings.collaborator_timeout_seconds,
    )
    if state is None:
        raise NotFoundError("organization not found")
    logger.info(
        "organization_decision_recorded",
        admin_id=context.subject_id,
        principal_id=principal_id,
        status=state.status.value,
    )
    return Envelope(
        status="ok",
        data=OrganizationStatusResponse(
            status=state.status,
            rejection_reason=state.rejection_reason,
            organization_id=state.organization_id,
        ),
    )


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def session_state(context: Optional[AuthContext] = Depends(get_optional_context)):
    """Report whether the caller holds a valid access token, without failing."""
    if context is None:
        return Envelope(status="ok", data={"authenticated": False})
    return Envelope(
        status="ok",
        data={
            "authenticated": True,
            "subject_id": context.subject_id,
            "role": context.role.value,
            "expires_at": context.claims.expires_at.isoformat(),
        },
    )
