from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import RedirectResponse

from authgate.api.error_handling import error_response
from authgate.api.schemas import (
    AccountOptionResponse,
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    LinkAccountRequest,
    LinkSessionResponse,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    TokenResponse,
    UserResponse,
    ValidateRequest,
)
from authgate.logging import get_logger
from authgate.service.auth import AuthResult
from authgate.service.errors import InvalidToken, ServiceError
from authgate.service.runtime import Runtime, get_runtime
from authgate.storage.models import Subject

logger = get_logger(__name__)

router = APIRouter()


def current_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    return runtime or get_runtime()


def _device_info(request: Request) -> Optional[str]:
    user_agent = request.headers.get("user-agent")
    return user_agent[:256] if user_agent else None


def _user(subject: Subject) -> UserResponse:
    return UserResponse(**subject.to_dict())


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=_user(result.subject),
        tokens=TokenResponse(**result.tokens.to_response()),
    )


async def bearer_subject(
    authorization: Optional[str] = Header(default=None),
    runtime: Runtime = Depends(current_runtime),
) -> Subject:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise InvalidToken("Missing bearer token")
    return await runtime.auth.authenticate(token.strip())


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest, request: Request, runtime: Runtime = Depends(current_runtime)
):
    result = await runtime.auth.register(
        body.email, body.username, body.password, device_info=_device_info(request)
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest, request: Request, runtime: Runtime = Depends(current_runtime)
):
    result = await runtime.auth.login(
        body.identifier, body.password, device_info=_device_info(request)
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, runtime: Runtime = Depends(current_runtime)):
    pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=TokenResponse(**pair.to_response()))


@router.post("/validate", response_model=Envelope, tags=["auth"])
async def validate(body: ValidateRequest, runtime: Runtime = Depends(current_runtime)):
    result = await runtime.auth.validate_access(body.access_token)
    if not result.valid or result.subject is None:
        return error_response(401, "Invalid token", data={"valid": False})
    return Envelope(status="ok", data={"valid": True, "user": _user(result.subject)})


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, runtime: Runtime = Depends(current_runtime)):
    """Revoke the presented refresh token. Always answers 200."""
    refresh_token = None
    try:
        # pydantic's ValidationError is a ValueError too
        refresh_token = LogoutRequest.model_validate(await request.json()).refresh_token
    except ValueError:
        logger.info("logout_body_unreadable")
    if refresh_token:
        await runtime.auth.logout(refresh_token)
    return Envelope(status="ok", data={"message": "Logged out"})


@router.post("/logout/all", response_model=Envelope, tags=["auth"])
async def logout_all(
    subject: Subject = Depends(bearer_subject),
    runtime: Runtime = Depends(current_runtime),
):
    revoked = await runtime.auth.logout_all(subject.id)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(
    subject: Subject = Depends(bearer_subject),
    runtime: Runtime = Depends(current_runtime),
):
    records = await runtime.auth.list_sessions(subject.id)
    sessions = [
        SessionResponse(
            refresh_token_id=record.refresh_token_id,
            created_at=record.created_at,
            last_activity=record.last_activity,
            device_info=record.device_info,
        )
        for record in records
    ]
    return Envelope(status="ok", data={"sessions": sessions})


@router.get("/profile", response_model=Envelope, tags=["auth"])
async def profile(subject: Subject = Depends(bearer_subject)):
    return Envelope(status="ok", data={"user": _user(subject)})


@router.post("/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest, runtime: Runtime = Depends(current_runtime)
):
    """Start a password reset. The answer is identical for unknown accounts."""
    await runtime.auth.request_password_reset(body.identifier)
    return Envelope(
        status="ok",
        data={"message": "If an account exists, a password reset link has been sent"},
    )


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest, runtime: Runtime = Depends(current_runtime)
):
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "Password has been reset"})


@router.get("/oauth/session/{session_id}", response_model=Envelope, tags=["oauth"])
async def get_oauth_session(session_id: str, runtime: Runtime = Depends(current_runtime)):
    link = await runtime.auth.get_link_session(session_id)
    return Envelope(
        status="ok",
        data=LinkSessionResponse(
            email=link.email,
            provider=link.provider,
            candidates=[
                AccountOptionResponse(
                    subject_id=c.subject_id,
                    username=c.username,
                    display_name=c.display_name,
                    avatar_url=c.avatar_url,
                )
                for c in link.candidates
            ],
        ),
    )


@router.post("/oauth/link", response_model=Envelope, tags=["oauth"])
async def link_oauth_account(
    body: LinkAccountRequest, request: Request, runtime: Runtime = Depends(current_runtime)
):
    result = await runtime.auth.select_oauth_account(
        body.session_id, body.subject_id, device_info=_device_info(request)
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.get("/oauth/{provider}", tags=["oauth"])
async def oauth_start(
    provider: str,
    redirect_url: Optional[str] = Query(default=None, max_length=2048),
    runtime: Runtime = Depends(current_runtime),
):
    url = await runtime.auth.start_oauth(provider, redirect_url)
    return RedirectResponse(url, status_code=302)


@router.get("/oauth/{provider}/callback", tags=["oauth"])
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(default=None, max_length=2048),
    state: Optional[str] = Query(default=None, max_length=512),
    error: Optional[str] = Query(default=None, max_length=256),
    runtime: Runtime = Depends(current_runtime),
):
    """Finish the provider round trip and hand the result to the frontend.

    Tokens travel in the redirect query string. Failures never surface as an
    error page; the frontend gets ``error=...`` instead.
    """
    frontend = runtime.settings.oauth_frontend_callback_url

    def _redirect(base: str, params: dict) -> RedirectResponse:
        separator = "&" if "?" in base else "?"
        return RedirectResponse(f"{base}{separator}{urlencode(params)}", status_code=302)

    if error:
        logger.warning("oauth_provider_error", provider=provider, provider_error=error)
        return _redirect(frontend, {"error": "auth_failed"})
    try:
        outcome = await runtime.auth.complete_oauth(provider, code or "", state or "")
    except ServiceError as exc:
        logger.warning("oauth_callback_failed", provider=provider, error=exc.message)
        return _redirect(frontend, {"error": "auth_failed"})
    except Exception as exc:
        logger.exception(
            "oauth_callback_error", provider=provider, error_type=type(exc).__name__
        )
        return _redirect(frontend, {"error": "internal_error"})

    target = outcome.redirect_url or frontend
    if outcome.needs_selection:
        return _redirect(target, {"selectAccount": "true", "sessionId": outcome.link_handle})
    tokens = outcome.result.tokens
    return _redirect(
        target,
        {"accessToken": tokens.access_token, "refreshToken": tokens.refresh_token},
    )


@router.get("/health", tags=["health"])
async def health(runtime: Runtime = Depends(current_runtime)):
    return {"status": "healthy", "service": "authgate", "build": runtime.settings.build_sha}


@router.get("/health/detailed", tags=["health"])
async def health_detailed(runtime: Runtime = Depends(current_runtime)):
    checks = {}
    try:
        checks["cache"] = "healthy" if await runtime.cache.ping() else "unhealthy"
    except Exception as exc:
        logger.warning("health_check_cache_failed", error=str(exc))
        checks["cache"] = "unhealthy"
    try:
        checks["identity"] = "healthy" if await runtime.identity.health_check() else "unhealthy"
    except Exception as exc:
        logger.warning("health_check_identity_failed", error=str(exc))
        checks["identity"] = "unhealthy"
    overall = "healthy" if all(v == "healthy" for v in checks.values()) else "degraded"
    return {"status": overall, "checks": checks, "build": runtime.settings.build_sha}
