from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional
from urllib.parse import urlencode, urlparse

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import (
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidToken,
    NotFoundError,
    ServerError,
    ServiceError,
    SubjectNotFound,
    ValidationError,
)
from authgate.service.identity import IdentityBridge
from authgate.service.oauth import OAuthClient
from authgate.service.tokens import REFRESH, TokenIssuer, TokenPair
from authgate.storage.ephemeral import (
    LinkSessionStore,
    OAuthStateStore,
    PasswordResetStore,
)
from authgate.storage.models import LinkSession, SessionRecord, Subject
from authgate.storage.sessions import RevocationStore, SessionStore

logger = get_logger(__name__)

ROTATED_MARKER = "rotated"
LOGOUT_MARKER = "logout"


class LineageState(str, Enum):
    """Where a refresh token stands in its rotation chain.

    ACTIVE -> ROTATED (superseded by a refresh) or REVOKED (logout), then
    EXPIRED once the token's own lifetime ends. Nothing returns to ACTIVE.
    """

    ACTIVE = "active"
    ROTATED = "rotated"
    REVOKED = "revoked"
    EXPIRED = "expired"


@dataclass
class AuthResult:
    subject: Subject
    tokens: TokenPair

    def to_response(self) -> dict[str, Any]:
        return {"user": self.subject.to_dict(), "tokens": self.tokens.to_response()}


@dataclass
class ValidationResult:
    valid: bool
    subject: Optional[Subject] = None


@dataclass
class OAuthOutcome:
    """Either a finished login or a handle for picking among accounts."""

    result: Optional[AuthResult] = None
    link_handle: Optional[str] = None
    redirect_url: Optional[str] = None

    @property
    def needs_selection(self) -> bool:
        return self.link_handle is not None


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}".lower()


class _RefreshRejected(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class AuthCoordinator:
    """Server-side orchestration of sign-in, rotation and sign-out.

    All collaborators are injected; nothing here reaches for module globals,
    so tests can hand in the in-memory stores and identity bridge.
    """

    def __init__(
        self,
        settings: Settings,
        issuer: TokenIssuer,
        sessions: SessionStore,
        revocations: RevocationStore,
        identity: IdentityBridge,
        *,
        link_sessions: LinkSessionStore,
        oauth_states: OAuthStateStore,
        oauth_client: OAuthClient,
        reset_tokens: PasswordResetStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.issuer = issuer
        self.sessions = sessions
        self.revocations = revocations
        self.identity = identity
        self.link_sessions = link_sessions
        self.oauth_states = oauth_states
        self.oauth_client = oauth_client
        self.reset_tokens = reset_tokens
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def _start_session(
        self,
        subject: Subject,
        *,
        device_info: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> TokenPair:
        pair = self.issuer.issue(subject.id, subject.email)
        now = self._now()
        record = SessionRecord(
            subject_id=subject.id,
            email=subject.email,
            refresh_token_id=pair.refresh_token_id,
            created_at=created_at or now,
            last_activity=now,
            device_info=device_info,
        )
        await self.sessions.put(
            subject.id, pair.refresh_token_id, record, self.issuer.refresh_ttl_seconds
        )
        return pair

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        device_info: Optional[str] = None,
    ) -> AuthResult:
        subject = await self.identity.create_subject(email.strip().lower(), username, password)
        tokens = await self._start_session(subject, device_info=device_info)
        logger.info("user_registered", subject_id=subject.id, refresh_token_id=tokens.refresh_token_id)
        return AuthResult(subject=subject, tokens=tokens)

    async def login(
        self, identifier: str, password: str, device_info: Optional[str] = None
    ) -> AuthResult:
        subject = await self.identity.verify_credentials(identifier.strip(), password)
        if subject is None:
            logger.warning("login_rejected")
            raise InvalidCredentials()
        tokens = await self._start_session(subject, device_info=device_info)
        logger.info("login_success", subject_id=subject.id, refresh_token_id=tokens.refresh_token_id)
        return AuthResult(subject=subject, tokens=tokens)

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token.

        Every failure, expected or not, leaves as InvalidRefreshToken so the
        caller cannot tell which check failed. The real reason is logged.
        """
        try:
            return await self._rotate(refresh_token)
        except _RefreshRejected as exc:
            logger.warning("refresh_rejected", reason=exc.reason)
        except SubjectNotFound:
            logger.warning("refresh_rejected", reason="subject_not_found")
        except Exception as exc:
            logger.error(
                "refresh_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
        raise InvalidRefreshToken()

    async def _rotate(self, refresh_token: str) -> TokenPair:
        try:
            claims = self.issuer.verify_refresh(refresh_token)
        except InvalidToken:
            raise _RefreshRejected("invalid_token") from None
        if await self.revocations.is_revoked(claims.token_id):
            raise _RefreshRejected("revoked")
        record = await self.sessions.get(claims.subject_id, claims.token_id)
        if record is None:
            raise _RefreshRejected("session_missing")
        subject = await self.identity.get_subject(claims.subject_id)
        if subject is None:
            raise SubjectNotFound()

        # The single-key delete is the claim: of several concurrent rotations
        # of one token only the caller that removed the record continues
        if not await self.sessions.delete(claims.subject_id, claims.token_id):
            raise _RefreshRejected("rotation_lost")
        await self.revocations.revoke(
            claims.token_id, self.issuer.refresh_ttl_seconds, reason=ROTATED_MARKER
        )
        pair = await self._start_session(
            subject, device_info=record.device_info, created_at=record.created_at
        )
        logger.info(
            "refresh_rotated",
            subject_id=subject.id,
            old_token_id=claims.token_id,
            refresh_token_id=pair.refresh_token_id,
        )
        return pair

    async def validate_access(self, access_token: Any) -> ValidationResult:
        """Report whether an access token is currently usable. Never raises."""
        try:
            claims = self.issuer.verify_access(access_token)
            if await self.revocations.is_revoked(claims.token_id):
                return ValidationResult(valid=False)
            subject = await self.identity.get_subject(claims.subject_id)
            if subject is None:
                return ValidationResult(valid=False)
            return ValidationResult(valid=True, subject=subject)
        except InvalidToken:
            return ValidationResult(valid=False)
        except Exception as exc:
            logger.warning(
                "validate_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return ValidationResult(valid=False)

    async def authenticate(self, access_token: Any) -> Subject:
        result = await self.validate_access(access_token)
        if not result.valid or result.subject is None:
            raise InvalidToken()
        return result.subject

    async def logout(self, refresh_token: Any) -> None:
        """Cut off one refresh chain. Best effort; never raises.

        Access tokens already handed out stay valid until they expire.
        """
        try:
            claims = self.issuer.decode(refresh_token)
            # Only refresh tokens name a session; anything else is a no-op
            if claims is None or claims.token_type != REFRESH:
                return
            await self.revocations.revoke(
                claims.token_id, self.issuer.refresh_ttl_seconds, reason=LOGOUT_MARKER
            )
            await self.sessions.delete(claims.subject_id, claims.token_id)
            logger.info("logout", subject_id=claims.subject_id, token_id=claims.token_id)
        except Exception as exc:
            logger.warning("logout_failed", error_type=type(exc).__name__, error=str(exc))

    async def logout_all(self, subject_id: str) -> int:
        records = await self.sessions.list_by_subject(subject_id)
        ttl = self.issuer.refresh_ttl_seconds
        for record in records:
            await self.revocations.revoke(record.refresh_token_id, ttl, reason=LOGOUT_MARKER)
            await self.sessions.delete(subject_id, record.refresh_token_id)
        logger.info("logout_all", subject_id=subject_id, revoked=len(records))
        return len(records)

    async def list_sessions(self, subject_id: str) -> List[SessionRecord]:
        return await self.sessions.list_by_subject(subject_id)

    async def inspect(self, refresh_token: Any) -> LineageState:
        try:
            claims = self.issuer.verify_refresh(refresh_token)
        except InvalidToken:
            return LineageState.EXPIRED
        reason = await self.revocations.reason(claims.token_id)
        if reason == ROTATED_MARKER:
            return LineageState.ROTATED
        if reason is not None:
            return LineageState.REVOKED
        if await self.sessions.get(claims.subject_id, claims.token_id) is None:
            return LineageState.REVOKED
        return LineageState.ACTIVE

    async def request_password_reset(self, identifier: str) -> None:
        """Mint a reset token and have the identity service mail the link.

        Never raises, and unknown accounts get exactly the same treatment.
        """
        try:
            token = await self.reset_tokens.create(
                identifier.strip(), self.settings.password_reset_ttl_seconds
            )
            reset_url = f"{self.settings.password_reset_url}?{urlencode({'token': token})}"
            await self.identity.send_password_reset_email(identifier.strip(), reset_url)
            logger.info("password_reset_requested")
        except Exception as exc:
            logger.error(
                "password_reset_request_failed", error_type=type(exc).__name__, error=str(exc)
            )

    async def reset_password(self, token: str, new_password: str) -> None:
        identifier = await self.reset_tokens.pop(token)
        if identifier is None:
            raise ValidationError("Invalid or expired reset token")
        try:
            await self.identity.reset_password(identifier, new_password)
        except SubjectNotFound:
            raise ValidationError("Invalid or expired reset token") from None
        logger.info("password_reset_completed")

    def _check_frontend_redirect(self, redirect_url: str) -> str:
        allowed = {_origin(self.settings.oauth_frontend_callback_url)}
        allowed.update(_origin(origin) for origin in self.settings.cors_allow_origins)
        if _origin(redirect_url) not in allowed:
            raise ValidationError("Redirect URL is not an allowed frontend origin")
        return redirect_url

    async def start_oauth(self, provider: str, redirect_url: Optional[str] = None) -> str:
        if redirect_url:
            redirect_url = self._check_frontend_redirect(redirect_url)
        state = self.oauth_client.new_state()
        url = self.oauth_client.authorization_url(provider, state)
        await self.oauth_states.put(
            state,
            provider,
            self.settings.oauth_state_ttl_seconds,
            redirect_url=redirect_url,
        )
        return url

    async def complete_oauth(self, provider: str, code: str, state: str) -> OAuthOutcome:
        stored = await self.oauth_states.pop(state) if state else None
        if not stored or stored.get("provider") != provider:
            logger.warning("oauth_state_invalid", provider=provider)
            raise ValidationError("Invalid or expired OAuth state")
        if not code:
            raise ValidationError("Missing OAuth authorization code")

        identity = await self.oauth_client.exchange_code(provider, code)
        match = await self.identity.find_or_create_oauth_subject(identity)
        if match.ambiguous:
            link = LinkSession(
                email=identity.email,
                provider=identity.provider,
                provider_id=identity.provider_id,
                candidates=match.candidates,
            )
            handle = await self.link_sessions.create(
                link, match.subject.id, self.settings.oauth_link_ttl_seconds
            )
            logger.info(
                "oauth_account_selection_required",
                provider=provider,
                candidates=len(match.candidates),
            )
            return OAuthOutcome(link_handle=handle, redirect_url=stored.get("redirect_url"))

        tokens = await self._start_session(match.subject, device_info=f"oauth:{provider}")
        logger.info("oauth_login_success", provider=provider, subject_id=match.subject.id)
        return OAuthOutcome(
            result=AuthResult(subject=match.subject, tokens=tokens),
            redirect_url=stored.get("redirect_url"),
        )

    async def get_link_session(self, handle: str) -> LinkSession:
        link = await self.link_sessions.get(handle)
        if link is None:
            raise NotFoundError("OAuth session expired or not found")
        return link

    async def select_oauth_account(
        self, handle: str, subject_id: str, device_info: Optional[str] = None
    ) -> AuthResult:
        link = await self.get_link_session(handle)
        if subject_id not in link.candidate_ids():
            raise ValidationError("Selected account is not available for this sign-in")
        try:
            await self.identity.link_oauth_identity(
                subject_id, link.email, link.provider, link.provider_id
            )
        except ServiceError as exc:
            logger.error("oauth_link_failed", subject_id=subject_id, error=exc.message)
            raise ServerError("Failed to link OAuth account") from exc

        # Only the request that actually removed the handoff may mint tokens
        if not await self.link_sessions.consume(handle):
            raise NotFoundError("OAuth session expired or not found")
        subject = await self.identity.get_subject(subject_id)
        if subject is None:
            raise SubjectNotFound()
        tokens = await self._start_session(
            subject, device_info=device_info or f"oauth:{link.provider}"
        )
        logger.info("oauth_account_linked", provider=link.provider, subject_id=subject_id)
        return AuthResult(subject=subject, tokens=tokens)
