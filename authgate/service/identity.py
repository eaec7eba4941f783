from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from authgate.logging import get_logger
from authgate.service.errors import (
    ServerError,
    SubjectExists,
    SubjectNotFound,
    UpstreamUnavailable,
    ValidationError,
)
from authgate.service.oauth import OAuthIdentity
from authgate.storage.models import AccountOption, Subject

logger = get_logger(__name__)


@dataclass
class OAuthMatch:
    """Result of resolving an OAuth identity against existing accounts.

    ``candidates`` holds more than one entry only when several accounts share
    the verified email and the user has to choose one.
    """

    subject: Subject
    candidates: List[AccountOption] = field(default_factory=list)

    @property
    def ambiguous(self) -> bool:
        return len(self.candidates) > 1


class IdentityBridge(Protocol):
    async def create_subject(self, email: str, username: str, password: str) -> Subject: ...

    async def verify_credentials(self, identifier: str, password: str) -> Optional[Subject]: ...

    async def get_subject(self, subject_id: str) -> Optional[Subject]: ...

    async def find_or_create_oauth_subject(self, identity: OAuthIdentity) -> OAuthMatch: ...

    async def link_oauth_identity(
        self, subject_id: str, email: str, provider: str, provider_id: str
    ) -> None: ...

    async def reset_password(self, identifier: str, new_password: str) -> None: ...

    async def send_password_reset_email(self, identifier: str, reset_url: str) -> None: ...

    async def health_check(self) -> bool: ...


def _parse_subject(data: Dict[str, Any]) -> Subject:
    profile = data.get("profile") or {}
    account = data.get("account") or {}
    return Subject(
        id=str(data["id"]),
        email=data.get("email") or account.get("email") or "",
        username=data.get("username") or profile.get("username"),
        display_name=data.get("displayName") or profile.get("displayName"),
        avatar_url=data.get("avatarUrl") or profile.get("avatarUrl"),
    )


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return default
    message = body.get("message") if isinstance(body, dict) else None
    if isinstance(message, list):
        message = "; ".join(str(m) for m in message)
    return message or default


def _parse_option(data: Dict[str, Any]) -> AccountOption:
    return AccountOption(
        subject_id=str(data.get("userId") or data["id"]),
        username=data.get("username"),
        display_name=data.get("displayName"),
        avatar_url=data.get("avatarUrl"),
    )


class HttpIdentityBridge:
    """Identity bridge backed by the core user service over HTTP."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self.client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            logger.error("identity_service_unreachable", path=path, error=str(exc))
            raise UpstreamUnavailable() from exc

    async def create_subject(self, email: str, username: str, password: str) -> Subject:
        response = await self._request(
            "POST",
            "/api/users",
            json={"email": email, "username": username, "password": password},
        )
        if response.status_code == 409:
            raise SubjectExists()
        if response.status_code == 400:
            raise ValidationError(_error_message(response, "Invalid registration details"))
        if response.status_code >= 500:
            logger.error("identity_create_failed", status_code=response.status_code)
            raise UpstreamUnavailable()
        response.raise_for_status()
        return _parse_subject(response.json())

    async def verify_credentials(self, identifier: str, password: str) -> Optional[Subject]:
        response = await self._request(
            "POST",
            "/api/auth/verify-credentials",
            json={"identifier": identifier, "password": password},
        )
        if response.status_code in (401, 404):
            return None
        if response.status_code >= 500:
            logger.error("identity_verify_failed", status_code=response.status_code)
            raise UpstreamUnavailable()
        response.raise_for_status()
        return _parse_subject(response.json())

    async def get_subject(self, subject_id: str) -> Optional[Subject]:
        response = await self._request("GET", f"/api/users/internal/{subject_id}")
        if response.status_code == 404:
            return None
        if response.status_code >= 500:
            raise UpstreamUnavailable()
        response.raise_for_status()
        return _parse_subject(response.json())

    async def find_or_create_oauth_subject(self, identity: OAuthIdentity) -> OAuthMatch:
        response = await self._request(
            "POST",
            "/api/auth/oauth",
            json={
                "provider": identity.provider,
                "providerId": identity.provider_id,
                "email": identity.email,
                "name": identity.name,
                "avatarUrl": identity.avatar_url,
            },
        )
        if response.status_code >= 400:
            logger.error("identity_oauth_lookup_failed", status_code=response.status_code)
            raise UpstreamUnavailable("Failed to resolve OAuth user")
        data = response.json()
        candidates = [_parse_option(item) for item in data.get("multipleAccounts") or []]
        return OAuthMatch(subject=_parse_subject(data), candidates=candidates)

    async def link_oauth_identity(
        self, subject_id: str, email: str, provider: str, provider_id: str
    ) -> None:
        response = await self._request(
            "POST",
            "/api/auth/link-oauth",
            json={
                "userId": subject_id,
                "email": email,
                "provider": provider,
                "providerId": provider_id,
            },
        )
        if response.status_code >= 400:
            logger.error("identity_link_failed", status_code=response.status_code)
            raise ServerError("Failed to link OAuth account to user")

    async def reset_password(self, identifier: str, new_password: str) -> None:
        response = await self._request(
            "POST",
            "/api/auth/internal-reset-password",
            json={"identifier": identifier, "newPassword": new_password},
        )
        if response.status_code == 404:
            raise SubjectNotFound()
        if response.status_code >= 500:
            logger.error("identity_reset_password_failed", status_code=response.status_code)
            raise UpstreamUnavailable()
        if response.status_code >= 400:
            raise ServerError(_error_message(response, "Failed to reset password"))

    async def send_password_reset_email(self, identifier: str, reset_url: str) -> None:
        """Ask the core service to mail the reset link. Failures are only logged."""
        try:
            response = await self._request(
                "POST",
                "/api/auth/send-password-reset-email",
                json={"identifier": identifier, "resetUrl": reset_url},
            )
        except UpstreamUnavailable:
            return
        if response.status_code >= 400:
            logger.warning("password_reset_email_failed", status_code=response.status_code)

    async def health_check(self) -> bool:
        try:
            response = await self.client.get("/api/health")
        except httpx.HTTPError:
            return False
        return response.status_code < 400

    async def close(self) -> None:
        await self.client.aclose()


class MemoryIdentityBridge:
    """In-process identity service for tests and single-node development.

    Passwords are hashed with argon2id the same way a real credential store
    would keep them.
    """

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._lock = threading.RLock()
        self.subjects: Dict[str, Subject] = {}
        self.password_hashes: Dict[str, str] = {}
        self.oauth_links: Dict[Tuple[str, str], str] = {}
        # (identifier, reset_url) pairs that a mailer would have sent
        self.outbox: List[Tuple[str, str]] = []

    def add_subject(
        self,
        email: str,
        username: str,
        password: Optional[str] = None,
        *,
        display_name: Optional[str] = None,
    ) -> Subject:
        subject = Subject(
            id=uuid.uuid4().hex,
            email=email.lower(),
            username=username,
            display_name=display_name or username,
        )
        with self._lock:
            self.subjects[subject.id] = subject
            if password is not None:
                self.password_hashes[subject.id] = self._pwd_hasher.hash(password)
        return subject

    def remove_subject(self, subject_id: str) -> None:
        with self._lock:
            self.subjects.pop(subject_id, None)
            self.password_hashes.pop(subject_id, None)

    def _by_email(self, email: str) -> List[Subject]:
        email = email.lower()
        return [s for s in self.subjects.values() if s.email == email]

    async def create_subject(self, email: str, username: str, password: str) -> Subject:
        with self._lock:
            if self._by_email(email) or any(
                s.username == username for s in self.subjects.values()
            ):
                raise SubjectExists()
            return self.add_subject(email, username, password)

    def _by_identifier(self, identifier: str) -> Optional[Subject]:
        lowered = identifier.lower()
        return next(
            (
                s
                for s in self.subjects.values()
                if s.email == lowered or s.username == identifier
            ),
            None,
        )

    async def verify_credentials(self, identifier: str, password: str) -> Optional[Subject]:
        with self._lock:
            subject = self._by_identifier(identifier)
            stored_hash = self.password_hashes.get(subject.id) if subject else None
        if not subject or not stored_hash:
            return None
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return None
        return subject

    async def get_subject(self, subject_id: str) -> Optional[Subject]:
        return self.subjects.get(subject_id)

    async def find_or_create_oauth_subject(self, identity: OAuthIdentity) -> OAuthMatch:
        with self._lock:
            linked = self.oauth_links.get((identity.provider, identity.provider_id))
            if linked and linked in self.subjects:
                return OAuthMatch(subject=self.subjects[linked])
            matches = self._by_email(identity.email)
            if len(matches) > 1:
                options = [
                    AccountOption(
                        subject_id=s.id,
                        username=s.username,
                        display_name=s.display_name,
                        avatar_url=s.avatar_url,
                    )
                    for s in matches
                ]
                return OAuthMatch(subject=matches[0], candidates=options)
            if matches:
                subject = matches[0]
            else:
                subject = self.add_subject(
                    identity.email,
                    identity.email.split("@")[0],
                    display_name=identity.name,
                )
            self.oauth_links[(identity.provider, identity.provider_id)] = subject.id
            return OAuthMatch(subject=subject)

    async def link_oauth_identity(
        self, subject_id: str, email: str, provider: str, provider_id: str
    ) -> None:
        with self._lock:
            if subject_id not in self.subjects:
                raise ServerError("Failed to link OAuth account to user")
            self.oauth_links[(provider, provider_id)] = subject_id

    async def reset_password(self, identifier: str, new_password: str) -> None:
        with self._lock:
            subject = self._by_identifier(identifier)
            if subject is None:
                raise SubjectNotFound()
            self.password_hashes[subject.id] = self._pwd_hasher.hash(new_password)

    async def send_password_reset_email(self, identifier: str, reset_url: str) -> None:
        with self._lock:
            if self._by_identifier(identifier) is not None:
                self.outbox.append((identifier, reset_url))

    async def health_check(self) -> bool:
        return True
