from __future__ import annotations

import json
import re
import secrets
import time
from typing import Any, Callable, Dict, Optional

from authgate.logging import get_logger
from authgate.storage.models import LinkSession
from authgate.storage.sessions import KeyValueCache

logger = get_logger(__name__)

LINK_PREFIX = "oauth"
STATE_PREFIX = "oauth:state"

# {timestamp_ms}:{subject_id}:{nonce}; keeps handles from addressing state keys
_HANDLE_RE = re.compile(r"^\d+:[A-Za-z0-9_\-]+:[0-9a-f]{32}$")


def link_key(handle: str) -> str:
    return f"{LINK_PREFIX}:{handle}"


class LinkSessionStore:
    """Short-lived account-selection handoffs after an ambiguous OAuth login."""

    def __init__(
        self, cache: KeyValueCache, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.cache = cache
        self._clock = clock

    @staticmethod
    def is_valid_handle(handle: str) -> bool:
        return bool(handle) and bool(_HANDLE_RE.match(handle))

    async def create(
        self, session: LinkSession, subject_id: str, ttl_seconds: int
    ) -> str:
        handle = f"{int(self._clock() * 1000)}:{subject_id}:{secrets.token_hex(16)}"
        await self.cache.set(link_key(handle), json.dumps(session.to_dict()), ttl_seconds)
        return handle

    async def get(self, handle: str) -> Optional[LinkSession]:
        if not self.is_valid_handle(handle):
            return None
        raw = await self.cache.get(link_key(handle))
        if raw is None:
            return None
        return LinkSession.from_dict(json.loads(raw))

    async def consume(self, handle: str) -> bool:
        """Delete the handoff; True only for the caller that actually removed it."""
        if not self.is_valid_handle(handle):
            return False
        return await self.cache.delete(link_key(handle)) > 0


class OAuthStateStore:
    """CSRF state for the OAuth redirect round trip, consumed exactly once."""

    def __init__(self, cache: KeyValueCache) -> None:
        self.cache = cache

    async def put(
        self,
        state: str,
        provider: str,
        ttl_seconds: int,
        *,
        redirect_url: Optional[str] = None,
    ) -> None:
        payload = {"provider": provider, "redirect_url": redirect_url}
        await self.cache.set(f"{STATE_PREFIX}:{state}", json.dumps(payload), ttl_seconds)

    async def pop(self, state: str) -> Optional[Dict[str, Any]]:
        raw = await self.cache.getdel(f"{STATE_PREFIX}:{state}")
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("oauth_state_corrupt", state_prefix=state[:8])
            return None


RESET_PREFIX = "reset"
_RESET_TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")


class PasswordResetStore:
    """One-time password reset tokens mapped to the account identifier."""

    def __init__(self, cache: KeyValueCache) -> None:
        self.cache = cache

    async def create(self, identifier: str, ttl_seconds: int) -> str:
        token = secrets.token_hex(32)
        await self.cache.set(f"{RESET_PREFIX}:{token}", identifier, ttl_seconds)
        return token

    async def pop(self, token: str) -> Optional[str]:
        """Redeem a token; only the first caller gets the identifier back."""
        if not isinstance(token, str) or not _RESET_TOKEN_RE.match(token):
            return None
        return await self.cache.getdel(f"{RESET_PREFIX}:{token}")
