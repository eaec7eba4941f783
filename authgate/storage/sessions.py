from __future__ import annotations

import json
from typing import List, Optional, Protocol

from authgate.logging import get_logger
from authgate.storage.models import SessionRecord

logger = get_logger(__name__)

SESSION_PREFIX = "session"
REVOKED_PREFIX = "revoked"
_REVOKED_MARKER = "1"


class KeyValueCache(Protocol):
    """Subset of the cache surface shared by RedisCache and MemoryCache."""

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def getdel(self, key: str) -> Optional[str]: ...

    async def keys(self, pattern: str) -> List[str]: ...


def session_key(subject_id: str, token_id: str) -> str:
    return f"{SESSION_PREFIX}:{subject_id}:{token_id}"


def revoked_key(token_id: str) -> str:
    return f"{REVOKED_PREFIX}:{token_id}"


class SessionStore:
    """Session records keyed by (subject, refresh token id), one per device."""

    def __init__(self, cache: KeyValueCache) -> None:
        self.cache = cache

    async def put(
        self, subject_id: str, token_id: str, record: SessionRecord, ttl_seconds: int
    ) -> None:
        await self.cache.set(
            session_key(subject_id, token_id), json.dumps(record.to_dict()), ttl_seconds
        )

    async def get(self, subject_id: str, token_id: str) -> Optional[SessionRecord]:
        raw = await self.cache.get(session_key(subject_id, token_id))
        if raw is None:
            return None
        return SessionRecord.from_dict(json.loads(raw))

    async def delete(self, subject_id: str, token_id: str) -> int:
        """Remove one session; returns how many records were actually deleted."""
        return await self.cache.delete(session_key(subject_id, token_id))

    async def list_by_subject(self, subject_id: str) -> List[SessionRecord]:
        """Return every live session for a subject.

        Walks the key pattern, so keep this off the request hot path. Keys that
        expire between the scan and the read are skipped, and unreadable
        records are logged and skipped rather than failing the whole listing.
        """
        records: List[SessionRecord] = []
        for key in await self.cache.keys(session_key(subject_id, "*")):
            raw = await self.cache.get(key)
            if raw is None:
                continue
            try:
                records.append(SessionRecord.from_dict(json.loads(raw)))
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("session_record_unreadable", key=key, error=str(exc))
        records.sort(key=lambda record: record.created_at)
        return records

    async def delete_all(self, subject_id: str) -> int:
        deleted = 0
        for key in await self.cache.keys(session_key(subject_id, "*")):
            deleted += await self.cache.delete(key)
        return deleted


class RevocationStore:
    """Append-only denylist of token ids.

    There is intentionally no removal method; entries leave only through
    passive TTL expiry.
    """

    def __init__(self, cache: KeyValueCache) -> None:
        self.cache = cache

    async def revoke(
        self, token_id: str, ttl_seconds: int, *, reason: str = _REVOKED_MARKER
    ) -> None:
        await self.cache.set(revoked_key(token_id), reason, max(1, int(ttl_seconds)))

    async def is_revoked(self, token_id: str) -> bool:
        return await self.cache.exists(revoked_key(token_id))

    async def reason(self, token_id: str) -> Optional[str]:
        """Marker stored with the revocation, or None when not revoked."""
        return await self.cache.get(revoked_key(token_id))
