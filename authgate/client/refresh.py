from __future__ import annotations

import asyncio
import inspect
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Optional, Protocol, Tuple

from authgate.logging import get_logger
from authgate.service.errors import SessionExpiredError

logger = get_logger(__name__)

# Endpoints where a 401 is a business answer (bad password, dead refresh
# token), not a stale access token
_EXEMPT_SEGMENTS = (
    "/refresh",
    "/login",
    "/register",
    "/signup",
    "/change-password",
    "/set-password",
)


def is_refresh_exempt(path: str) -> bool:
    path = path.split("?", 1)[0].rstrip("/").lower()
    return any(path.endswith(segment) or f"{segment}/" in path for segment in _EXEMPT_SEGMENTS)


def _looks_like_jwt(token: Optional[str]) -> bool:
    return bool(token) and token.count(".") == 2


class RefreshState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"
    FAILED = "failed"


class TokenStorage(Protocol):
    def get_access_token(self) -> Optional[str]: ...

    def get_refresh_token(self) -> Optional[str]: ...

    def set_tokens(self, access_token: str, refresh_token: str) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStorage:
    def __init__(
        self, access_token: Optional[str] = None, refresh_token: Optional[str] = None
    ) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token

    def get_access_token(self) -> Optional[str]:
        return self.access_token

    def get_refresh_token(self) -> Optional[str]:
        return self.refresh_token

    def set_tokens(self, access_token: str, refresh_token: str) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None


RefreshCall = Callable[[str], Awaitable[Tuple[str, str]]]


class ClientRefreshCoordinator:
    """Single-flight refresh shared by every outbound call of one client.

    However many requests see a 401 at once, exactly one refresh call goes
    out. Callers that arrive while it is in flight queue up (FIFO) and are
    all released with the same new access token, or all rejected with
    SessionExpiredError if the refresh fails. A failure clears the stored
    tokens and stays FAILED until ``reset()``/``sign_in()``.

    The refresh runs in its own task so that cancelling the request which
    started it does not strand the others.
    """

    def __init__(
        self,
        storage: TokenStorage,
        refresh_call: RefreshCall,
        *,
        on_sign_out: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.storage = storage
        self._refresh_call = refresh_call
        self._on_sign_out = on_sign_out
        self._state = RefreshState.IDLE
        self._waiters: Deque[asyncio.Future] = deque()
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def pending(self) -> int:
        return len(self._waiters)

    async def acquire_token(self, failed_token: Optional[str] = None) -> str:
        """Return an access token to replay a request that just got a 401.

        ``failed_token`` is the access token the failed request carried; if
        storage already holds a different one, another caller has refreshed
        in the meantime and that token is returned without a new refresh.
        """
        if self._state is RefreshState.REFRESHING:
            return await self._enqueue()
        current = self.storage.get_access_token()
        if current and current != failed_token:
            return current
        if self._state is RefreshState.FAILED:
            raise SessionExpiredError()
        self._state = RefreshState.REFRESHING
        waiter = self._enqueue()
        self._task = asyncio.create_task(self._run_refresh())
        return await waiter

    def _enqueue(self) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        return future

    def _drain(self, token: Optional[str] = None, *, failed: bool = False) -> None:
        while self._waiters:
            future = self._waiters.popleft()
            if future.done():
                continue
            if failed:
                future.set_exception(SessionExpiredError())
            else:
                future.set_result(token)

    async def _run_refresh(self) -> None:
        refresh_token = self.storage.get_refresh_token()
        try:
            if not _looks_like_jwt(refresh_token):
                raise SessionExpiredError("No usable refresh token")
            access_token, new_refresh_token = await self._refresh_call(refresh_token)
        except asyncio.CancelledError:
            await self._fail("cancelled")
            raise
        except Exception as exc:
            await self._fail(type(exc).__name__)
            return
        self.storage.set_tokens(access_token, new_refresh_token)
        self._drain(token=access_token)
        self._state = RefreshState.IDLE
        logger.info("client_refresh_succeeded")

    async def _fail(self, reason: str) -> None:
        logger.warning("client_refresh_failed", reason=reason, waiters=len(self._waiters))
        self.storage.clear()
        self._drain(failed=True)
        self._state = RefreshState.FAILED
        if self._on_sign_out is None:
            return
        try:
            result = self._on_sign_out()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("client_sign_out_callback_failed", error=str(exc))

    def reset(self) -> None:
        if self._state is RefreshState.FAILED:
            self._state = RefreshState.IDLE

    def sign_in(self, access_token: str, refresh_token: str) -> None:
        """Store a fresh pair from a login and leave the FAILED state."""
        self.storage.set_tokens(access_token, refresh_token)
        self.reset()
