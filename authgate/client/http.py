from __future__ import annotations

from typing import Any, Callable, Optional, Tuple

import httpx

from authgate.client.refresh import (
    ClientRefreshCoordinator,
    MemoryTokenStorage,
    TokenStorage,
    is_refresh_exempt,
)
from authgate.logging import get_logger

logger = get_logger(__name__)


class AuthenticatedClient:
    """httpx.AsyncClient wrapper that attaches the bearer token and recovers from 401s.

    A 401 on a non-exempt path hands the failed token to the shared
    ClientRefreshCoordinator and replays the request once with the token it
    returns. If the replay is rejected again the response is returned as-is.
    """

    def __init__(
        self,
        base_url: str,
        *,
        storage: Optional[TokenStorage] = None,
        auth_prefix: str = "/auth",
        on_sign_out: Optional[Callable[[], Any]] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.storage = storage or MemoryTokenStorage()
        self.auth_prefix = auth_prefix.rstrip("/")
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self.coordinator = ClientRefreshCoordinator(
            self.storage, self._call_refresh, on_sign_out=on_sign_out
        )

    async def __aenter__(self) -> "AuthenticatedClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _call_refresh(self, refresh_token: str) -> Tuple[str, str]:
        response = await self.client.post(
            f"{self.auth_prefix}/refresh", json={"refresh_token": refresh_token}
        )
        response.raise_for_status()
        data = response.json()["data"]
        return data["access_token"], data["refresh_token"]

    async def _send(
        self, method: str, url: str, token: Optional[str], **kwargs
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return await self.client.request(method, url, headers=headers, **kwargs)

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        token = self.storage.get_access_token()
        response = await self._send(method, url, token, **dict(kwargs))
        if response.status_code != 401 or is_refresh_exempt(url):
            return response
        # Raises SessionExpiredError when the refresh chain is gone
        new_token = await self.coordinator.acquire_token(token)
        logger.debug("client_request_replayed", method=method, url=url)
        return await self._send(method, url, new_token, **dict(kwargs))

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def login(self, identifier: str, password: str) -> dict:
        response = await self.client.post(
            f"{self.auth_prefix}/login",
            json={"identifier": identifier, "password": password},
        )
        response.raise_for_status()
        data = response.json()["data"]
        tokens = data["tokens"]
        self.coordinator.sign_in(tokens["access_token"], tokens["refresh_token"])
        return data["user"]

    async def logout(self) -> None:
        refresh_token = self.storage.get_refresh_token()
        try:
            if refresh_token:
                await self.client.post(
                    f"{self.auth_prefix}/logout", json={"refresh_token": refresh_token}
                )
        except httpx.HTTPError as exc:
            logger.warning("client_logout_request_failed", error=str(exc))
        finally:
            self.storage.clear()
