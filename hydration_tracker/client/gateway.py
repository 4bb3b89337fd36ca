from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol

import httpx

from hydration_tracker.logging import get_logger

logger = get_logger(__name__)


class GatewayError(Exception):
    """Base class for client-side auth failures."""


class RefreshFailed(GatewayError):
    """The access token could not be renewed; stored tokens have been cleared."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class AuthenticationRequired(GatewayError):
    """The request was still rejected after a refresh and one replay."""


class TokenStore(Protocol):
    def get_access_token(self) -> Optional[str]: ...

    def get_refresh_token(self) -> Optional[str]: ...

    def set_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStore:
    def __init__(self, access_token: Optional[str] = None, refresh_token: Optional[str] = None):
        self.access_token = access_token
        self.refresh_token = refresh_token

    def get_access_token(self) -> Optional[str]:
        return self.access_token

    def get_refresh_token(self) -> Optional[str]:
        return self.refresh_token

    def set_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        self.access_token = access_token
        if refresh_token is not None:
            self.refresh_token = refresh_token

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None


@dataclass
class RefreshState:
    in_flight: bool = False
    waiters: List[asyncio.Future] = field(default_factory=list)


class ClientTokenGateway:
    """httpx client that renews an expired access token once for all callers.

    Every request carries the stored access token. On a 401 the gateway
    either starts the refresh call or, when one is already running, parks the
    request on a future that the refresh settles. Each request is replayed at
    most once. Nothing is awaited between reading and setting
    ``state.in_flight``, so the event loop alone makes the check atomic.
    """

    def __init__(
        self,
        base_url: str,
        token_store: TokenStore,
        *,
        refresh_path: str = "/auth/refresh",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.token_store = token_store
        self.refresh_path = refresh_path
        self.state = RefreshState()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def __aenter__(self) -> "ClientTokenGateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        sent_token = self.token_store.get_access_token()
        response = await self._send(method, url, sent_token, kwargs)
        if response.status_code != 401 or url == self.refresh_path:
            return response

        current = self.token_store.get_access_token()
        if current and current != sent_token:
            # A refresh finished while this request was in the air
            token = current
        else:
            token = await self._fresh_access_token()

        retried = await self._send(method, url, token, kwargs)
        if retried.status_code == 401:
            logger.warning("request_rejected_after_refresh", method=method, url=url)
            raise AuthenticationRequired(f"{method} {url} rejected after token refresh")
        return retried

    async def _send(
        self, method: str, url: str, access_token: Optional[str], kwargs: dict
    ) -> httpx.Response:
        headers = dict(kwargs.get("headers") or {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        params = {k: v for k, v in kwargs.items() if k != "headers"}
        return await self._client.request(method, url, headers=headers, **params)

    async def _fresh_access_token(self) -> str:
        if self.state.in_flight:
            waiter = asyncio.get_running_loop().create_future()
            self.state.waiters.append(waiter)
            return await waiter

        self.state.in_flight = True
        try:
            access_token = await self._call_refresh()
        except RefreshFailed as exc:
            self.token_store.clear()
            self._settle_waiters(error=exc)
            raise
        except asyncio.CancelledError:
            self._settle_waiters(error=RefreshFailed("token refresh was cancelled"))
            raise
        except Exception as exc:
            logger.error("token_refresh_error", error=repr(exc))
            self.token_store.clear()
            failure = RefreshFailed(f"token refresh failed: {exc}")
            failure.__cause__ = exc
            self._settle_waiters(error=failure)
            raise failure from exc
        else:
            self._settle_waiters(token=access_token)
            return access_token
        finally:
            self.state.in_flight = False

    async def _call_refresh(self) -> str:
        refresh_token = self.token_store.get_refresh_token()
        if not refresh_token:
            raise RefreshFailed("no refresh token stored")
        try:
            response = await self._client.post(
                self.refresh_path, json={"refreshToken": refresh_token}
            )
        except httpx.HTTPError as exc:
            logger.warning("token_refresh_network_error", error=str(exc))
            raise RefreshFailed(f"token refresh failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if response.status_code != 200 or not body.get("success", False):
            logger.warning(
                "token_refresh_rejected",
                status_code=response.status_code,
                error_code=body.get("error"),
            )
            raise RefreshFailed(
                body.get("message") or "token refresh rejected",
                status_code=response.status_code,
                error_code=body.get("error"),
            )

        data = body.get("data")
        tokens = data.get("tokens") if isinstance(data, dict) else None
        access_token = tokens.get("accessToken") if isinstance(tokens, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise RefreshFailed("refresh response did not include an access token")
        self.token_store.set_tokens(access_token, tokens.get("refreshToken"))
        logger.info("token_refreshed", waiters=len(self.state.waiters))
        return access_token

    def _settle_waiters(self, *, token: Optional[str] = None, error: Optional[BaseException] = None) -> None:
        waiters, self.state.waiters = self.state.waiters, []
        for waiter in waiters:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(token)
