"""Authenticated access to the MAL v2 API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import httpx

from ..config import Settings
from ..errors import AuthenticationExpired, MALRequestError, NotAuthenticated, RateLimited
from .credentials import CredentialStore
from .http import Sleep, retry_after_seconds, send_with_retries
from .refresh import TokenRefreshCoordinator

logger = logging.getLogger(__name__)


class RequestGateway:
    """Inject the access token into MAL requests and recover from expiry once.

    A call refreshes at most once before sending (no usable token) and at
    most once after a 401, retrying the request a single time with the new
    token. A second 401 is terminal.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        store: CredentialStore,
        refresher: TokenRefreshCoordinator,
        *,
        sleep: Sleep = asyncio.sleep,
    ):
        self._settings = settings
        self._client = http_client
        self._store = store
        self._refresher = refresher
        self._sleep = sleep

    async def get(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        """GET ``path`` and return the decoded JSON body."""

        token = self._store.get_access_token()
        if not token:
            if not await self._refresher.refresh():
                raise NotAuthenticated("Not authenticated")
            token = self._store.get_access_token()
            if not token:
                raise NotAuthenticated("Not authenticated")

        response = await self._send(path, params, token)
        if response.status_code == 401:
            logger.info("MAL rejected the access token for %s; refreshing", path)
            if not await self._refresher.refresh():
                raise AuthenticationExpired("Authentication expired")
            token = self._store.get_access_token()
            if not token:
                raise AuthenticationExpired("Authentication expired")
            response = await self._send(path, params, token)
            if response.status_code == 401:
                raise AuthenticationExpired("Authentication expired")

        if response.status_code == 429:
            raise RateLimited(
                "MAL is rate limiting requests",
                retry_after=retry_after_seconds(response),
            )
        if response.status_code >= 400:
            logger.warning(
                "MAL request %s failed with status %s", path, response.status_code
            )
            raise MALRequestError(
                f"API request failed: {response.status_code}",
                status=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise MALRequestError(
                f"Unexpected non-JSON MAL response for {path}",
                status=response.status_code,
            ) from exc

    async def _send(
        self, path: str, params: Mapping[str, Any] | None, token: str
    ) -> httpx.Response:
        async def _request() -> httpx.Response:
            return await self._client.get(
                path,
                params=dict(params) if params else None,
                headers={"Authorization": f"Bearer {token}"},
            )

        try:
            return await send_with_retries(
                _request,
                description=path,
                max_retries=self._settings.mal_max_retries,
                sleep=self._sleep,
            )
        except httpx.HTTPError as exc:
            raise MALRequestError(
                f"Unable to reach MAL: {exc.__class__.__name__}"
            ) from exc
