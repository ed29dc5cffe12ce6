"""Tests for authenticated MAL requests and their recovery paths."""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from app.config import Settings
from app.errors import AuthenticationExpired, MALRequestError, NotAuthenticated, RateLimited
from app.services.credentials import CredentialStore
from app.services.gateway import RequestGateway
from app.services.http import backoff_delay
from app.services.oauth import TokenEndpoint
from app.services.refresh import TokenRefreshCoordinator
from app.storage import LegacyKeyValueStore


class NullBackend:
    async def get_credentials(self) -> dict[str, Any] | None:
        return None

    async def set_credentials(self, credentials: Any) -> None:
        return None

    async def clear_credentials(self) -> None:
        return None


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class GatewayHarness:
    """Wire a gateway against mock API and token endpoints."""

    def __init__(self, api_handler, token_handler=None, *, access_token: str | None = "token-0"):
        self.settings = Settings(_env_file=None, MAL_MAX_RETRIES=2)
        self.sleep = SleepRecorder()
        self.token_requests: list[httpx.Request] = []

        def _token(request: httpx.Request) -> httpx.Response:
            self.token_requests.append(request)
            if token_handler is None:
                return httpx.Response(
                    200, json={"access_token": "token-1", "expires_in": 3600}
                )
            return token_handler(request)

        self.store = CredentialStore(
            NullBackend(), LegacyKeyValueStore(), default_client_id="cid"
        )
        if access_token:
            self.store.save_tokens(access_token, "refresh-0", 3600)
        self.api_client = httpx.AsyncClient(
            transport=httpx.MockTransport(api_handler),
            base_url="https://api.example.com/v2",
        )
        self.token_client = httpx.AsyncClient(transport=httpx.MockTransport(_token))
        endpoint = TokenEndpoint(self.settings, self.token_client, sleep=self.sleep)
        refresher = TokenRefreshCoordinator(self.store, endpoint)
        self.gateway = RequestGateway(
            self.settings, self.api_client, self.store, refresher, sleep=self.sleep
        )

    async def close(self) -> None:
        await self.store.flush()
        await self.api_client.aclose()
        await self.token_client.aclose()


@pytest.mark.anyio("asyncio")
async def test_get_sends_bearer_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": 1, "name": "neo"})

    harness = GatewayHarness(handler)
    try:
        data = await harness.gateway.get("/users/@me", params={"fields": "id"})
    finally:
        await harness.close()

    assert data == {"id": 1, "name": "neo"}
    assert seen[0].headers["Authorization"] == "Bearer token-0"
    assert seen[0].url.path == "/v2/users/@me"
    assert harness.token_requests == []


@pytest.mark.anyio("asyncio")
async def test_unauthorized_response_refreshes_and_retries_once() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["Authorization"])
        if request.headers["Authorization"] == "Bearer token-0":
            return httpx.Response(401, json={"error": "invalid_token"})
        return httpx.Response(200, json={"ok": True})

    harness = GatewayHarness(handler)
    try:
        data = await harness.gateway.get("/users/@me")
    finally:
        await harness.close()

    assert data == {"ok": True}
    assert seen == ["Bearer token-0", "Bearer token-1"]
    assert len(harness.token_requests) == 1


@pytest.mark.anyio("asyncio")
async def test_second_unauthorized_response_is_terminal() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(401, json={"error": "invalid_token"})

    harness = GatewayHarness(handler)
    try:
        with pytest.raises(AuthenticationExpired):
            await harness.gateway.get("/users/@me")
    finally:
        await harness.close()

    assert len(calls) == 2
    assert len(harness.token_requests) == 1


@pytest.mark.anyio("asyncio")
async def test_failed_refresh_after_unauthorized_signs_out() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401)

    def token_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    harness = GatewayHarness(handler, token_handler)
    try:
        with pytest.raises(AuthenticationExpired):
            await harness.gateway.get("/users/@me")
    finally:
        await harness.close()

    assert harness.store.get_refresh_token() == ""


@pytest.mark.anyio("asyncio")
async def test_missing_token_refreshes_before_sending() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["Authorization"])
        return httpx.Response(200, json={})

    harness = GatewayHarness(handler, access_token=None)
    harness.store.save_tokens("", "refresh-0", 0)
    try:
        await harness.gateway.get("/users/@me")
    finally:
        await harness.close()

    assert seen == ["Bearer token-1"]


@pytest.mark.anyio("asyncio")
async def test_no_session_raises_not_authenticated_without_calls() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("API should not be called")

    harness = GatewayHarness(handler, access_token=None)
    try:
        with pytest.raises(NotAuthenticated):
            await harness.gateway.get("/users/@me")
    finally:
        await harness.close()

    assert harness.token_requests == []


@pytest.mark.anyio("asyncio")
async def test_rate_limit_retries_with_capped_backoff_then_raises() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(429, headers={"Retry-After": "120"})

    harness = GatewayHarness(handler)
    try:
        with pytest.raises(RateLimited) as exc_info:
            await harness.gateway.get("/users/@me/animelist")
    finally:
        await harness.close()

    assert len(calls) == 3
    assert harness.sleep.delays == [30.0, 30.0]
    assert exc_info.value.retry_after == 30.0
    assert exc_info.value.status_code == 429


@pytest.mark.anyio("asyncio")
async def test_server_error_recovers_after_retry() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"data": []})

    harness = GatewayHarness(handler)
    try:
        data = await harness.gateway.get("/anime", params={"q": "x"})
    finally:
        await harness.close()

    assert data == {"data": []}
    assert harness.sleep.delays == [backoff_delay(1)]


@pytest.mark.anyio("asyncio")
async def test_client_error_carries_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "not_found"})

    harness = GatewayHarness(handler)
    try:
        with pytest.raises(MALRequestError, match="API request failed: 404") as exc_info:
            await harness.gateway.get("/anime/0")
    finally:
        await harness.close()

    assert exc_info.value.status == 404


@pytest.mark.anyio("asyncio")
async def test_transport_failure_becomes_request_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    harness = GatewayHarness(handler)
    try:
        with pytest.raises(MALRequestError, match="Unable to reach MAL"):
            await harness.gateway.get("/anime/1")
    finally:
        await harness.close()

    assert len(harness.sleep.delays) == 2
