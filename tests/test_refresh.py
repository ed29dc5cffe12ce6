"""Tests for single-flight token refresh."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from app.config import Settings
from app.services.credentials import CredentialStore
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


async def _no_sleep(_: float) -> None:
    return None


def build_coordinator(handler, *, refresh_token: str = "refresh-0"):
    settings = Settings(_env_file=None, MAL_MAX_RETRIES=0)
    store = CredentialStore(NullBackend(), LegacyKeyValueStore(), default_client_id="cid")
    if refresh_token:
        store.save_tokens("expired", refresh_token, -10)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    endpoint = TokenEndpoint(settings, http_client, sleep=_no_sleep)
    return TokenRefreshCoordinator(store, endpoint), store, http_client


@pytest.mark.anyio("asyncio")
async def test_concurrent_refreshes_share_one_request() -> None:
    calls: list[httpx.Request] = []
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        await release.wait()
        return httpx.Response(
            200,
            json={"access_token": "fresh", "refresh_token": "refresh-1", "expires_in": 3600},
        )

    coordinator, store, http_client = build_coordinator(handler)
    async with http_client:
        waiters = [asyncio.create_task(coordinator.refresh()) for _ in range(5)]
        await asyncio.sleep(0)
        assert coordinator.in_flight is True
        release.set()
        results = await asyncio.gather(*waiters)
        await store.flush()

    assert results == [True] * 5
    assert len(calls) == 1
    assert store.get_access_token() == "fresh"
    assert store.get_refresh_token() == "refresh-1"
    assert coordinator.in_flight is False


@pytest.mark.anyio("asyncio")
async def test_refresh_keeps_previous_refresh_token_when_omitted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})

    coordinator, store, http_client = build_coordinator(handler)
    async with http_client:
        assert await coordinator.refresh() is True
        await store.flush()

    assert store.get_refresh_token() == "refresh-0"


@pytest.mark.anyio("asyncio")
async def test_rejected_refresh_signs_out() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    coordinator, store, http_client = build_coordinator(handler)
    async with http_client:
        assert await coordinator.refresh() is False
        await store.flush()

    assert store.get_refresh_token() == ""
    assert store.get_access_token() is None
    assert store.get_client_id() == "cid"


@pytest.mark.anyio("asyncio")
async def test_missing_refresh_token_skips_network() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("token endpoint should not be called")

    coordinator, _, http_client = build_coordinator(handler, refresh_token="")
    async with http_client:
        assert await coordinator.refresh() is False


@pytest.mark.anyio("asyncio")
async def test_sequential_refreshes_each_hit_the_endpoint() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(
            200, json={"access_token": f"fresh-{len(calls)}", "expires_in": 3600}
        )

    coordinator, store, http_client = build_coordinator(handler)
    async with http_client:
        assert await coordinator.refresh() is True
        assert await coordinator.refresh() is True
        await store.flush()

    assert len(calls) == 2
    assert store.get_access_token() == "fresh-2"


@pytest.mark.anyio("asyncio")
async def test_concurrent_callers_share_one_failed_refresh() -> None:
    calls: list[httpx.Request] = []
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        await release.wait()
        return httpx.Response(400, json={"error": "invalid_grant"})

    coordinator, store, http_client = build_coordinator(handler)
    store.set_identity("neo", "42")
    async with http_client:
        waiters = [asyncio.create_task(coordinator.refresh()) for _ in range(5)]
        await asyncio.sleep(0)
        assert coordinator.in_flight is True
        release.set()
        results = await asyncio.gather(*waiters)
        await store.flush()

    assert results == [False] * 5
    assert len(calls) == 1
    assert store.get_refresh_token() == ""
    assert store.get_access_token() is None
    assert store.get_username() is None
    assert store.get_client_id() == "cid"
    assert coordinator.in_flight is False
