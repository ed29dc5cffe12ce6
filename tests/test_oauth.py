"""Tests for the PKCE authorization flow and token endpoint client."""

from __future__ import annotations

from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.config import Settings
from app.errors import (
    AuthorizationDenied,
    FlowNotStarted,
    MissingCode,
    NotConfigured,
    StateMismatch,
    TokenExchangeFailed,
)
from app.services.credentials import CredentialStore
from app.services.oauth import AuthFlowState, PKCEAuthFlow, TokenEndpoint
from app.storage import OAUTH_STATE_KEY, LegacyKeyValueStore
from app.utils import UNRESERVED_CHARACTERS, code_challenge_for


class NullBackend:
    async def get_credentials(self) -> dict[str, Any] | None:
        return None

    async def set_credentials(self, credentials: Any) -> None:
        return None

    async def clear_credentials(self) -> None:
        return None


async def _no_sleep(_: float) -> None:
    return None


def build_flow(
    handler,
    *,
    client_id: str | None = "client-id",
    identity_loader=None,
) -> tuple[PKCEAuthFlow, CredentialStore, LegacyKeyValueStore, httpx.AsyncClient]:
    settings = Settings(_env_file=None)
    legacy = LegacyKeyValueStore()
    store = CredentialStore(NullBackend(), legacy, default_client_id=client_id)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    endpoint = TokenEndpoint(settings, http_client, sleep=_no_sleep)
    flow = PKCEAuthFlow(
        settings, store, endpoint, legacy, identity_loader=identity_loader
    )
    return flow, store, legacy, http_client


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"token endpoint should not be called: {request.url}")


@pytest.mark.anyio("asyncio")
async def test_start_builds_s256_authorization_url() -> None:
    flow, _, legacy, http_client = build_flow(_unreachable)
    async with http_client:
        url = flow.start()

    parsed = urlparse(url)
    params = {key: values[0] for key, values in parse_qs(parsed.query).items()}
    verifier = flow._code_verifier

    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
        "https://myanimelist.net/v1/oauth2/authorize"
    )
    assert params["response_type"] == "code"
    assert params["client_id"] == "client-id"
    assert params["code_challenge_method"] == "S256"
    assert params["redirect_uri"] == "http://localhost:7842/callback"
    assert verifier is not None and len(verifier) == 128
    assert set(verifier) <= set(UNRESERVED_CHARACTERS)
    assert params["code_challenge"] == code_challenge_for(verifier)
    assert len(params["state"]) == 32
    assert legacy.get(OAUTH_STATE_KEY) == params["state"]
    assert flow.status is AuthFlowState.AWAITING_EXTERNAL_AUTH


@pytest.mark.anyio("asyncio")
async def test_start_requires_client_id() -> None:
    flow, _, _, http_client = build_flow(_unreachable, client_id=None)
    async with http_client:
        with pytest.raises(NotConfigured):
            flow.start()


@pytest.mark.anyio("asyncio")
async def test_state_mismatch_never_reaches_token_endpoint() -> None:
    flow, store, legacy, http_client = build_flow(_unreachable)
    async with http_client:
        flow.start()
        with pytest.raises(StateMismatch):
            await flow.handle_callback("code", "forged-state")

    assert store.get_access_token() is None
    assert legacy.get(OAUTH_STATE_KEY) is None
    assert flow.status is AuthFlowState.IDLE


@pytest.mark.anyio("asyncio")
async def test_denied_authorization_is_reported() -> None:
    flow, _, _, http_client = build_flow(_unreachable)
    async with http_client:
        flow.start()
        with pytest.raises(AuthorizationDenied, match="user said no"):
            await flow.handle_callback(
                None, None, error="access_denied", error_description="user said no"
            )


@pytest.mark.anyio("asyncio")
async def test_missing_code_consumes_state() -> None:
    flow, _, legacy, http_client = build_flow(_unreachable)
    async with http_client:
        flow.start()
        state = legacy.get(OAUTH_STATE_KEY)
        with pytest.raises(MissingCode):
            await flow.handle_callback(None, state)

    assert legacy.get(OAUTH_STATE_KEY) is None


@pytest.mark.anyio("asyncio")
async def test_callback_without_verifier_is_rejected() -> None:
    """A state left over from a previous process has no verifier to go with it."""

    flow, _, legacy, http_client = build_flow(_unreachable)
    legacy.set(OAUTH_STATE_KEY, "persisted-state")
    async with http_client:
        with pytest.raises(FlowNotStarted):
            await flow.handle_callback("code", "persisted-state")


@pytest.mark.anyio("asyncio")
async def test_successful_callback_stores_tokens_and_identity() -> None:
    requests: list[dict[str, list[str]]] = []
    identity_calls: list[bool] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(parse_qs(request.content.decode()))
        return httpx.Response(
            200,
            json={
                "token_type": "Bearer",
                "access_token": "access-1",
                "refresh_token": "refresh-1",
                "expires_in": 2_678_400,
            },
        )

    async def identity_loader() -> dict[str, Any]:
        identity_calls.append(True)
        return {}

    flow, store, legacy, http_client = build_flow(handler, identity_loader=identity_loader)
    async with http_client:
        flow.start()
        verifier = flow._code_verifier
        state = legacy.get(OAUTH_STATE_KEY)
        credentials = await flow.handle_callback("auth-code", state)
        await store.flush()

    form = requests[0]
    assert form["grant_type"] == ["authorization_code"]
    assert form["code"] == ["auth-code"]
    assert form["code_verifier"] == [verifier]
    assert form["client_id"] == ["client-id"]
    assert credentials.access_token == "access-1"
    assert store.get_access_token() == "access-1"
    assert store.get_refresh_token() == "refresh-1"
    assert identity_calls == [True]
    assert flow.status is AuthFlowState.AUTHENTICATED
    assert legacy.get(OAUTH_STATE_KEY) is None


@pytest.mark.anyio("asyncio")
async def test_rejected_exchange_resets_flow() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Code expired"}
        )

    flow, store, legacy, http_client = build_flow(handler)
    async with http_client:
        flow.start()
        with pytest.raises(TokenExchangeFailed, match="Code expired") as exc_info:
            await flow.handle_callback("auth-code", legacy.get(OAUTH_STATE_KEY))

    assert exc_info.value.status == 400
    assert flow.status is AuthFlowState.IDLE
    assert flow._code_verifier is None
    assert store.get_access_token() is None
