"""OAuth2 PKCE sign-in against MyAnimeList."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

import httpx

from ..config import Settings
from ..errors import (
    AuthorizationDenied,
    FlowNotStarted,
    MALError,
    MissingCode,
    MissingState,
    NotConfigured,
    RefreshFailed,
    StateMismatch,
    TokenEndpointError,
    TokenExchangeFailed,
)
from ..models import Credentials
from ..storage import OAUTH_STATE_KEY, LegacyKeyValueStore
from ..utils import (
    code_challenge_for,
    coerce_int,
    format_mal_error,
    generate_random_string,
    response_json,
)
from .credentials import CredentialStore
from .http import Sleep, send_with_retries

logger = logging.getLogger(__name__)

CODE_VERIFIER_LENGTH = 128
STATE_LENGTH = 32
DEFAULT_EXPIRES_IN = 3_600


@dataclass(slots=True)
class TokenGrant:
    """Tokens returned by a successful exchange or refresh."""

    access_token: str
    refresh_token: str
    expires_in: int


class TokenEndpoint:
    """Server-side intermediary for the MAL token endpoint.

    Browsers cannot call the token endpoint directly, so both the
    authorization-code exchange and the refresh grant are posted from here.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        sleep: Sleep = asyncio.sleep,
    ):
        self._settings = settings
        self._client = http_client
        self._sleep = sleep

    async def exchange_code(
        self, *, client_id: str, code: str, code_verifier: str
    ) -> TokenGrant:
        logger.info("Exchanging MAL authorization code for tokens")
        return await self._request(
            {
                "client_id": client_id,
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": code_verifier,
                "redirect_uri": self._settings.mal_redirect_uri,
            },
            error_cls=TokenExchangeFailed,
            description="token exchange",
        )

    async def refresh(self, *, client_id: str, refresh_token: str) -> TokenGrant:
        logger.info("Refreshing MAL access token")
        return await self._request(
            {
                "client_id": client_id,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            error_cls=RefreshFailed,
            description="token refresh",
        )

    async def _request(
        self,
        form: dict[str, str],
        *,
        error_cls: type[TokenEndpointError],
        description: str,
    ) -> TokenGrant:
        url = str(self._settings.mal_token_url)

        async def _send() -> httpx.Response:
            return await self._client.post(
                url, data=form, headers={"Accept": "application/json"}
            )

        try:
            response = await send_with_retries(
                _send,
                description=description,
                max_retries=self._settings.mal_max_retries,
                sleep=self._sleep,
            )
        except httpx.HTTPError as exc:
            raise error_cls(
                f"Unable to reach MAL for {description}: {exc.__class__.__name__}"
            ) from exc

        data = response_json(response)
        if response.status_code >= 400:
            logger.warning(
                "MAL %s failed with status %s", description, response.status_code
            )
            raise error_cls(
                format_mal_error(data, f"MAL rejected the {description}."),
                status=response.status_code,
            )

        access_token = data.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise error_cls(f"MAL {description} response did not include a token.")
        refresh_token = data.get("refresh_token")
        return TokenGrant(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) else "",
            expires_in=coerce_int(data.get("expires_in"), default=DEFAULT_EXPIRES_IN)
            or DEFAULT_EXPIRES_IN,
        )


class AuthFlowState(str, Enum):
    IDLE = "idle"
    AWAITING_EXTERNAL_AUTH = "awaiting_external_auth"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"


class PKCEAuthFlow:
    """Drive one authorization attempt from URL generation to stored tokens.

    The code verifier only lives in memory; the ``state`` value is persisted
    to the key/value store so it survives a restart triggered by the external
    browser redirect. Any callback consumes both, successful or not.
    """

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        token_endpoint: TokenEndpoint,
        state_store: LegacyKeyValueStore,
        *,
        identity_loader: Callable[[], Awaitable[Any]] | None = None,
    ):
        self._settings = settings
        self._store = store
        self._token_endpoint = token_endpoint
        self._state_store = state_store
        self._identity_loader = identity_loader
        self._code_verifier: str | None = None
        self._status = AuthFlowState.IDLE

    @property
    def status(self) -> AuthFlowState:
        return self._status

    def start(self) -> str:
        """Begin a new attempt and return the MAL authorization URL."""

        client_id = self._store.get_client_id()
        if not client_id:
            raise NotConfigured("MAL client id is not configured")

        self._code_verifier = generate_random_string(CODE_VERIFIER_LENGTH)
        state = generate_random_string(STATE_LENGTH)
        self._state_store.set(OAUTH_STATE_KEY, state)

        query = urlencode(
            {
                "response_type": "code",
                "client_id": client_id,
                "code_challenge": code_challenge_for(self._code_verifier),
                "code_challenge_method": "S256",
                "redirect_uri": self._settings.mal_redirect_uri,
                "state": state,
            }
        )
        self._status = AuthFlowState.AWAITING_EXTERNAL_AUTH
        logger.info("Starting MAL OAuth flow")
        return f"{self._settings.mal_authorize_url}?{query}"

    async def handle_callback(
        self,
        code: str | None,
        state: str | None,
        *,
        error: str | None = None,
        error_description: str | None = None,
    ) -> Credentials:
        """Validate the redirect, exchange the code and store the tokens."""

        try:
            client_id = self._store.get_client_id()
            if not client_id:
                raise NotConfigured("MAL client id is not configured")
            if error:
                raise AuthorizationDenied(error_description or error)
            if not state:
                raise MissingState("Missing OAuth state")
            expected_state = self._state_store.get(OAUTH_STATE_KEY)
            if not expected_state or expected_state != state:
                raise StateMismatch("OAuth state mismatch")
            self._state_store.remove(OAUTH_STATE_KEY)
            if not code:
                raise MissingCode("MAL did not provide an authorization code")
            code_verifier = self._code_verifier
            if not code_verifier:
                raise FlowNotStarted("OAuth flow not initialized")

            self._status = AuthFlowState.EXCHANGING
            grant = await self._token_endpoint.exchange_code(
                client_id=client_id, code=code, code_verifier=code_verifier
            )
        except MALError as exc:
            logger.warning("MAL OAuth callback rejected: %s", exc)
            self.reset()
            raise

        self._store.save_tokens(grant.access_token, grant.refresh_token, grant.expires_in)
        self._code_verifier = None
        self._status = AuthFlowState.AUTHENTICATED

        if self._identity_loader is not None:
            try:
                await self._identity_loader()
            except MALError as exc:
                logger.warning("Signed in but failed to fetch MAL identity: %s", exc)
        return self._store.snapshot()

    def reset(self) -> None:
        """Discard the verifier and persisted state and return to idle."""

        self._code_verifier = None
        self._state_store.remove(OAUTH_STATE_KEY)
        self._status = AuthFlowState.IDLE
