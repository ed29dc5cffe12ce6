"""Single-flight refresh of the MAL access token."""

from __future__ import annotations

import asyncio
import logging

from ..errors import TokenEndpointError
from .credentials import CredentialStore
from .oauth import TokenEndpoint

logger = logging.getLogger(__name__)


class TokenRefreshCoordinator:
    """Collapse concurrent refresh requests into one token-endpoint call.

    The first caller installs a shared task; everyone arriving while it runs
    awaits that same task. The slot is cleared once the task settles, so the
    next expiry starts a fresh refresh. A rejected refresh signs the user out.
    """

    def __init__(self, store: CredentialStore, token_endpoint: TokenEndpoint):
        self._store = store
        self._token_endpoint = token_endpoint
        self._inflight: asyncio.Task[bool] | None = None

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None

    async def refresh(self) -> bool:
        if self._inflight is None:
            client_id = self._store.get_client_id()
            refresh_token = self._store.get_refresh_token()
            if not (client_id and refresh_token):
                logger.info("No MAL refresh token available; skipping refresh")
                return False
            self._inflight = asyncio.create_task(
                self._run(client_id, refresh_token)
            )
        # Shielded so a cancelled caller does not cancel the shared refresh.
        return await asyncio.shield(self._inflight)

    async def _run(self, client_id: str, refresh_token: str) -> bool:
        try:
            grant = await self._token_endpoint.refresh(
                client_id=client_id, refresh_token=refresh_token
            )
            self._store.save_tokens(
                grant.access_token,
                grant.refresh_token or refresh_token,
                grant.expires_in,
            )
            return True
        except TokenEndpointError as exc:
            logger.warning("MAL token refresh failed, signing out: %s", exc)
            self._store.logout()
            return False
        finally:
            self._inflight = None
