"""In-memory credential cache backed by a durable store and a legacy fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from ..models import Credentials
from ..storage import LEGACY_KEYS, CredentialBackend, LegacyKeyValueStore

logger = logging.getLogger(__name__)

# Expiries above this are epoch milliseconds written by older releases.
_MILLISECOND_EXPIRY_THRESHOLD = 100_000_000_000


def _parse_expiry(value: Any) -> float:
    try:
        expiry = float(value)
    except (TypeError, ValueError):
        return 0.0
    if expiry > _MILLISECOND_EXPIRY_THRESHOLD:
        expiry /= 1000.0
    return max(expiry, 0.0)


class CredentialStore:
    """Own the MAL credentials for the lifetime of the process.

    Reads are synchronous and served from the cache, falling back to the
    legacy key/value store for fields the cache has not populated. Every
    mutation updates the cache first, drops the matching legacy keys, and
    schedules a write-through to the durable backend. A failed durable write
    is logged and the cached session stays usable.
    """

    def __init__(
        self,
        backend: CredentialBackend,
        legacy: LegacyKeyValueStore,
        *,
        default_client_id: str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self._legacy = legacy
        self._default_client_id = default_client_id or ""
        self._clock = clock
        self._cache = Credentials()
        self._loaded = False
        self._write_lock = asyncio.Lock()
        self._pending_writes: set[asyncio.Task[bool]] = set()

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self) -> None:
        """Populate the cache from the durable store once per process."""

        if self._loaded:
            return
        self._loaded = True

        try:
            stored = await self._backend.get_credentials()
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Failed to load MAL credentials from durable store: %s", exc)
            stored = None
        stored = stored or {}

        durable_fields: list[str] = []
        migrated_fields: list[str] = []
        updates: dict[str, Any] = {}
        for field, legacy_key in LEGACY_KEYS.items():
            value = stored.get(field)
            if value:
                updates[field] = value
                durable_fields.append(field)
                continue
            legacy_value = self._legacy.get(legacy_key)
            if legacy_value:
                updates[field] = legacy_value
                migrated_fields.append(field)

        if "token_expiry" in updates:
            updates["token_expiry"] = _parse_expiry(updates["token_expiry"])
        self._cache = self._cache.model_copy(
            update={key: value for key, value in updates.items() if value}
        )

        self._legacy.remove(*(LEGACY_KEYS[field] for field in durable_fields))
        logger.info("MAL credentials loaded from persistent store")

        if migrated_fields:
            logger.info(
                "Migrating legacy MAL credential fields: %s", ", ".join(migrated_fields)
            )
            if await self._persist():
                self._legacy.remove(*(LEGACY_KEYS[field] for field in migrated_fields))

    def get_client_id(self) -> str:
        return (
            self._cache.client_id
            or self._legacy.get(LEGACY_KEYS["client_id"])
            or self._default_client_id
        )

    def get_refresh_token(self) -> str:
        return self._cache.refresh_token or self._legacy.get(
            LEGACY_KEYS["refresh_token"]
        ) or ""

    def get_username(self) -> str | None:
        return self._cache.username or self._legacy.get(LEGACY_KEYS["username"]) or None

    def get_user_id(self) -> str | None:
        return self._cache.user_id or self._legacy.get(LEGACY_KEYS["user_id"]) or None

    def get_token_expiry(self) -> float:
        """Return the most recent expiry known to either the cache or legacy tier."""

        legacy_expiry = _parse_expiry(self._legacy.get(LEGACY_KEYS["token_expiry"]))
        return max(self._cache.token_expiry, legacy_expiry)

    def get_access_token(self) -> str | None:
        """Return the access token only while it is provably unexpired."""

        token = self._cache.access_token or self._legacy.get(
            LEGACY_KEYS["access_token"]
        )
        if not token:
            return None
        expiry = self.get_token_expiry()
        if not expiry or self._clock() >= expiry:
            return None
        return token

    def is_authenticated(self) -> bool:
        return bool(self.get_access_token()) and bool(self.get_client_id())

    def snapshot(self) -> Credentials:
        return self._cache.model_copy()

    def set_client_id(self, client_id: str) -> None:
        self._update({"client_id": client_id.strip()})

    def save_tokens(self, access_token: str, refresh_token: str, expires_in: float) -> None:
        self._update(
            {
                "access_token": access_token,
                "refresh_token": refresh_token,
                "token_expiry": self._clock() + float(expires_in),
            }
        )

    def set_identity(self, username: str, user_id: str) -> None:
        self._update({"username": username, "user_id": user_id})

    def logout(self) -> None:
        """Forget the user session while keeping the client id."""

        self._update(
            {
                "access_token": "",
                "refresh_token": "",
                "token_expiry": 0.0,
                "username": "",
                "user_id": "",
            }
        )
        logger.info("MAL session cleared")

    def clear(self) -> None:
        """Forget every field, the client id included, and drop the durable row.

        A client id supplied through configuration still applies afterwards.
        """

        self._cache = Credentials()
        self._legacy.remove(*LEGACY_KEYS.values())
        self._schedule(self._clear_durable)
        logger.info("MAL credentials cleared")

    async def flush(self) -> None:
        """Wait for every scheduled durable write to settle."""

        while True:
            pending = [task for task in self._pending_writes if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending)

    def _update(self, changes: dict[str, Any]) -> None:
        self._cache = self._cache.model_copy(update=changes)
        self._legacy.remove(*(LEGACY_KEYS[field] for field in changes))
        self._schedule(self._persist)

    def _schedule(self, write: Callable[[], Awaitable[bool]]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; MAL credentials kept in memory only")
            return
        task = loop.create_task(write())
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _persist(self) -> bool:
        async with self._write_lock:
            # Snapshot under the lock so the last write carries the newest cache.
            snapshot = self._cache.model_copy()
            try:
                await self._backend.set_credentials(snapshot)
            except (SQLAlchemyError, OSError) as exc:
                logger.error("Failed to save MAL credentials: %s", exc)
                return False
        return True

    async def _clear_durable(self) -> bool:
        async with self._write_lock:
            try:
                await self._backend.clear_credentials()
            except (SQLAlchemyError, OSError) as exc:
                logger.error("Failed to clear stored MAL credentials: %s", exc)
                return False
        return True
