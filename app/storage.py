"""Backing stores for MAL credentials.

Two tiers live here. ``SqlCredentialBackend`` is the durable store the
credential cache writes through to. ``LegacyKeyValueStore`` is the flat
key/value file earlier releases kept tokens in; it is only read as a
fallback and is emptied as fields migrate into the durable store.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db_models import CredentialRecord
from .models import Credentials

logger = logging.getLogger(__name__)


LEGACY_KEYS: dict[str, str] = {
    "client_id": "mal_client_id",
    "access_token": "mal_access_token",
    "refresh_token": "mal_refresh_token",
    "token_expiry": "mal_token_expiry",
    "username": "mal_username",
    "user_id": "mal_user_id",
}
OAUTH_STATE_KEY = "mal_oauth_state"


class CredentialBackend(Protocol):
    """Durable persistence capability supplied by the host process."""

    async def get_credentials(self) -> dict[str, Any] | None: ...

    async def set_credentials(self, credentials: Credentials) -> None: ...

    async def clear_credentials(self) -> None: ...


class SqlCredentialBackend:
    """Persist credentials as a single row in the ``mal_credentials`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        slot: str = "default",
    ):
        self._session_factory = session_factory
        self._slot = slot

    async def get_credentials(self) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            record = await session.get(CredentialRecord, self._slot)
            if record is None:
                return None
            return {
                "client_id": record.client_id or "",
                "access_token": record.access_token or "",
                "refresh_token": record.refresh_token or "",
                "token_expiry": record.token_expiry or 0.0,
                "username": record.username or "",
                "user_id": record.user_id or "",
            }

    async def set_credentials(self, credentials: Credentials) -> None:
        async with self._session_factory() as session:
            record = await session.get(CredentialRecord, self._slot)
            if record is None:
                record = CredentialRecord(id=self._slot)
                session.add(record)
            record.client_id = credentials.client_id
            record.access_token = credentials.access_token
            record.refresh_token = credentials.refresh_token
            record.token_expiry = credentials.token_expiry
            record.username = credentials.username
            record.user_id = credentials.user_id
            await session.commit()

    async def clear_credentials(self) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(CredentialRecord).where(CredentialRecord.id == self._slot)
            )
            await session.commit()


class LegacyKeyValueStore:
    """Synchronous string key/value map persisted as a JSON document.

    With ``path=None`` the values only live in memory.
    """

    def __init__(self, path: str | Path | None = None):
        self._path = Path(path) if path else None
        self._values: dict[str, str] = self._read()

    @property
    def path(self) -> Path | None:
        return self._path

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        if self._values.get(key) == value:
            return
        self._values[key] = value
        self._write()

    def remove(self, *keys: str) -> None:
        removed = False
        for key in keys:
            if self._values.pop(key, None) is not None:
                removed = True
        if removed:
            self._write()

    def keys(self) -> list[str]:
        return list(self._values)

    def _read(self) -> dict[str, str]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable legacy store %s: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(key): str(value) for key, value in data.items() if value is not None}

    def _write(self) -> None:
        if self._path is None:
            return
        tmp_name: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=str(self._path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(self._values, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path)
        except OSError as exc:
            logger.warning("Failed to write legacy store %s: %s", self._path, exc)
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
