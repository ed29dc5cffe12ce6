"""Utilities for communicating with the MyAnimeList API."""

from __future__ import annotations

import logging
from typing import Any

from ..errors import MALRequestError
from ..models import UserStats
from .credentials import CredentialStore
from .gateway import RequestGateway

logger = logging.getLogger(__name__)

ANIME_DETAIL_FIELDS = (
    "title,main_picture,num_episodes,synopsis,mean,rank,studios,genres,"
    "start_season,status,my_list_status"
)


class MALClient:
    """Account and catalog lookups routed through the request gateway."""

    def __init__(self, gateway: RequestGateway, store: CredentialStore):
        self._gateway = gateway
        self._store = store

    async def fetch_current_user(self) -> dict[str, Any]:
        """Return the signed-in user's id and name and cache them."""

        data = await self._gateway.get("/users/@me")
        if not isinstance(data, dict) or "id" not in data:
            raise MALRequestError("Unexpected MAL user profile structure")
        name = str(data.get("name") or "")
        user_id = str(data["id"])
        self._store.set_identity(name, user_id)
        logger.info("Signed in to MAL as %s", name or user_id)
        return {"id": data["id"], "name": name}

    async def fetch_user_stats(self) -> UserStats:
        data = await self._gateway.get(
            "/users/@me", params={"fields": "anime_statistics"}
        )
        if not isinstance(data, dict):
            raise MALRequestError("Unexpected MAL statistics structure")
        return UserStats.from_mal(
            data, fallback_username=self._store.get_username() or ""
        )

    async def search_anime(self, query: str, *, limit: int = 10) -> list[dict[str, Any]]:
        query = query.strip()
        if not query:
            return []
        data = await self._gateway.get(
            "/anime",
            params={
                "q": query,
                "limit": max(1, min(int(limit), 100)),
                "fields": "main_picture,num_episodes",
            },
        )
        if not isinstance(data, dict):
            return []
        return [
            entry.get("node")
            for entry in data.get("data") or []
            if isinstance(entry, dict) and isinstance(entry.get("node"), dict)
        ]

    async def get_anime(self, anime_id: int) -> dict[str, Any]:
        data = await self._gateway.get(
            f"/anime/{int(anime_id)}", params={"fields": ANIME_DETAIL_FIELDS}
        )
        if not isinstance(data, dict):
            raise MALRequestError(f"Unexpected MAL detail structure for anime {anime_id}")
        return data
