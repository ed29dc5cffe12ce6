"""Paginated download of the user's anime list."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..models import ANIME_STATUSES, AnimeListEntry
from .gateway import RequestGateway
from .http import Sleep

logger = logging.getLogger(__name__)

ANIMELIST_PATH = "/users/@me/animelist"
BASE_FIELDS = "list_status,num_episodes,main_picture"
EXTENDED_FIELDS = f"{BASE_FIELDS},studios,start_season,related_anime,genres,mean"


@dataclass(slots=True)
class AnimeListBatch:
    """Entries collected by one synchronization run."""

    entries: list[AnimeListEntry] = field(default_factory=list)
    pages: int = 0
    fetched: bool = True
    cancelled: bool = False


class AnimeListSynchronizer:
    """Walk MAL's paging cursor to materialize the full list.

    Pages are requested strictly one after another, each using the cursor
    from the previous response, with a fixed pause in between to stay under
    MAL's request budget. Every run re-downloads the whole list.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: RequestGateway,
        *,
        sleep: Sleep = asyncio.sleep,
    ):
        self._settings = settings
        self._gateway = gateway
        self._sleep = sleep

    async def fetch_anime_list(
        self,
        status: str | None = None,
        limit: int | None = None,
        *,
        extended: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> AnimeListBatch:
        """Fetch the list, optionally filtered by ``status`` and capped at ``limit``."""

        if status is not None and status not in ANIME_STATUSES:
            raise ValueError(f"Unknown anime list status: {status}")

        cap = limit if limit is not None and limit > 0 else None
        page_size = self._settings.mal_page_size
        params: dict[str, Any] = {
            "fields": EXTENDED_FIELDS if extended else BASE_FIELDS,
            "limit": min(page_size, cap) if cap is not None else page_size,
            "nsfw": "true",
        }
        if status:
            params["status"] = status

        batch = AnimeListBatch()
        while True:
            data = await self._gateway.get(ANIMELIST_PATH, params=params)
            batch.pages += 1
            items = data.get("data") if isinstance(data, dict) else None
            if not isinstance(items, list):
                logger.warning("Unexpected MAL anime list structure on page %s", batch.pages)
                batch.fetched = False
                break

            for item in items:
                if not isinstance(item, dict):
                    continue
                try:
                    batch.entries.append(AnimeListEntry.from_mal_item(item))
                except (KeyError, TypeError, ValidationError) as exc:
                    logger.debug("Skipping malformed MAL list item: %s", exc)
                if cap is not None and len(batch.entries) >= cap:
                    break

            if cap is not None and len(batch.entries) >= cap:
                break
            paging = data.get("paging") or {}
            next_url = paging.get("next") if isinstance(paging, dict) else None
            if not next_url:
                break

            next_params = self._next_page_params(
                params, next_url, received=len(items), collected=len(batch.entries), cap=cap
            )
            if not items or next_params["offset"] <= int(params.get("offset") or 0):
                logger.warning(
                    "MAL paging cursor did not advance past offset %s; stopping",
                    params.get("offset") or 0,
                )
                batch.fetched = False
                break

            await self._sleep(self._settings.mal_page_delay_seconds)
            if cancel_event is not None and cancel_event.is_set():
                logger.info(
                    "MAL list sync cancelled after %s pages (%s entries)",
                    batch.pages,
                    len(batch.entries),
                )
                batch.fetched = False
                batch.cancelled = True
                break
            params = next_params

        logger.info("Fetched %s MAL anime entries in %s pages", len(batch.entries), batch.pages)
        return batch

    def _next_page_params(
        self,
        params: dict[str, Any],
        next_url: str,
        *,
        received: int,
        collected: int,
        cap: int | None,
    ) -> dict[str, Any]:
        """Derive the next request from the cursor URL MAL returned."""

        next_params = dict(params)
        try:
            cursor = httpx.URL(next_url).params
        except (httpx.InvalidURL, TypeError):
            cursor = httpx.QueryParams()
        offset = cursor.get("offset")
        try:
            next_params["offset"] = int(offset) if offset is not None else None
        except ValueError:
            next_params["offset"] = None
        if next_params["offset"] is None:
            next_params["offset"] = int(params.get("offset") or 0) + received
        if cap is not None:
            next_params["limit"] = min(self._settings.mal_page_size, cap - collected)
        return next_params
