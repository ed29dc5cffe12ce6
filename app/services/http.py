"""Shared retry policy for calls to MAL endpoints."""

from __future__ import annotations

import asyncio
import logging
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

MAX_RETRY_AFTER_SECONDS = 30.0


def backoff_delay(attempt: int) -> float:
    """Return the capped exponential delay used before retry ``attempt``."""

    return min(2 ** (attempt - 1), 5) + (0.1 * attempt)


def retry_after_seconds(response: httpx.Response) -> float | None:
    """Parse a ``Retry-After`` header expressed in seconds or as an HTTP date."""

    header_value = response.headers.get("retry-after")
    if not header_value:
        return None
    try:
        return max(0.0, min(float(header_value), MAX_RETRY_AFTER_SECONDS))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(header_value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    delta = (retry_at - datetime.now(timezone.utc)).total_seconds()
    return max(0.0, min(delta, MAX_RETRY_AFTER_SECONDS))


async def send_with_retries(
    send: Callable[[], Awaitable[httpx.Response]],
    *,
    description: str,
    max_retries: int,
    sleep: Sleep = asyncio.sleep,
) -> httpx.Response:
    """Issue ``send`` retrying transport errors, 429 and 5xx responses.

    The last response is returned once the retry budget is spent so callers
    can classify it. Transport errors are re-raised after the final attempt.
    """

    attempt = 0
    while True:
        try:
            response = await send()
        except httpx.HTTPError as exc:
            attempt += 1
            if attempt > max_retries:
                raise
            delay = backoff_delay(attempt)
            logger.info(
                "Transient error talking to MAL during %s (%s). Retrying in %.1fs",
                description,
                exc.__class__.__name__,
                delay,
            )
            await sleep(delay)
            continue

        if response.status_code == 429 or 500 <= response.status_code < 600:
            attempt += 1
            if attempt > max_retries:
                return response
            delay = backoff_delay(attempt)
            if response.status_code == 429:
                delay = max(delay, retry_after_seconds(response) or 0.0)
            logger.info(
                "MAL answered %s during %s. Retrying in %.1fs",
                response.status_code,
                description,
                delay,
            )
            await sleep(delay)
            continue
        return response
