"""Utility helpers for the Malytics service."""

from __future__ import annotations

import base64
import hashlib
import math
import secrets
from typing import Any

import httpx


UNRESERVED_CHARACTERS = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
)


def generate_random_string(length: int) -> str:
    """Return a cryptographically random string of URL-safe unreserved characters."""

    return "".join(secrets.choice(UNRESERVED_CHARACTERS) for _ in range(length))


def code_challenge_for(verifier: str) -> str:
    """Return the S256 PKCE challenge for ``verifier``."""

    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def coerce_int(value: Any, *, default: int | None = None) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def response_json(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    if isinstance(data, dict):
        return data
    return {}


def format_mal_error(data: dict[str, Any], fallback: str) -> str:
    """Return the most descriptive error message MAL included in ``data``."""

    if not data:
        return fallback
    return str(
        data.get("error_description")
        or data.get("message")
        or data.get("hint")
        or data.get("error")
        or fallback
    )
