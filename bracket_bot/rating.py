"""Player rating lookup against the public aoe2.net leaderboard."""

from __future__ import annotations

import logging
from typing import Final

import requests

log = logging.getLogger(__name__)

LEADERBOARD_URL: Final[str] = "https://aoe2.net/api/leaderboard"
RANDOM_MAP_LEADERBOARD: Final[int] = 3
REQUEST_TIMEOUT: Final[int] = 10


def fetch_player_rating(
    handle: str,
    *,
    session: requests.Session | None = None,
    timeout: int = REQUEST_TIMEOUT,
) -> int | None:
    """Return the 1v1 random map rating for ``handle`` or ``None``.

    Lookup problems are logged and swallowed; the rating is display-only.
    """
    params = {
        "game": "aoe2de",
        "leaderboard_id": RANDOM_MAP_LEADERBOARD,
        "search": handle,
    }
    getter = session.get if session is not None else requests.get
    try:
        resp = getter(LEADERBOARD_URL, params=params, timeout=timeout)
    except requests.RequestException as exc:
        log.warning("Rating lookup for %s failed: %s", handle, exc)
        return None
    if resp.status_code != 200:
        log.warning(
            "Rating lookup for %s returned HTTP %s", handle, resp.status_code
        )
        return None
    try:
        data = resp.json()
    except ValueError:
        log.warning("Rating lookup for %s returned invalid JSON", handle)
        return None

    leaderboard = data.get("leaderboard") if isinstance(data, dict) else None
    if not leaderboard:
        log.info("Player %s not found on leaderboard", handle)
        return None
    rating = leaderboard[0].get("rating")
    try:
        return int(rating) if rating else None
    except (TypeError, ValueError):
        return None


__all__ = ["fetch_player_rating"]
