"""Entrant registration and administrative reset."""

from __future__ import annotations

import logging
from collections.abc import Callable

from .models import BRACKET_SIZE, Entrant, utc_now_iso
from .storage import CapacityReachedError, StorageConflictError, TournamentStorage
from .validation import (
    InvalidValueError,
    normalize_civilization,
    normalize_email,
    validate_entrant_name,
    validate_handle,
    verify_tournament_code,
)

log = logging.getLogger(__name__)

RatingLookup = Callable[[str], int | None]


class RegistrationClosedError(InvalidValueError):
    """Raised when the tournament already holds the maximum number of entrants."""


class DuplicateEntrantError(InvalidValueError):
    """Raised when the entrant id or email is already registered."""


def register_entrant(
    storage: TournamentStorage,
    *,
    entrant_id: int,
    name: str,
    email: str,
    handle: str,
    tournament_code: str,
    expected_code: str | None,
    civilization: str | None = None,
    rating_lookup: RatingLookup | None = None,
) -> Entrant:
    verify_tournament_code(tournament_code, expected_code)
    entrant = Entrant(
        tournament_id=storage.tournament_id,
        entrant_id=entrant_id,
        name=validate_entrant_name(name),
        email=normalize_email(email),
        handle=validate_handle(handle),
        civilization=normalize_civilization(civilization),
        registered_at=utc_now_iso(),
    )

    existing = storage.list_entrants()
    if len(existing) >= BRACKET_SIZE:
        raise RegistrationClosedError(
            f"Tournament is full ({BRACKET_SIZE}/{BRACKET_SIZE} players)"
        )
    if any(other.email == entrant.email for other in existing):
        raise DuplicateEntrantError("Email already registered")

    if rating_lookup is not None:
        entrant.rating = rating_lookup(entrant.handle)

    try:
        storage.add_entrant(entrant, capacity=BRACKET_SIZE)
    except CapacityReachedError as exc:
        raise RegistrationClosedError(
            f"Tournament is full ({BRACKET_SIZE}/{BRACKET_SIZE} players)"
        ) from exc
    except StorageConflictError as exc:
        raise DuplicateEntrantError(str(exc)) from exc
    log.info(
        "Registered entrant %s (%s) in %s, seat %s/%s",
        entrant.entrant_id,
        entrant.handle,
        storage.tournament_id,
        entrant.seat,
        BRACKET_SIZE,
    )
    return entrant


def remove_entrant(storage: TournamentStorage, entrant_id: int) -> bool:
    removed = storage.delete_entrant(entrant_id)
    if removed:
        log.info("Removed entrant %s from %s", entrant_id, storage.tournament_id)
    return removed


def reset_tournament(storage: TournamentStorage) -> tuple[int, int]:
    """Delete every match and every entrant; returns ``(matches, entrants)``.

    A generation lock left behind by a crashed process is dropped as well.
    """
    matches = storage.delete_all_matches()
    entrants = storage.delete_all_entrants()
    if storage.clear_bracket_lock():
        log.warning("Cleared bracket lock for %s during reset", storage.tournament_id)
    log.info(
        "Reset tournament %s: removed %s match(es) and %s entrant(s)",
        storage.tournament_id,
        matches,
        entrants,
    )
    return matches, entrants


__all__ = [
    "DuplicateEntrantError",
    "RatingLookup",
    "RegistrationClosedError",
    "register_entrant",
    "remove_entrant",
    "reset_tournament",
]
