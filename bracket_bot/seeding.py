"""Random seed assignment for registered entrants."""

from __future__ import annotations

import logging
import random

from .bracket import BracketError
from .models import Entrant
from .storage import TournamentStorage

log = logging.getLogger(__name__)


class SeedingLockedError(BracketError):
    """Raised when re-seeding would leave an existing bracket out of step."""


def shuffled_seeds(
    entrants: list[Entrant], rng: random.Random | None = None
) -> list[tuple[Entrant, int]]:
    """Pair every entrant with a seed from a uniformly random permutation."""
    randomizer = rng or random.Random()
    ordering = list(entrants)
    randomizer.shuffle(ordering)
    return [(entrant, index + 1) for index, entrant in enumerate(ordering)]


def assign_seeds(
    storage: TournamentStorage,
    rng: random.Random | None = None,
    *,
    replace_bracket: bool = False,
) -> list[Entrant]:
    """Persist a fresh random seeding and return entrants ordered by seed.

    Ratings are not consulted; every permutation is equally likely. Calling
    this again produces an independent permutation. Once a bracket exists the
    seeds are frozen unless ``replace_bracket`` is set by a caller that
    regenerates the bracket straight afterwards.
    """
    if not replace_bracket:
        existing = len(storage.list_matches())
        if existing:
            raise SeedingLockedError(
                f"A bracket with {existing} match(es) already exists for "
                f"{storage.tournament_id}; regenerate or reset it to re-seed"
            )
    entrants = storage.list_entrants(order_by="registration")
    assignments = shuffled_seeds(entrants, rng)
    for entrant, seed in assignments:
        storage.set_seed(entrant.entrant_id, seed)
        entrant.seed = seed
    log.info(
        "Assigned seeds to %s entrant(s) in tournament %s",
        len(assignments),
        storage.tournament_id,
    )
    return [entrant for entrant, _ in assignments]


__all__ = ["SeedingLockedError", "assign_seeds", "shuffled_seeds"]
