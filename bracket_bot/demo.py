"""Demo roster used to exercise a full bracket without real registrations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from .models import BRACKET_SIZE, ISO_FORMAT, Entrant
from .registration import reset_tournament
from .storage import TournamentStorage

log = logging.getLogger(__name__)

DEFAULT_BASE_REGISTRATION = datetime(2025, 1, 1, tzinfo=UTC)


@dataclass(slots=True, frozen=True)
class DemoPlayer:
    name: str
    email: str
    handle: str
    rating: int


DEMO_PLAYERS: tuple[DemoPlayer, ...] = (
    DemoPlayer("Jean Tremblay", "jean.tremblay@example.com", "JeanTheConqueror", 1250),
    DemoPlayer("Marie Dubois", "marie.dubois@example.com", "MarieLaReine", 1180),
    DemoPlayer("Pierre Gagnon", "pierre.gagnon@example.com", "PierreTheStrong", 1320),
    DemoPlayer("Sophie Lavoie", "sophie.lavoie@example.com", "SophieArcher", 1145),
    DemoPlayer("Luc Bergeron", "luc.bergeron@example.com", "LucTheViking", 1410),
    DemoPlayer("Isabelle Roy", "isabelle.roy@example.com", "IsabelleSamurai", 1275),
    DemoPlayer("Marc Côté", "marc.cote@example.com", "MarcTheKnight", 1195),
    DemoPlayer("Julie Bouchard", "julie.bouchard@example.com", "JulieWarrior", 1380),
    DemoPlayer("André Morin", "andre.morin@example.com", "AndreTheMongol", 1225),
    DemoPlayer("Nathalie Fortin", "nathalie.fortin@example.com", "NathalieEagle", 1305),
    DemoPlayer(
        "François Lévesque", "francois.levesque@example.com", "FrancoisKhan", 1165
    ),
    DemoPlayer(
        "Catherine Simard", "catherine.simard@example.com", "CathTheEmpress", 1450
    ),
    DemoPlayer("Daniel Lefebvre", "daniel.lefebvre@example.com", "DanielCrusader", 1290),
    DemoPlayer("Sylvie Pelletier", "sylvie.pelletier@example.com", "SylvieSpear", 1210),
    DemoPlayer("Robert Gagné", "robert.gagne@example.com", "RobertTheBrave", 1340),
    DemoPlayer("Chantal Bélanger", "chantal.belanger@example.com", "ChantalArcher", 1155),
    DemoPlayer("Martin Girard", "martin.girard@example.com", "MartinWarlord", 1425),
    DemoPlayer("Louise Nadeau", "louise.nadeau@example.com", "LouiseTheSwift", 1235),
    DemoPlayer(
        "Patrick Beaulieu", "patrick.beaulieu@example.com", "PatrickChampion", 1365
    ),
    DemoPlayer("Diane Paquette", "diane.paquette@example.com", "DianeTheGreat", 1260),
)


def build_demo_entrants(
    tournament_id: str, *, base_time: datetime | None = None
) -> list[Entrant]:
    """Convert the demo roster into unseeded entrants with ids 1..20."""
    base = base_time or DEFAULT_BASE_REGISTRATION
    return [
        Entrant(
            tournament_id=tournament_id,
            entrant_id=index + 1,
            name=player.name,
            email=player.email,
            handle=player.handle,
            rating=player.rating,
            registered_at=(base + timedelta(seconds=index)).strftime(ISO_FORMAT),
        )
        for index, player in enumerate(DEMO_PLAYERS)
    ]


def populate_demo_entrants(
    storage: TournamentStorage, *, base_time: datetime | None = None
) -> list[Entrant]:
    """Reset the tournament and register the 20 demo entrants."""
    reset_tournament(storage)
    entrants = build_demo_entrants(storage.tournament_id, base_time=base_time)
    for entrant in entrants:
        storage.add_entrant(entrant, capacity=BRACKET_SIZE)
    log.info("Created %s demo entrants in %s", len(entrants), storage.tournament_id)
    return entrants


__all__ = [
    "DEFAULT_BASE_REGISTRATION",
    "DEMO_PLAYERS",
    "DemoPlayer",
    "build_demo_entrants",
    "populate_demo_entrants",
]
