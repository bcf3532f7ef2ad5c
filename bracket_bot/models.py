from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import ClassVar

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

BRACKET_SIZE = 20
BYE_COUNT = 4
CHAMPIONSHIP_ROUND = 5
LOCK_TTL_SECONDS = 300
MATCHES_PER_ROUND: dict[int, int] = {1: 8, 2: 8, 3: 4, 4: 2, 5: 1}
ROUND_NAMES: dict[int, str] = {
    1: "Round of 16",
    2: "Quarterfinals",
    3: "Semifinals",
    4: "Finals",
    5: "Championship",
}


def utc_now_iso() -> str:
    """Return current UTC timestamp in ISO-8601 format (ms precision)."""
    return datetime.now(UTC).strftime(ISO_FORMAT)


def round_name(round_number: int) -> str:
    return ROUND_NAMES.get(round_number, f"Round {round_number}")


def _optional_int(value: object) -> int | None:
    if value in (None, "", "None"):
        return None
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):  # pragma: no cover - defensive
        return None


class Slot(str, Enum):
    A = "A"
    B = "B"

    @property
    def attribute(self) -> str:
        return "slot_a" if self is Slot.A else "slot_b"


@dataclass(slots=True)
class Entrant:
    tournament_id: str
    entrant_id: int
    name: str
    email: str
    handle: str
    registered_at: str
    civilization: str | None = None
    rating: int | None = None
    seed: int | None = None
    seat: int | None = None

    PK_TEMPLATE: ClassVar[str] = "TOURNAMENT#%s"
    SK_TEMPLATE: ClassVar[str] = "ENTRANT#%s"
    SK_PREFIX: ClassVar[str] = "ENTRANT#"

    @classmethod
    def key(cls, tournament_id: str, entrant_id: int) -> dict[str, str]:
        return {
            "pk": cls.PK_TEMPLATE % tournament_id,
            "sk": cls.SK_TEMPLATE % entrant_id,
        }

    def to_item(self) -> dict[str, object]:
        item = self.key(self.tournament_id, self.entrant_id)
        item.update(
            {
                "entrant_id": str(self.entrant_id),
                "name": self.name,
                "email": self.email,
                "handle": self.handle,
                "registered_at": self.registered_at,
            }
        )
        if self.civilization is not None:
            item["civilization"] = self.civilization
        if self.rating is not None:
            item["rating"] = self.rating
        if self.seed is not None:
            item["seed"] = self.seed
        if self.seat is not None:
            item["seat"] = self.seat
        return item

    @classmethod
    def from_item(cls, item: dict[str, object]) -> Entrant:
        tournament_id = str(item["pk"]).split("#", 1)[1]
        sk_value = str(item.get("sk", ""))
        entrant_id = int(str(item.get("entrant_id") or sk_value.split("#", 1)[1]))
        civilization = item.get("civilization")
        return cls(
            tournament_id=tournament_id,
            entrant_id=entrant_id,
            name=str(item.get("name", "")),
            email=str(item.get("email", "")),
            handle=str(item.get("handle", "")),
            registered_at=str(item.get("registered_at", "")),
            civilization=str(civilization) if civilization is not None else None,
            rating=_optional_int(item.get("rating")),
            seed=_optional_int(item.get("seed")),
            seat=_optional_int(item.get("seat")),
        )

    def display(self) -> str:
        if self.seed is not None:
            return f"#{self.seed} {self.handle}"
        return self.handle


@dataclass(slots=True)
class Match:
    tournament_id: str
    match_id: str
    round: int
    match_number: int
    slot_a: int | None = None
    slot_b: int | None = None
    winner_id: int | None = None
    completed_at: str | None = None
    created_at: str = ""

    PK_TEMPLATE: ClassVar[str] = "TOURNAMENT#%s"
    SK_TEMPLATE: ClassVar[str] = "MATCH#R%s#M%02d"
    SK_PREFIX: ClassVar[str] = "MATCH#"

    @classmethod
    def key(cls, tournament_id: str, round_: int, match_number: int) -> dict[str, str]:
        return {
            "pk": cls.PK_TEMPLATE % tournament_id,
            "sk": cls.SK_TEMPLATE % (round_, match_number),
        }

    def to_item(self) -> dict[str, object]:
        item = self.key(self.tournament_id, self.round, self.match_number)
        item.update(
            {
                "match_id": self.match_id,
                "round": self.round,
                "match_number": self.match_number,
                "created_at": self.created_at,
            }
        )
        if self.slot_a is not None:
            item["slot_a"] = str(self.slot_a)
        if self.slot_b is not None:
            item["slot_b"] = str(self.slot_b)
        if self.winner_id is not None:
            item["winner_id"] = str(self.winner_id)
        if self.completed_at is not None:
            item["completed_at"] = self.completed_at
        return item

    @classmethod
    def from_item(cls, item: dict[str, object]) -> Match:
        tournament_id = str(item["pk"]).split("#", 1)[1]
        completed_at = item.get("completed_at")
        return cls(
            tournament_id=tournament_id,
            match_id=str(item.get("match_id", "")),
            round=int(item.get("round", 0)),  # type: ignore[arg-type]
            match_number=int(item.get("match_number", 0)),  # type: ignore[arg-type]
            slot_a=_optional_int(item.get("slot_a")),
            slot_b=_optional_int(item.get("slot_b")),
            winner_id=_optional_int(item.get("winner_id")),
            completed_at=str(completed_at) if completed_at is not None else None,
            created_at=str(item.get("created_at", "")),
        )

    @property
    def round_name(self) -> str:
        return round_name(self.round)

    @property
    def label(self) -> str:
        return f"R{self.round}M{self.match_number}"

    def slot(self, slot: Slot) -> int | None:
        return self.slot_a if slot is Slot.A else self.slot_b

    def entrant_ids(self) -> tuple[int, ...]:
        return tuple(
            entrant_id
            for entrant_id in (self.slot_a, self.slot_b)
            if entrant_id is not None
        )

    @property
    def is_decided(self) -> bool:
        return self.winner_id is not None

    @property
    def is_ready(self) -> bool:
        """Both slots are filled and no winner has been recorded yet."""
        return (
            self.slot_a is not None and self.slot_b is not None and not self.is_decided
        )


@dataclass(slots=True)
class EntrantSeat:
    """One of the ``BRACKET_SIZE`` places in the field, claimed by an entrant."""

    tournament_id: str
    seat: int
    entrant_id: int

    PK_TEMPLATE: ClassVar[str] = "TOURNAMENT#%s"
    SK_TEMPLATE: ClassVar[str] = "SEAT#%02d"
    SK_PREFIX: ClassVar[str] = "SEAT#"

    @classmethod
    def key(cls, tournament_id: str, seat: int) -> dict[str, str]:
        return {"pk": cls.PK_TEMPLATE % tournament_id, "sk": cls.SK_TEMPLATE % seat}

    def to_item(self) -> dict[str, object]:
        item = self.key(self.tournament_id, self.seat)
        item["entrant_id"] = str(self.entrant_id)
        return item


@dataclass(slots=True)
class TournamentLock:
    tournament_id: str
    holder: str
    acquired_at: str
    expires_at: int = 0

    PK_TEMPLATE: ClassVar[str] = "TOURNAMENT#%s"
    SK_VALUE: ClassVar[str] = "LOCK#BRACKET"

    @classmethod
    def key(cls, tournament_id: str) -> dict[str, str]:
        return {"pk": cls.PK_TEMPLATE % tournament_id, "sk": cls.SK_VALUE}

    def to_item(self) -> dict[str, object]:
        item = self.key(self.tournament_id)
        item.update(
            {
                "holder": self.holder,
                "acquired_at": self.acquired_at,
                "expires_at": self.expires_at,
            }
        )
        return item


__all__ = [
    "BRACKET_SIZE",
    "BYE_COUNT",
    "CHAMPIONSHIP_ROUND",
    "ISO_FORMAT",
    "LOCK_TTL_SECONDS",
    "MATCHES_PER_ROUND",
    "ROUND_NAMES",
    "Entrant",
    "EntrantSeat",
    "Match",
    "Slot",
    "TournamentLock",
    "round_name",
    "utc_now_iso",
]
