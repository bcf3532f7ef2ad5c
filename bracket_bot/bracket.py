from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from math import ceil

from .models import (
    BRACKET_SIZE,
    BYE_COUNT,
    CHAMPIONSHIP_ROUND,
    MATCHES_PER_ROUND,
    Entrant,
    Match,
    Slot,
    round_name,
    utc_now_iso,
)
from .storage import LockHeldError, StorageConflictError, TournamentStorage

log = logging.getLogger(__name__)


class BracketError(Exception):
    """Base exception for rejected bracket operations."""


class InvalidEntrantCount(BracketError):
    def __init__(self, count: int) -> None:
        super().__init__(f"Expected {BRACKET_SIZE} entrants, got {count}")
        self.count = count


class InvalidSeeding(BracketError):
    """Raised when seeds are missing, duplicated or outside 1..20."""


class InvalidWinner(BracketError):
    """Raised when the winner is not one of the match's two entrants."""


class MatchNotFound(BracketError):
    """Raised when no match carries the requested id."""


class MatchAlreadyDecided(BracketError):
    """Raised when a different winner was already recorded for the match."""


class SlotConflict(BracketError):
    """Raised when a downstream slot already holds another entrant."""


class BracketBusy(BracketError):
    """Raised when another bracket generation is running."""


class UnknownEntrant(BracketError):
    """Raised when an administrative override names an unregistered entrant."""


@dataclass(slots=True, frozen=True)
class PlannedMatch:
    round: int
    match_number: int
    slot_a: int | None = None
    slot_b: int | None = None


@dataclass(slots=True)
class PropagationFix:
    source: Match
    target: Match
    slot: Slot
    entrant_id: int
    replaces: int | None = None


@dataclass(slots=True)
class RepairReport:
    fixes: list[PropagationFix] = field(default_factory=list)
    conflicts: list[PropagationFix] = field(default_factory=list)
    missing_targets: list[Match] = field(default_factory=list)


def target_match(round_: int, match_number: int) -> tuple[int, int] | None:
    """Return ``(round, match_number)`` fed by a match's winner, or ``None``."""
    if round_ >= CHAMPIONSHIP_ROUND:
        return None
    return round_ + 1, ceil(match_number / 2)


def target_slot(match_number: int) -> Slot:
    return Slot.A if match_number % 2 == 1 else Slot.B


def is_bye_slot(round_: int, match_number: int, slot: Slot) -> bool:
    """Quarterfinal slot A of matches 1..4 is seeded directly with a top-4 bye."""
    return round_ == 2 and match_number <= BYE_COUNT and slot is Slot.A


def _validate_seeding(entrants: Sequence[Entrant]) -> list[Entrant]:
    if len(entrants) != BRACKET_SIZE:
        raise InvalidEntrantCount(len(entrants))
    unseeded = [entrant.entrant_id for entrant in entrants if entrant.seed is None]
    if unseeded:
        raise InvalidSeeding(
            f"{len(unseeded)} entrant(s) have no seed; assign seeds first"
        )
    ordered = sorted(entrants, key=lambda entrant: entrant.seed or 0)
    seeds = [entrant.seed for entrant in ordered]
    if seeds != list(range(1, BRACKET_SIZE + 1)):
        raise InvalidSeeding(f"Seeds must be exactly 1..{BRACKET_SIZE}, got {seeds}")
    return ordered


def plan_bracket(entrants: Sequence[Entrant]) -> list[PlannedMatch]:
    """Lay out all 23 matches (8, 8, 4, 2, 1) for 20 seeded entrants.

    Seeds 5..20 meet in consecutive pairs in the Round of 16. Seeds 1..4 take
    slot A of Quarterfinal matches 1..4; every other slot starts empty.
    """
    ordered = _validate_seeding(entrants)
    top_seeds = ordered[:BYE_COUNT]
    first_round = ordered[BYE_COUNT:]

    plan: list[PlannedMatch] = []
    for index in range(MATCHES_PER_ROUND[1]):
        plan.append(
            PlannedMatch(
                round=1,
                match_number=index + 1,
                slot_a=first_round[index * 2].entrant_id,
                slot_b=first_round[index * 2 + 1].entrant_id,
            )
        )
    for index in range(MATCHES_PER_ROUND[2]):
        bye = top_seeds[index].entrant_id if index < BYE_COUNT else None
        plan.append(PlannedMatch(round=2, match_number=index + 1, slot_a=bye))
    for round_ in range(3, CHAMPIONSHIP_ROUND + 1):
        for index in range(MATCHES_PER_ROUND[round_]):
            plan.append(PlannedMatch(round=round_, match_number=index + 1))
    return plan


def generate_bracket(
    storage: TournamentStorage,
    *,
    holder: str = "bracket-bot",
    seeder: Callable[[TournamentStorage], object] | None = None,
) -> list[Match]:
    """Replace any existing bracket with a fresh one built from current seeds.

    Validation happens before anything is written, and the new matches replace
    the old ones in a single transaction, so a rejected or failed call leaves
    the previous bracket untouched. ``seeder`` runs under the generation lock
    before the layout is planned.
    """
    try:
        with storage.bracket_lock(holder):
            if seeder is not None:
                seeder(storage)
            entrants = storage.list_entrants(order_by="seed")
            plan = plan_bracket(entrants)
            created_at = utc_now_iso()
            matches = [
                Match(
                    tournament_id=storage.tournament_id,
                    match_id=uuid.uuid4().hex,
                    round=planned.round,
                    match_number=planned.match_number,
                    slot_a=planned.slot_a,
                    slot_b=planned.slot_b,
                    created_at=created_at,
                )
                for planned in plan
            ]
            removed = storage.replace_matches(matches)
    except LockHeldError as exc:
        raise BracketBusy(str(exc)) from exc
    log.info(
        "Generated bracket for %s with %s match(es), replaced %s",
        storage.tournament_id,
        len(matches),
        removed,
    )
    return matches


def _plan_advance(
    storage: TournamentStorage, match: Match, winner_id: int
) -> PropagationFix | None:
    """Work out where ``winner_id`` goes next, or ``None`` when nowhere.

    Raises ``SlotConflict`` when the downstream slot belongs to someone else.
    """
    target = target_match(match.round, match.match_number)
    if target is None:
        return None
    downstream = storage.get_match_at(*target)
    if downstream is None:
        log.warning(
            "No downstream match R%sM%s for %s; skipping propagation",
            target[0],
            target[1],
            match.label,
        )
        return None
    slot = target_slot(match.match_number)
    occupant = downstream.slot(slot)
    if occupant is None or occupant == winner_id:
        return PropagationFix(match, downstream, slot, winner_id)
    if is_bye_slot(downstream.round, downstream.match_number, slot) and (
        not downstream.is_decided
    ):
        log.warning(
            "Winner %s of %s displaces bye entrant %s from %s slot %s",
            winner_id,
            match.label,
            occupant,
            downstream.label,
            slot.value,
        )
        return PropagationFix(match, downstream, slot, winner_id, replaces=occupant)
    raise SlotConflict(
        f"Cannot advance {match.label} winner into {downstream.label} "
        f"slot {slot.value}: it already holds entrant {occupant}"
    )


def _log_advance(match: Match, fix: PropagationFix) -> None:
    log.info(
        "Advanced entrant %s from %s to %s slot %s",
        fix.entrant_id,
        match.label,
        fix.target.label,
        fix.slot.value,
    )


def _fill_downstream(storage: TournamentStorage, match: Match) -> Match | None:
    if match.winner_id is None:
        return None
    if target_match(match.round, match.match_number) is None:
        log.info(
            "Championship decided in %s: entrant %s",
            storage.tournament_id,
            match.winner_id,
        )
        return None
    fix = _plan_advance(storage, match, match.winner_id)
    if fix is None:
        return None
    try:
        filled = storage.set_match_slot(
            fix.target, fix.slot, fix.entrant_id, replaces=fix.replaces
        )
    except StorageConflictError as exc:
        raise SlotConflict(
            f"Cannot advance {match.label} winner into {fix.target.label} "
            f"slot {fix.slot.value}: {exc}"
        ) from exc
    _log_advance(match, fix)
    return filled


def record_winner(
    storage: TournamentStorage,
    match_id: str,
    winner_id: int,
    *,
    completed_at: str | None = None,
) -> Match:
    """Decide a match and advance its winner one step forward.

    The winner and the downstream slot are written together: if the slot
    cannot take the winner, ``SlotConflict`` is raised and the match stays
    undecided. Re-submitting the winner already on record re-applies
    propagation, so a decision whose propagation was lost can be retried.
    """
    match = storage.get_match(match_id)
    if match is None:
        raise MatchNotFound(f"Match {match_id} not found")

    if match.is_decided:
        return _replay_decision(storage, match, winner_id)

    if winner_id not in match.entrant_ids():
        raise InvalidWinner(
            f"Entrant {winner_id} is not playing in match {match.label}"
        )
    if not match.is_ready:
        raise InvalidWinner(
            f"Match {match.label} is still waiting for an opponent"
        )

    fix = _plan_advance(storage, match, winner_id)
    completed = completed_at or utc_now_iso()
    try:
        if fix is None:
            decided = storage.set_match_winner(match, winner_id, completed)
        else:
            decided = storage.set_match_winner_and_advance(
                match,
                winner_id,
                completed,
                fix.target,
                fix.slot,
                replaces=fix.replaces,
            )
    except StorageConflictError as exc:
        current = storage.get_match(match_id)
        if current is None:
            raise MatchNotFound(f"Match {match_id} not found") from None
        if current.is_decided:
            return _replay_decision(storage, current, winner_id)
        if fix is None:
            raise
        raise SlotConflict(
            f"Cannot advance {match.label} winner into {fix.target.label} "
            f"slot {fix.slot.value}: {exc}"
        ) from exc

    log.info(
        "Recorded winner %s for %s (%s)", winner_id, decided.label, decided.round_name
    )
    if fix is not None:
        _log_advance(decided, fix)
    elif decided.round == CHAMPIONSHIP_ROUND:
        log.info(
            "Championship decided in %s: entrant %s",
            storage.tournament_id,
            winner_id,
        )
    return decided


def _replay_decision(
    storage: TournamentStorage, match: Match, winner_id: int
) -> Match:
    if match.winner_id != winner_id:
        raise MatchAlreadyDecided(
            f"Match {match.label} already has winner {match.winner_id}"
        )
    log.warning(
        "Winner %s for %s was already recorded; re-applying propagation",
        winner_id,
        match.label,
    )
    _fill_downstream(storage, match)
    return match


def override_slot(
    storage: TournamentStorage, match_id: str, slot: Slot, entrant_id: int
) -> Match:
    """Administrative placement of an entrant into an undecided match."""
    match = storage.get_match(match_id)
    if match is None:
        raise MatchNotFound(f"Match {match_id} not found")
    if match.is_decided:
        raise MatchAlreadyDecided(
            f"Match {match.label} already has winner {match.winner_id}"
        )
    if storage.get_entrant(entrant_id) is None:
        raise UnknownEntrant(f"Entrant {entrant_id} is not registered")
    other = match.slot(Slot.B if slot is Slot.A else Slot.A)
    if other == entrant_id:
        raise SlotConflict(
            f"Entrant {entrant_id} already occupies the other slot of {match.label}"
        )
    try:
        updated = storage.override_match_slot(match, slot, entrant_id)
    except StorageConflictError as exc:
        raise MatchAlreadyDecided(str(exc)) from exc
    log.info(
        "Placed entrant %s into %s slot %s by override",
        entrant_id,
        updated.label,
        slot.value,
    )
    return updated


def plan_repairs(matches: Sequence[Match]) -> RepairReport:
    """Find decided matches whose winner never reached the downstream slot."""
    by_position = {(match.round, match.match_number): match for match in matches}
    report = RepairReport()
    for match in matches:
        if match.winner_id is None:
            continue
        target = target_match(match.round, match.match_number)
        if target is None:
            continue
        downstream = by_position.get(target)
        if downstream is None:
            report.missing_targets.append(match)
            continue
        slot = target_slot(match.match_number)
        occupant = downstream.slot(slot)
        if occupant == match.winner_id:
            continue
        fix = PropagationFix(
            source=match,
            target=downstream,
            slot=slot,
            entrant_id=match.winner_id,
            replaces=occupant,
        )
        if occupant is None or (
            is_bye_slot(downstream.round, downstream.match_number, slot)
            and not downstream.is_decided
        ):
            report.fixes.append(fix)
        else:
            report.conflicts.append(fix)
    return report


def repair_propagation(
    storage: TournamentStorage, *, execute: bool = True
) -> RepairReport:
    report = plan_repairs(storage.list_matches())
    if not execute:
        return report
    for fix in report.fixes:
        storage.set_match_slot(
            fix.target, fix.slot, fix.entrant_id, replaces=fix.replaces
        )
        log.info(
            "Repaired propagation %s -> %s slot %s",
            fix.source.label,
            fix.target.label,
            fix.slot.value,
        )
    for fix in report.conflicts:
        log.error(
            "Slot %s of %s holds %s, expected winner %s of %s",
            fix.slot.value,
            fix.target.label,
            fix.target.slot(fix.slot),
            fix.entrant_id,
            fix.source.label,
        )
    return report


# ----- Read-side helpers -----
def bracket_rounds(matches: Iterable[Match]) -> dict[int, list[Match]]:
    rounds: dict[int, list[Match]] = {}
    for match in sorted(matches, key=lambda item: (item.round, item.match_number)):
        rounds.setdefault(match.round, []).append(match)
    return rounds


def playable_matches(matches: Iterable[Match]) -> list[Match]:
    return [match for match in matches if match.is_ready]


def champion(matches: Iterable[Match]) -> int | None:
    for match in matches:
        if match.round == CHAMPIONSHIP_ROUND:
            return match.winner_id
    return None


def _entrant_label(entrant_id: int | None, lookup: Mapping[int, Entrant]) -> str:
    if entrant_id is None:
        return "TBD"
    entrant = lookup.get(entrant_id)
    if entrant is None:
        return f"Entrant {entrant_id}"
    return entrant.display()


def render_bracket(
    matches: Sequence[Match],
    entrants: Iterable[Entrant],
    *,
    shrink_completed: bool = False,
) -> str:
    lookup = {entrant.entrant_id: entrant for entrant in entrants}
    rounds = bracket_rounds(matches)
    round_numbers = sorted(rounds)
    if shrink_completed and round_numbers:
        for round_ in round_numbers:
            if any(not match.is_decided for match in rounds[round_]):
                round_numbers = [value for value in round_numbers if value >= round_]
                break
        else:
            round_numbers = round_numbers[-1:]

    lines: list[str] = []
    for round_ in round_numbers:
        lines.append(round_name(round_))
        for match in rounds[round_]:
            slot_a = _entrant_label(match.slot_a, lookup)
            slot_b = _entrant_label(match.slot_b, lookup)
            lines.append(f"  [{match.label}] {slot_a} vs {slot_b}")
            if match.winner_id is not None:
                lines.append(f"    -> Winner: {_entrant_label(match.winner_id, lookup)}")
            else:
                lines.append("    -> Winner: TBD")
        lines.append("")
    if lines and not lines[-1]:
        lines.pop()
    winner = champion(matches)
    if winner is not None:
        lines.append(f"Champion: {_entrant_label(winner, lookup)}")
    return "\n".join(line.rstrip() for line in lines)


def _simulated_winner(match: Match, lookup: Mapping[int, Entrant]) -> int:
    def strength(entrant_id: int) -> tuple[int, int]:
        entrant = lookup.get(entrant_id)
        rating = entrant.rating if entrant and entrant.rating is not None else 0
        seed = entrant.seed if entrant and entrant.seed is not None else 999
        return (rating, -seed)

    if not match.is_ready:
        raise InvalidWinner(f"Match {match.label} has no two entrants to play")
    return max(match.entrant_ids(), key=strength)


def simulate_tournament(
    storage: TournamentStorage,
) -> list[tuple[str, list[Match]]]:
    """Play out every pending match; higher rating wins, ties go to the better seed."""
    lookup = {entrant.entrant_id: entrant for entrant in storage.list_entrants()}
    snapshots: list[tuple[str, list[Match]]] = [
        ("Initial Bracket", storage.list_matches())
    ]
    for round_ in range(1, CHAMPIONSHIP_ROUND + 1):
        pending = [
            match
            for match in playable_matches(storage.list_matches())
            if match.round == round_
        ]
        for match in pending:
            record_winner(storage, match.match_id, _simulated_winner(match, lookup))
        snapshots.append((f"After {round_name(round_)}", storage.list_matches()))
    return snapshots


__all__ = [
    "BracketBusy",
    "BracketError",
    "InvalidEntrantCount",
    "InvalidSeeding",
    "InvalidWinner",
    "MatchAlreadyDecided",
    "MatchNotFound",
    "PlannedMatch",
    "PropagationFix",
    "RepairReport",
    "SlotConflict",
    "UnknownEntrant",
    "bracket_rounds",
    "champion",
    "generate_bracket",
    "is_bye_slot",
    "override_slot",
    "plan_bracket",
    "plan_repairs",
    "playable_matches",
    "record_winner",
    "render_bracket",
    "repair_propagation",
    "simulate_tournament",
    "target_match",
    "target_slot",
]
