from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from typing import Literal

from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from .models import (
    LOCK_TTL_SECONDS,
    Entrant,
    EntrantSeat,
    Match,
    Slot,
    TournamentLock,
    utc_now_iso,
)

log = logging.getLogger(__name__)

EntrantOrder = Literal["seed", "registration"]

# DynamoDB caps a single TransactWriteItems call at 100 actions.
MAX_TRANSACTION_ITEMS = 100

_serializer = TypeSerializer()


class StorageConflictError(RuntimeError):
    """Raised when a conditional write loses against the stored state."""


class LockHeldError(StorageConflictError):
    """Raised when the bracket generation lock is already held."""


class CapacityReachedError(StorageConflictError):
    """Raised when every entrant seat is already claimed."""


class TransactionCancelledError(StorageConflictError):
    """Raised when a transaction is rejected; nothing in it was written."""

    def __init__(self, message: str, reasons: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.reasons = list(reasons)

    def failed(self, index: int) -> bool:
        return (
            index < len(self.reasons)
            and self.reasons[index] == "ConditionalCheckFailed"
        )


def _is_conditional_failure(exc: ClientError) -> bool:
    code = exc.response.get("Error", {}).get("Code")
    return code == "ConditionalCheckFailedException"


def _serialize(values: dict[str, object]) -> dict[str, dict]:
    return {name: _serializer.serialize(value) for name, value in values.items()}


class TournamentStorage:
    def __init__(self, table, tournament_id: str = "default") -> None:
        self._table = table
        self.tournament_id = tournament_id

    def ensure_table(self) -> None:
        if self._table is None:
            raise RuntimeError("Tournament table is not configured")

    def _query_prefix(self, prefix: str) -> list[dict[str, object]]:
        self.ensure_table()
        items: list[dict[str, object]] = []
        kwargs: dict[str, object] = {
            "KeyConditionExpression": Key("pk").eq(
                Entrant.PK_TEMPLATE % self.tournament_id
            )
            & Key("sk").begins_with(prefix),
            "Select": "ALL_ATTRIBUTES",
        }
        while True:
            resp = self._table.query(**kwargs)
            items.extend(resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    # ----- Transactions -----
    def _put_action(
        self, item: dict[str, object], condition: str | None = None
    ) -> dict[str, object]:
        action: dict[str, object] = {
            "TableName": self._table.name,
            "Item": _serialize(item),
        }
        if condition is not None:
            action["ConditionExpression"] = condition
        return {"Put": action}

    def _update_action(self, request: dict[str, object]) -> dict[str, object]:
        return {
            "Update": {
                "TableName": self._table.name,
                "Key": _serialize(request["Key"]),  # type: ignore[arg-type]
                "UpdateExpression": request["UpdateExpression"],
                "ConditionExpression": request["ConditionExpression"],
                "ExpressionAttributeValues": _serialize(
                    request["ExpressionAttributeValues"]  # type: ignore[arg-type]
                ),
            }
        }

    def _delete_action(
        self, key: dict[str, str], condition: str | None = None
    ) -> dict[str, object]:
        action: dict[str, object] = {
            "TableName": self._table.name,
            "Key": _serialize(key),  # type: ignore[arg-type]
        }
        if condition is not None:
            action["ConditionExpression"] = condition
        return {"Delete": action}

    def _transact(self, actions: list[dict[str, object]], message: str) -> None:
        """Apply every action or none of them."""
        if len(actions) > MAX_TRANSACTION_ITEMS:
            raise ValueError(
                f"Transaction of {len(actions)} actions exceeds {MAX_TRANSACTION_ITEMS}"
            )
        try:
            self._table.meta.client.transact_write_items(TransactItems=actions)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code != "TransactionCanceledException":
                raise
            reasons = [
                str(reason.get("Code", "None"))
                for reason in exc.response.get("CancellationReasons", [])
            ]
            raise TransactionCancelledError(message, reasons) from exc

    # ----- Entrants -----
    def list_seats(self) -> dict[int, int]:
        """Claimed seats mapped to the entrant holding each one."""
        seats: dict[int, int] = {}
        for item in self._query_prefix(EntrantSeat.SK_PREFIX):
            seat = int(str(item["sk"]).split("#", 1)[1])
            seats[seat] = int(str(item["entrant_id"]))
        return seats

    def add_entrant(self, entrant: Entrant, *, capacity: int) -> Entrant:
        """Store a new entrant together with one of ``capacity`` free seats.

        The entrant item and its seat are written in one transaction, so the
        field can never hold more than ``capacity`` seated entrants.
        """
        self.ensure_table()
        taken = self.list_seats()
        for seat in range(1, capacity + 1):
            if seat in taken:
                continue
            entrant.seat = seat
            claim = EntrantSeat(self.tournament_id, seat, entrant.entrant_id)
            try:
                self._transact(
                    [
                        self._put_action(
                            entrant.to_item(), "attribute_not_exists(pk)"
                        ),
                        self._put_action(claim.to_item(), "attribute_not_exists(pk)"),
                    ],
                    f"Seat {seat} in {self.tournament_id} was claimed concurrently",
                )
            except TransactionCancelledError as exc:
                if exc.failed(0):
                    entrant.seat = None
                    raise StorageConflictError(
                        f"Entrant {entrant.entrant_id} is already registered"
                    ) from exc
                log.debug("Seat %s of %s taken concurrently", seat, self.tournament_id)
                continue
            return entrant
        entrant.seat = None
        raise CapacityReachedError(
            f"All {capacity} seats in {self.tournament_id} are taken"
        )

    def get_entrant(self, entrant_id: int) -> Entrant | None:
        self.ensure_table()
        resp = self._table.get_item(Key=Entrant.key(self.tournament_id, entrant_id))
        item = resp.get("Item")
        if not item:
            return None
        return Entrant.from_item(item)

    def list_entrants(self, order_by: EntrantOrder = "registration") -> list[Entrant]:
        entrants = [
            Entrant.from_item(item) for item in self._query_prefix(Entrant.SK_PREFIX)
        ]
        if order_by == "seed":
            # Unseeded entrants sort last, then by registration time.
            entrants.sort(
                key=lambda entry: (
                    entry.seed is None,
                    entry.seed or 0,
                    entry.registered_at,
                    entry.entrant_id,
                )
            )
        else:
            entrants.sort(key=lambda entry: (entry.registered_at, entry.entrant_id))
        return entrants

    def entrant_count(self) -> int:
        self.ensure_table()
        resp = self._table.query(
            KeyConditionExpression=Key("pk").eq(
                Entrant.PK_TEMPLATE % self.tournament_id
            )
            & Key("sk").begins_with(Entrant.SK_PREFIX),
            Select="COUNT",
        )
        return int(resp.get("Count", 0))

    def set_seed(self, entrant_id: int, seed: int) -> None:
        self.ensure_table()
        try:
            self._table.update_item(
                Key=Entrant.key(self.tournament_id, entrant_id),
                UpdateExpression="SET seed = :seed",
                ExpressionAttributeValues={":seed": seed},
                ConditionExpression="attribute_exists(pk)",
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise StorageConflictError(
                    f"Entrant {entrant_id} does not exist"
                ) from exc
            raise

    def delete_entrant(self, entrant_id: int) -> bool:
        """Remove an entrant and release its seat; ``False`` when absent."""
        entrant = self.get_entrant(entrant_id)
        if entrant is None:
            return False
        actions = [
            self._delete_action(
                Entrant.key(self.tournament_id, entrant_id), "attribute_exists(pk)"
            )
        ]
        if entrant.seat is not None:
            actions.append(
                self._delete_action(EntrantSeat.key(self.tournament_id, entrant.seat))
            )
        try:
            self._transact(actions, f"Entrant {entrant_id} was already removed")
        except TransactionCancelledError:
            return False
        return True

    def delete_all_entrants(self) -> int:
        entrants = self.list_entrants()
        for entrant in entrants:
            self._table.delete_item(
                Key=Entrant.key(self.tournament_id, entrant.entrant_id)
            )
        for seat in self.list_seats():
            self._table.delete_item(Key=EntrantSeat.key(self.tournament_id, seat))
        return len(entrants)

    # ----- Matches -----
    def list_matches(self) -> list[Match]:
        matches = [Match.from_item(item) for item in self._query_prefix(Match.SK_PREFIX)]
        matches.sort(key=lambda match: (match.round, match.match_number))
        return matches

    def delete_all_matches(self) -> int:
        matches = self.list_matches()
        for match in matches:
            self._table.delete_item(
                Key=Match.key(self.tournament_id, match.round, match.match_number)
            )
        return len(matches)

    def insert_match(self, match: Match) -> Match:
        self.ensure_table()
        try:
            self._table.put_item(
                Item=match.to_item(),
                ConditionExpression="attribute_not_exists(pk)",
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise StorageConflictError(
                    f"Match {match.label} already exists"
                ) from exc
            raise
        return match

    def replace_matches(self, matches: Sequence[Match]) -> int:
        """Swap the stored bracket for ``matches`` in one transaction.

        Readers see either the previous bracket or the new one. Returns the
        number of matches that were replaced.
        """
        self.ensure_table()
        existing = [
            (match.round, match.match_number) for match in self.list_matches()
        ]
        positions = {(match.round, match.match_number) for match in matches}
        stale = [position for position in existing if position not in positions]
        actions = [self._put_action(match.to_item()) for match in matches]
        actions.extend(
            self._delete_action(Match.key(self.tournament_id, *position))
            for position in stale
        )
        self._transact(
            actions, f"Bracket for {self.tournament_id} changed during generation"
        )
        return len(existing)

    def get_match(self, match_id: str) -> Match | None:
        for item in self._query_prefix(Match.SK_PREFIX):
            if str(item.get("match_id", "")) == match_id:
                return Match.from_item(item)
        return None

    def get_match_at(self, round_: int, match_number: int) -> Match | None:
        self.ensure_table()
        resp = self._table.get_item(
            Key=Match.key(self.tournament_id, round_, match_number)
        )
        item = resp.get("Item")
        if not item:
            return None
        return Match.from_item(item)

    def _winner_update(
        self, match: Match, winner_id: int, completed_at: str
    ) -> dict[str, object]:
        return {
            "Key": Match.key(self.tournament_id, match.round, match.match_number),
            "UpdateExpression": "SET winner_id = :winner, completed_at = :completed",
            "ConditionExpression": (
                "attribute_exists(pk) AND match_id = :match_id"
                " AND attribute_not_exists(winner_id)"
            ),
            "ExpressionAttributeValues": {
                ":winner": str(winner_id),
                ":completed": completed_at,
                ":match_id": match.match_id,
            },
        }

    def _slot_update(
        self,
        match: Match,
        slot: Slot,
        entrant_id: int,
        replaces: int | None,
    ) -> dict[str, object]:
        attribute = slot.attribute
        allowed = f"attribute_not_exists({attribute}) OR {attribute} = :entrant"
        values: dict[str, object] = {
            ":entrant": str(entrant_id),
            ":match_id": match.match_id,
        }
        if replaces is not None:
            allowed += (
                f" OR ({attribute} = :replaces AND attribute_not_exists(winner_id))"
            )
            values[":replaces"] = str(replaces)
        return {
            "Key": Match.key(self.tournament_id, match.round, match.match_number),
            "UpdateExpression": f"SET {attribute} = :entrant",
            "ConditionExpression": (
                f"attribute_exists(pk) AND match_id = :match_id AND ({allowed})"
            ),
            "ExpressionAttributeValues": values,
        }

    def set_match_winner(
        self, match: Match, winner_id: int, completed_at: str
    ) -> Match:
        """Record a winner once; a second write raises ``StorageConflictError``."""
        self.ensure_table()
        try:
            resp = self._table.update_item(
                **self._winner_update(match, winner_id, completed_at),
                ReturnValues="ALL_NEW",
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise StorageConflictError(
                    f"Match {match.label} was already decided or replaced"
                ) from exc
            raise
        return Match.from_item(resp["Attributes"])

    def set_match_winner_and_advance(
        self,
        match: Match,
        winner_id: int,
        completed_at: str,
        target: Match,
        slot: Slot,
        *,
        replaces: int | None = None,
    ) -> Match:
        """Record the winner and fill its downstream slot as a single write.

        Both check-and-set conditions of ``set_match_winner`` and
        ``set_match_slot`` apply; if either fails, neither item changes and
        ``TransactionCancelledError`` is raised.
        """
        self.ensure_table()
        self._transact(
            [
                self._update_action(
                    self._winner_update(match, winner_id, completed_at)
                ),
                self._update_action(
                    self._slot_update(target, slot, winner_id, replaces)
                ),
            ],
            f"Match {match.label} was decided or {target.label} slot "
            f"{slot.value} changed",
        )
        return replace(match, winner_id=winner_id, completed_at=completed_at)

    def set_match_slot(
        self,
        match: Match,
        slot: Slot,
        entrant_id: int,
        *,
        replaces: int | None = None,
    ) -> Match:
        """Fill an empty slot; refilling it with the same entrant is a no-op.

        ``replaces`` names the only other occupant the write may displace, and
        only while the match is undecided.
        """
        self.ensure_table()
        try:
            resp = self._table.update_item(
                **self._slot_update(match, slot, entrant_id, replaces),
                ReturnValues="ALL_NEW",
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise StorageConflictError(
                    f"Slot {slot.value} of match {match.label} is already taken"
                ) from exc
            raise
        return Match.from_item(resp["Attributes"])

    def override_match_slot(self, match: Match, slot: Slot, entrant_id: int) -> Match:
        """Administrative write into any slot of a match that is still undecided."""
        self.ensure_table()
        attribute = slot.attribute
        try:
            resp = self._table.update_item(
                Key=Match.key(self.tournament_id, match.round, match.match_number),
                UpdateExpression=f"SET {attribute} = :entrant",
                ConditionExpression=(
                    "attribute_exists(pk) AND match_id = :match_id"
                    " AND attribute_not_exists(winner_id)"
                ),
                ExpressionAttributeValues={
                    ":entrant": str(entrant_id),
                    ":match_id": match.match_id,
                },
                ReturnValues="ALL_NEW",
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise StorageConflictError(
                    f"Match {match.label} was decided or replaced"
                ) from exc
            raise
        return Match.from_item(resp["Attributes"])

    # ----- Generation lock -----
    @contextmanager
    def bracket_lock(
        self,
        holder: str,
        *,
        ttl: int = LOCK_TTL_SECONDS,
        now: float | None = None,
    ) -> Iterator[TournamentLock]:
        """Hold the generation lock; a lock past its ``expires_at`` is taken over."""
        self.ensure_table()
        current = int(time.time() if now is None else now)
        lock = TournamentLock(
            tournament_id=self.tournament_id,
            holder=holder,
            acquired_at=utc_now_iso(),
            expires_at=current + ttl,
        )
        try:
            self._table.put_item(
                Item=lock.to_item(),
                ConditionExpression=(
                    "attribute_not_exists(pk) OR attribute_not_exists(expires_at)"
                    " OR expires_at < :now"
                ),
                ExpressionAttributeValues={":now": current},
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise LockHeldError(
                    f"Bracket generation already in progress for {self.tournament_id}"
                ) from exc
            raise
        log.debug("Bracket lock acquired for %s by %s", self.tournament_id, holder)
        try:
            yield lock
        finally:
            self._release_lock(lock)

    def _release_lock(self, lock: TournamentLock) -> None:
        try:
            self._table.delete_item(
                Key=TournamentLock.key(self.tournament_id),
                ConditionExpression="holder = :holder AND acquired_at = :acquired",
                ExpressionAttributeValues={
                    ":holder": lock.holder,
                    ":acquired": lock.acquired_at,
                },
            )
        except ClientError as exc:
            if not _is_conditional_failure(exc):
                raise
            log.warning(
                "Bracket lock for %s was taken over before %s released it",
                self.tournament_id,
                lock.holder,
            )

    def clear_bracket_lock(self) -> bool:
        """Drop the generation lock whoever holds it; ``False`` when none was held."""
        self.ensure_table()
        try:
            self._table.delete_item(
                Key=TournamentLock.key(self.tournament_id),
                ConditionExpression="attribute_exists(pk)",
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                return False
            raise
        return True


__all__ = [
    "MAX_TRANSACTION_ITEMS",
    "CapacityReachedError",
    "EntrantOrder",
    "LockHeldError",
    "StorageConflictError",
    "TournamentStorage",
    "TransactionCancelledError",
]
