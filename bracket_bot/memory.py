"""Dict-backed stand-in for a DynamoDB ``Table`` resource.

Only the calls issued by :class:`bracket_bot.storage.TournamentStorage` are
supported: ``get_item``, ``put_item``, ``query``, ``update_item`` and
``delete_item`` with the small condition/update expression grammar the storage
layer emits, plus ``meta.client.transact_write_items`` for all-or-nothing
writes. Conditional failures raise the same ``ClientError`` shape as boto3.
"""

from __future__ import annotations

import copy
import re
from types import SimpleNamespace

from boto3.dynamodb.types import TypeDeserializer
from botocore.exceptions import ClientError

MAX_TRANSACTION_ITEMS = 100

_ATTRIBUTE_FN = re.compile(r"^(attribute_exists|attribute_not_exists)\((\w+)\)$")
_COMPARISON = re.compile(r"^(\w+)\s*(<>|<=|>=|=|<|>)\s*(:\w+)$")
_deserializer = TypeDeserializer()


def _conditional_failure(operation: str) -> ClientError:
    return ClientError(
        {
            "Error": {
                "Code": "ConditionalCheckFailedException",
                "Message": "The conditional request failed",
            }
        },
        operation,
    )


def _validation_error(message: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ValidationException", "Message": message}},
        "TransactWriteItems",
    )


def _strip_parens(expression: str) -> str:
    expression = expression.strip()
    while expression.startswith("(") and expression.endswith(")"):
        depth = 0
        for index, char in enumerate(expression):
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
            if depth == 0 and index < len(expression) - 1:
                return expression
        expression = expression[1:-1].strip()
    return expression


def _split_top_level(expression: str, operator: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    current = ""
    token = f" {operator} "
    index = 0
    while index < len(expression):
        char = expression[index]
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if depth == 0 and expression.startswith(token, index):
            parts.append(current)
            current = ""
            index += len(token)
            continue
        current += char
        index += 1
    parts.append(current)
    return parts


def _compare(current: object, operator: str, expected: object) -> bool:
    if operator == "=":
        return current == expected
    if operator == "<>":
        return current != expected
    if current is None:
        return False
    if operator == "<":
        return current < expected  # type: ignore[operator]
    if operator == "<=":
        return current <= expected  # type: ignore[operator]
    if operator == ">":
        return current > expected  # type: ignore[operator]
    return current >= expected  # type: ignore[operator]


def evaluate_condition(
    expression: str,
    item: dict[str, object] | None,
    values: dict[str, object] | None = None,
) -> bool:
    """Evaluate a condition expression against ``item`` (``None`` when absent)."""
    expression = _strip_parens(expression)
    values = values or {}
    current = item or {}

    or_parts = _split_top_level(expression, "OR")
    if len(or_parts) > 1:
        return any(evaluate_condition(part, item, values) for part in or_parts)
    and_parts = _split_top_level(expression, "AND")
    if len(and_parts) > 1:
        return all(evaluate_condition(part, item, values) for part in and_parts)

    match = _ATTRIBUTE_FN.match(expression)
    if match:
        present = match.group(2) in current
        return present if match.group(1) == "attribute_exists" else not present
    match = _COMPARISON.match(expression)
    if match:
        name, operator, placeholder = match.groups()
        if placeholder not in values:
            raise ValueError(f"Missing value for placeholder {placeholder}")
        return _compare(current.get(name), operator, values[placeholder])
    raise ValueError(f"Unsupported condition expression: {expression}")


def _apply_update(
    item: dict[str, object], expression: str, values: dict[str, object]
) -> None:
    expression = expression.strip()
    if not expression.upper().startswith("SET "):
        raise ValueError(f"Unsupported update expression: {expression}")
    for assignment in expression[4:].split(","):
        name, _, placeholder = (part.strip() for part in assignment.partition("="))
        if placeholder not in values:
            raise ValueError(f"Missing value for placeholder {placeholder}")
        item[name] = copy.deepcopy(values[placeholder])


def _deserialize(values: dict[str, dict] | None) -> dict[str, object]:
    return {
        name: _deserializer.deserialize(value) for name, value in (values or {}).items()
    }


class InMemoryClient:
    """The slice of the low-level DynamoDB client used for transactions."""

    def __init__(self, table: InMemoryTable) -> None:
        self._table = table

    def transact_write_items(self, *, TransactItems, **_kwargs):
        if len(TransactItems) > MAX_TRANSACTION_ITEMS:
            raise _validation_error(
                f"Member must have length less than or equal to {MAX_TRANSACTION_ITEMS}"
            )
        actions = []
        for entry in TransactItems:
            kind, params = next(iter(entry.items()))
            if kind == "Put":
                item = _deserialize(params["Item"])
                key = (item["pk"], item["sk"])
            else:
                item = None
                raw_key = _deserialize(params["Key"])
                key = (raw_key["pk"], raw_key["sk"])
            values = _deserialize(params.get("ExpressionAttributeValues"))
            actions.append((kind, key, item, params, values))

        keys = [action[1] for action in actions]
        if len(set(keys)) != len(keys):
            raise _validation_error(
                "Transaction request cannot include multiple operations on one item"
            )

        reasons = []
        for _kind, key, _item, params, values in actions:
            condition = params.get("ConditionExpression")
            if condition is None or evaluate_condition(
                condition, self._table.items.get(key), values
            ):
                reasons.append({"Code": "None"})
            else:
                reasons.append(
                    {
                        "Code": "ConditionalCheckFailed",
                        "Message": "The conditional request failed",
                    }
                )
        if any(reason["Code"] != "None" for reason in reasons):
            raise ClientError(
                {
                    "Error": {
                        "Code": "TransactionCanceledException",
                        "Message": "Transaction cancelled, please refer "
                        "cancellation reasons for specific reasons",
                    },
                    "CancellationReasons": reasons,
                },
                "TransactWriteItems",
            )

        for kind, key, item, params, values in actions:
            if kind == "Put":
                self._table.items[key] = item
            elif kind == "Update":
                existing = self._table.items.get(key)
                updated = (
                    copy.deepcopy(existing)
                    if existing is not None
                    else {"pk": key[0], "sk": key[1]}
                )
                _apply_update(updated, params["UpdateExpression"], values)
                self._table.items[key] = updated
            elif kind == "Delete":
                self._table.items.pop(key, None)
        return {}


class InMemoryTable:
    def __init__(self, name: str = "bracket-test") -> None:
        self.name = name
        self.items: dict[tuple[str, str], dict[str, object]] = {}
        self.meta = SimpleNamespace(client=InMemoryClient(self))

    def get_item(self, *, Key, **_kwargs):
        item = self.items.get((Key["pk"], Key["sk"]))
        if item is None:
            return {}
        return {"Item": copy.deepcopy(item)}

    def put_item(
        self, *, Item, ConditionExpression=None, ExpressionAttributeValues=None
    ):
        item_key = (Item["pk"], Item["sk"])
        if ConditionExpression is not None and not evaluate_condition(
            ConditionExpression, self.items.get(item_key), ExpressionAttributeValues
        ):
            raise _conditional_failure("PutItem")
        self.items[item_key] = copy.deepcopy(Item)
        return {}

    def update_item(
        self,
        *,
        Key,
        UpdateExpression,
        ExpressionAttributeValues=None,
        ConditionExpression=None,
        ReturnValues="NONE",
    ):
        item_key = (Key["pk"], Key["sk"])
        existing = self.items.get(item_key)
        values = ExpressionAttributeValues or {}
        if ConditionExpression is not None and not evaluate_condition(
            ConditionExpression, existing, values
        ):
            raise _conditional_failure("UpdateItem")
        updated = copy.deepcopy(existing) if existing is not None else dict(Key)
        _apply_update(updated, UpdateExpression, values)
        self.items[item_key] = updated
        if ReturnValues == "ALL_NEW":
            return {"Attributes": copy.deepcopy(updated)}
        return {}

    def delete_item(
        self,
        *,
        Key,
        ConditionExpression=None,
        ExpressionAttributeValues=None,
        **_kwargs,
    ):
        item_key = (Key["pk"], Key["sk"])
        if ConditionExpression is not None and not evaluate_condition(
            ConditionExpression, self.items.get(item_key), ExpressionAttributeValues
        ):
            raise _conditional_failure("DeleteItem")
        self.items.pop(item_key, None)
        return {}

    def query(self, *, KeyConditionExpression, Select="ALL_ATTRIBUTES", **_kwargs):
        pk_value = None
        sk_prefix = ""
        for condition in KeyConditionExpression._values:  # type: ignore[attr-defined]
            key, value = condition._values  # type: ignore[attr-defined]
            if key.name == "pk":
                pk_value = value
            elif key.name == "sk":
                sk_prefix = value
        matching_keys = [
            key
            for key in sorted(self.items)
            if key[0] == pk_value and key[1].startswith(sk_prefix)
        ]
        items = [copy.deepcopy(self.items[key]) for key in matching_keys]
        if Select == "COUNT":
            return {"Count": len(items)}
        return {"Items": items, "Count": len(items)}


__all__ = [
    "MAX_TRANSACTION_ITEMS",
    "InMemoryClient",
    "InMemoryTable",
    "evaluate_condition",
]
