import pytest
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from bracket_bot.memory import InMemoryTable, evaluate_condition


def test_evaluate_condition_attribute_functions():
    item = {"pk": "A", "slot_a": "5"}
    assert evaluate_condition("attribute_exists(pk)", item)
    assert evaluate_condition("attribute_not_exists(slot_b)", item)
    assert not evaluate_condition("attribute_not_exists(pk)", None)
    assert not evaluate_condition("attribute_exists(pk)", None)


def test_evaluate_condition_nested_boolean_logic():
    item = {"pk": "A", "match_id": "m1", "slot_a": "5"}
    expression = (
        "attribute_exists(pk) AND match_id = :match_id AND "
        "(attribute_not_exists(slot_a) OR slot_a = :entrant OR "
        "(slot_a = :replaces AND attribute_not_exists(winner_id)))"
    )
    values = {":match_id": "m1", ":entrant": "9", ":replaces": "5"}
    assert evaluate_condition(expression, item, values)

    decided = dict(item, winner_id="5")
    assert not evaluate_condition(expression, decided, values)


def test_evaluate_condition_not_equal_and_unknown_syntax():
    assert evaluate_condition("slot_a <> :value", {"slot_a": "1"}, {":value": "2"})
    with pytest.raises(ValueError):
        evaluate_condition("begins_with(sk, :prefix)", {}, {":prefix": "M"})
    with pytest.raises(ValueError):
        evaluate_condition("slot_a = :missing", {"slot_a": "1"}, {})


def test_put_item_condition_failure_raises_client_error():
    table = InMemoryTable()
    table.put_item(Item={"pk": "P", "sk": "S", "value": 1})
    with pytest.raises(ClientError) as excinfo:
        table.put_item(
            Item={"pk": "P", "sk": "S", "value": 2},
            ConditionExpression="attribute_not_exists(pk)",
        )
    assert excinfo.value.response["Error"]["Code"] == "ConditionalCheckFailedException"
    assert table.get_item(Key={"pk": "P", "sk": "S"})["Item"]["value"] == 1


def test_update_item_returns_new_attributes():
    table = InMemoryTable()
    table.put_item(Item={"pk": "P", "sk": "S"})
    resp = table.update_item(
        Key={"pk": "P", "sk": "S"},
        UpdateExpression="SET a = :a, b = :b",
        ExpressionAttributeValues={":a": "1", ":b": "2"},
        ReturnValues="ALL_NEW",
    )
    assert resp["Attributes"] == {"pk": "P", "sk": "S", "a": "1", "b": "2"}


def test_query_filters_by_partition_and_prefix():
    table = InMemoryTable()
    table.put_item(Item={"pk": "T#1", "sk": "MATCH#R1#M02"})
    table.put_item(Item={"pk": "T#1", "sk": "MATCH#R1#M01"})
    table.put_item(Item={"pk": "T#1", "sk": "ENTRANT#1"})
    table.put_item(Item={"pk": "T#2", "sk": "MATCH#R1#M01"})

    resp = table.query(
        KeyConditionExpression=Key("pk").eq("T#1") & Key("sk").begins_with("MATCH#")
    )
    assert [item["sk"] for item in resp["Items"]] == ["MATCH#R1#M01", "MATCH#R1#M02"]

    count = table.query(
        KeyConditionExpression=Key("pk").eq("T#1") & Key("sk").begins_with("MATCH#"),
        Select="COUNT",
    )
    assert count == {"Count": 2}


def test_delete_item_with_condition_on_missing_item():
    table = InMemoryTable()
    with pytest.raises(ClientError):
        table.delete_item(
            Key={"pk": "P", "sk": "S"}, ConditionExpression="attribute_exists(pk)"
        )
    table.delete_item(Key={"pk": "P", "sk": "S"})


def test_evaluate_condition_numeric_comparisons():
    item = {"expires_at": 100}
    assert evaluate_condition("expires_at < :now", item, {":now": 101})
    assert not evaluate_condition("expires_at < :now", item, {":now": 100})
    assert evaluate_condition("expires_at >= :now", item, {":now": 100})
    assert not evaluate_condition("expires_at > :now", {}, {":now": 0})


def put_action(pk: str, sk: str, condition: str | None = None, **attributes):
    item = {"pk": {"S": pk}, "sk": {"S": sk}}
    item.update({name: {"S": value} for name, value in attributes.items()})
    action = {"TableName": "bracket-test", "Item": item}
    if condition:
        action["ConditionExpression"] = condition
    return {"Put": action}


def test_transaction_applies_every_action():
    table = InMemoryTable()
    table.put_item(Item={"pk": "P", "sk": "OLD"})
    table.put_item(Item={"pk": "P", "sk": "U", "total": "1"})

    table.meta.client.transact_write_items(
        TransactItems=[
            put_action("P", "NEW", "attribute_not_exists(pk)", value="x"),
            {
                "Update": {
                    "TableName": "bracket-test",
                    "Key": {"pk": {"S": "P"}, "sk": {"S": "U"}},
                    "UpdateExpression": "SET total = :total",
                    "ConditionExpression": "total = :old",
                    "ExpressionAttributeValues": {
                        ":total": {"S": "2"},
                        ":old": {"S": "1"},
                    },
                }
            },
            {
                "Delete": {
                    "TableName": "bracket-test",
                    "Key": {"pk": {"S": "P"}, "sk": {"S": "OLD"}},
                }
            },
        ]
    )

    assert table.items[("P", "NEW")] == {"pk": "P", "sk": "NEW", "value": "x"}
    assert table.items[("P", "U")]["total"] == "2"
    assert ("P", "OLD") not in table.items


def test_transaction_with_failed_condition_writes_nothing():
    table = InMemoryTable()
    table.put_item(Item={"pk": "P", "sk": "TAKEN"})

    with pytest.raises(ClientError) as excinfo:
        table.meta.client.transact_write_items(
            TransactItems=[
                put_action("P", "FREE", "attribute_not_exists(pk)"),
                put_action("P", "TAKEN", "attribute_not_exists(pk)"),
            ]
        )

    response = excinfo.value.response
    assert response["Error"]["Code"] == "TransactionCanceledException"
    assert [reason["Code"] for reason in response["CancellationReasons"]] == [
        "None",
        "ConditionalCheckFailed",
    ]
    assert ("P", "FREE") not in table.items


def test_transaction_rejects_repeated_keys_and_oversized_batches():
    table = InMemoryTable()
    with pytest.raises(ClientError, match="multiple operations"):
        table.meta.client.transact_write_items(
            TransactItems=[put_action("P", "S"), put_action("P", "S")]
        )
    with pytest.raises(ClientError) as excinfo:
        table.meta.client.transact_write_items(
            TransactItems=[put_action("P", f"S{n}") for n in range(101)]
        )
    assert excinfo.value.response["Error"]["Code"] == "ValidationException"
    assert table.items == {}
