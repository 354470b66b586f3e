from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from conftest import make_health_record, make_primary_record, make_vm
from fw_autoscale.aws.dynamodb import DynamoDbRecordStore, table_names
from fw_autoscale.domain.models import HealthCheckSyncState, PrimaryRecordVoteState, SettingItem
from fw_autoscale.errors import PersistenceError, RecordConflictError


def _client_error(code: str, operation: str = "PutItem") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} happened"}}, operation)


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def dynamo(client: MagicMock) -> DynamoDbRecordStore:
    return DynamoDbRecordStore(client, "fwtest")


def test_table_names() -> None:
    assert table_names("fw") == {
        "health_check": "fw-HealthCheckRecord",
        "primary": "fw-PrimaryElection",
        "settings": "fw-Settings",
    }


@pytest.mark.asyncio
async def test_get_health_check_deserializes_item(dynamo, client) -> None:
    client.get_item.return_value = {
        "Item": {
            "vmId": {"S": "i-aaa"},
            "scalingGroupName": {"S": "asg"},
            "ip": {"S": "10.0.0.1"},
            "primaryIp": {"S": ""},
            "heartbeatInterval": {"N": "30000"},
            "heartbeatLossCount": {"N": "1"},
            "nextHeartbeatTime": {"N": "1700000030000"},
            "syncState": {"S": "out-of-sync"},
            "syncRecoveryCount": {"N": "2"},
            "seq": {"N": "9"},
            "deviceIsPrimary": {"BOOL": True},
        }
    }

    record = await dynamo.get_health_check_record("i-aaa")

    assert record.seq == 9
    assert isinstance(record.seq, int)
    assert record.sync_state == HealthCheckSyncState.OUT_OF_SYNC
    assert record.healthy is False
    assert record.device_is_primary is True
    assert record.send_time is None
    kwargs = client.get_item.call_args.kwargs
    assert kwargs["TableName"] == "fwtest-HealthCheckRecord"
    assert kwargs["Key"] == {"vmId": {"S": "i-aaa"}}
    assert kwargs["ConsistentRead"] is True


@pytest.mark.asyncio
async def test_get_missing_health_check_returns_none(dynamo, client) -> None:
    client.get_item.return_value = {}

    assert await dynamo.get_health_check_record("i-aaa") is None


@pytest.mark.asyncio
async def test_update_health_check_guards_seq(dynamo, client) -> None:
    record = make_health_record(make_vm("i-aaa"), seq=3)

    await dynamo.update_health_check_record(record)

    kwargs = client.put_item.call_args.kwargs
    assert kwargs["ConditionExpression"] == "attribute_exists(vmId) AND seq <= :seq"
    assert kwargs["ExpressionAttributeValues"] == {":seq": {"N": "3"}}
    assert "sendTime" not in kwargs["Item"]
    assert kwargs["Item"]["syncState"] == {"S": "in-sync"}


@pytest.mark.asyncio
async def test_conditional_failure_maps_to_conflict(dynamo, client) -> None:
    client.put_item.side_effect = _client_error("ConditionalCheckFailedException")

    with pytest.raises(RecordConflictError):
        await dynamo.update_health_check_record(make_health_record(make_vm("i-aaa")))


@pytest.mark.asyncio
async def test_other_client_error_maps_to_persistence_error(dynamo, client) -> None:
    client.put_item.side_effect = _client_error("ProvisionedThroughputExceededException")

    with pytest.raises(PersistenceError, match="ProvisionedThroughputExceededException"):
        await dynamo.create_health_check_record(make_health_record(make_vm("i-aaa")))


@pytest.mark.asyncio
async def test_botocore_error_maps_to_persistence_error(dynamo, client) -> None:
    client.delete_item.side_effect = EndpointConnectionError(endpoint_url="https://dynamodb")

    with pytest.raises(PersistenceError):
        await dynamo.delete_health_check_record("i-aaa")


@pytest.mark.asyncio
async def test_list_health_checks_follows_pagination(dynamo, client) -> None:
    def item(vm_id: str) -> dict:
        return {
            "vmId": {"S": vm_id},
            "scalingGroupName": {"S": "asg"},
            "heartbeatInterval": {"N": "30000"},
            "heartbeatLossCount": {"N": "0"},
            "nextHeartbeatTime": {"N": "1"},
            "syncState": {"S": "in-sync"},
            "seq": {"N": "1"},
        }

    client.scan.side_effect = [
        {"Items": [item("i-ccc")], "LastEvaluatedKey": {"vmId": {"S": "i-ccc"}}},
        {"Items": [item("i-aaa")]},
    ]

    records = await dynamo.list_health_check_records()

    assert [record.vm_id for record in records] == ["i-aaa", "i-ccc"]
    second_call = client.scan.call_args_list[1].kwargs
    assert second_call["ExclusiveStartKey"] == {"vmId": {"S": "i-ccc"}}


@pytest.mark.asyncio
async def test_create_primary_without_prior(dynamo, client) -> None:
    await dynamo.create_primary_record(make_primary_record(make_vm("i-aaa")), None)

    kwargs = client.put_item.call_args.kwargs
    assert kwargs["TableName"] == "fwtest-PrimaryElection"
    assert kwargs["ConditionExpression"] == "attribute_not_exists(scalingGroupName)"


@pytest.mark.asyncio
async def test_create_primary_replacing_prior_in_same_group(dynamo, client) -> None:
    old = make_primary_record(make_vm("i-aaa"))

    await dynamo.create_primary_record(make_primary_record(make_vm("i-bbb")), old)

    kwargs = client.put_item.call_args.kwargs
    assert kwargs["ConditionExpression"] == "attribute_exists(scalingGroupName) AND id = :id"
    assert kwargs["ExpressionAttributeValues"] == {":id": {"S": old.id}}


@pytest.mark.asyncio
async def test_create_primary_replacing_prior_in_other_group(dynamo, client) -> None:
    old = make_primary_record(make_vm("i-aaa", group="group-a"))
    new = make_primary_record(make_vm("i-bbb", group="group-b"))

    await dynamo.create_primary_record(new, old)

    items = client.transact_write_items.call_args.kwargs["TransactItems"]
    assert items[0]["Delete"]["Key"] == {"scalingGroupName": {"S": "group-a"}}
    assert items[1]["Put"]["Item"]["scalingGroupName"] == {"S": "group-b"}
    client.put_item.assert_not_called()


@pytest.mark.asyncio
async def test_create_primary_transaction_cancel_is_conflict(dynamo, client) -> None:
    client.transact_write_items.side_effect = _client_error(
        "TransactionCanceledException", "TransactWriteItems"
    )
    old = make_primary_record(make_vm("i-aaa", group="group-a"))
    new = make_primary_record(make_vm("i-bbb", group="group-b"))

    with pytest.raises(RecordConflictError):
        await dynamo.create_primary_record(new, old)


@pytest.mark.asyncio
async def test_update_primary_requires_pending_unexpired(dynamo, client) -> None:
    record = make_primary_record(make_vm("i-aaa"), PrimaryRecordVoteState.DONE)

    await dynamo.update_primary_record(record, now=123)

    kwargs = client.put_item.call_args.kwargs
    assert kwargs["ConditionExpression"] == (
        "id = :id AND voteState = :pending AND voteEndTime > :now"
    )
    assert kwargs["ExpressionAttributeValues"][":now"] == {"N": "123"}
    assert kwargs["ExpressionAttributeValues"][":pending"] == {"S": "pending"}


@pytest.mark.asyncio
async def test_get_primary_picks_latest_record(dynamo, client) -> None:
    def item(vm_id: str, group: str, end: int) -> dict:
        return {
            "scalingGroupName": {"S": group},
            "id": {"S": f"{group}:{vm_id}"},
            "vmId": {"S": vm_id},
            "voteEndTime": {"N": str(end)},
            "voteState": {"S": "done"},
        }

    client.scan.return_value = {"Items": [item("i-aaa", "a", 5), item("i-bbb", "b", 9)]}

    record = await dynamo.get_primary_record()

    assert record.vm_id == "i-bbb"
    assert record.vote_state == PrimaryRecordVoteState.DONE


@pytest.mark.asyncio
async def test_get_primary_empty_table(dynamo, client) -> None:
    client.scan.return_value = {"Items": []}

    assert await dynamo.get_primary_record() is None


@pytest.mark.asyncio
async def test_settings_round_trip(dynamo, client) -> None:
    await dynamo.save_setting_item(SettingItem(key="heartbeat-interval", value="30", editable=True))
    put = client.put_item.call_args.kwargs
    assert put["TableName"] == "fwtest-Settings"
    assert put["Item"]["editable"] == {"BOOL": True}

    client.scan.return_value = {"Items": [put["Item"]]}
    settings = await dynamo.get_settings()

    assert settings["heartbeat-interval"].value == "30"
    assert settings["heartbeat-interval"].editable is True
