"""DynamoDB record store."""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from fw_autoscale.domain.models import (
    HealthCheckRecord,
    HealthCheckSyncState,
    PrimaryRecord,
    PrimaryRecordVoteState,
    SettingItem,
)
from fw_autoscale.errors import PersistenceError, RecordConflictError
from fw_autoscale.store.base import RecordStore

logger = logging.getLogger(__name__)

_CONFLICT_CODES = frozenset({"ConditionalCheckFailedException", "TransactionCanceledException"})

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def _to_item(data: dict[str, Any]) -> dict[str, Any]:
    return {key: _serializer.serialize(value) for key, value in data.items() if value is not None}


def _from_item(item: dict[str, Any]) -> dict[str, Any]:
    data = {key: _deserializer.deserialize(value) for key, value in item.items()}
    return {
        key: int(value) if isinstance(value, Decimal) else value for key, value in data.items()
    }


def table_names(prefix: str) -> dict[str, str]:
    return {
        "health_check": f"{prefix}-HealthCheckRecord",
        "primary": f"{prefix}-PrimaryElection",
        "settings": f"{prefix}-Settings",
    }


class DynamoDbRecordStore(RecordStore):
    """Record store on three DynamoDB tables.

    The health-check table is keyed by ``vmId``, the primary election table by
    ``scalingGroupName`` and the settings table by ``settingKey``. Conditional
    writes use ``ConditionExpression``; a failed condition surfaces as
    RecordConflictError and any other SDK error as PersistenceError.
    """

    def __init__(self, client, table_prefix: str) -> None:
        self._client = client
        self._tables = table_names(table_prefix)

    def _map_client_error(self, exc: ClientError | BotoCoreError) -> Exception:
        if isinstance(exc, ClientError):
            error = exc.response.get("Error", {})
            code = error.get("Code", "Unknown")
            message = error.get("Message", str(exc))
            if code in _CONFLICT_CODES:
                return RecordConflictError(message)
            logger.warning("DynamoDB error: %s: %s", code, message)
            return PersistenceError(f"{code}: {message}")
        return PersistenceError(str(exc))

    def _call(self, method_name: str, **kwargs: Any) -> dict[str, Any]:
        method = getattr(self._client, method_name)
        try:
            return method(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise self._map_client_error(exc) from exc

    def _scan_all(self, table: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        params: dict[str, Any] = {"TableName": table, "ConsistentRead": True}
        while True:
            resp = self._call("scan", **params)
            items.extend(_from_item(item) for item in resp.get("Items", []) or [])
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                break
            params["ExclusiveStartKey"] = last_key
        return items

    # health-check records

    @staticmethod
    def _health_check_to_data(record: HealthCheckRecord) -> dict[str, Any]:
        return {
            "vmId": record.vm_id,
            "scalingGroupName": record.scaling_group_name,
            "ip": record.ip,
            "primaryIp": record.primary_ip,
            "heartbeatInterval": record.heartbeat_interval,
            "heartbeatLossCount": record.heartbeat_loss_count,
            "nextHeartbeatTime": record.next_heartbeat_time,
            "syncState": record.sync_state.value,
            "syncRecoveryCount": record.sync_recovery_count,
            "seq": record.seq,
            "sendTime": record.send_time,
            "deviceSyncTime": record.device_sync_time,
            "deviceSyncFailTime": record.device_sync_fail_time,
            "deviceSyncStatus": record.device_sync_status,
            "deviceIsPrimary": record.device_is_primary,
            "deviceChecksum": record.device_checksum,
        }

    @staticmethod
    def _data_to_health_check(data: dict[str, Any]) -> HealthCheckRecord:
        sync_state = HealthCheckSyncState(data["syncState"])
        return HealthCheckRecord(
            vm_id=data["vmId"],
            scaling_group_name=data["scalingGroupName"],
            ip=data.get("ip", ""),
            primary_ip=data.get("primaryIp", ""),
            heartbeat_interval=data["heartbeatInterval"],
            heartbeat_loss_count=data["heartbeatLossCount"],
            next_heartbeat_time=data["nextHeartbeatTime"],
            sync_state=sync_state,
            sync_recovery_count=data.get("syncRecoveryCount", 0),
            seq=data["seq"],
            healthy=sync_state == HealthCheckSyncState.IN_SYNC,
            send_time=data.get("sendTime"),
            device_sync_time=data.get("deviceSyncTime"),
            device_sync_fail_time=data.get("deviceSyncFailTime"),
            device_sync_status=data.get("deviceSyncStatus"),
            device_is_primary=data.get("deviceIsPrimary"),
            device_checksum=data.get("deviceChecksum"),
        )

    def _get_health_check_sync(self, vm_id: str) -> HealthCheckRecord | None:
        resp = self._call(
            "get_item",
            TableName=self._tables["health_check"],
            Key=_to_item({"vmId": vm_id}),
            ConsistentRead=True,
        )
        item = resp.get("Item")
        if not item:
            return None
        return self._data_to_health_check(_from_item(item))

    async def get_health_check_record(self, vm_id: str) -> HealthCheckRecord | None:
        return await asyncio.to_thread(self._get_health_check_sync, vm_id)

    def _list_health_check_sync(self) -> list[HealthCheckRecord]:
        records = [
            self._data_to_health_check(data)
            for data in self._scan_all(self._tables["health_check"])
        ]
        return sorted(records, key=lambda record: record.vm_id)

    async def list_health_check_records(self) -> list[HealthCheckRecord]:
        return await asyncio.to_thread(self._list_health_check_sync)

    async def create_health_check_record(self, record: HealthCheckRecord) -> None:
        await asyncio.to_thread(
            self._call,
            "put_item",
            TableName=self._tables["health_check"],
            Item=_to_item(self._health_check_to_data(record)),
        )

    async def update_health_check_record(self, record: HealthCheckRecord) -> None:
        await asyncio.to_thread(
            self._call,
            "put_item",
            TableName=self._tables["health_check"],
            Item=_to_item(self._health_check_to_data(record)),
            ConditionExpression="attribute_exists(vmId) AND seq <= :seq",
            ExpressionAttributeValues=_to_item({":seq": record.seq}),
        )

    async def delete_health_check_record(self, vm_id: str) -> None:
        await asyncio.to_thread(
            self._call,
            "delete_item",
            TableName=self._tables["health_check"],
            Key=_to_item({"vmId": vm_id}),
        )

    # primary records

    @staticmethod
    def _primary_to_data(record: PrimaryRecord) -> dict[str, Any]:
        return {
            "scalingGroupName": record.scaling_group_name,
            "id": record.id,
            "vmId": record.vm_id,
            "ip": record.ip,
            "virtualNetworkId": record.virtual_network_id,
            "subnetId": record.subnet_id,
            "voteEndTime": record.vote_end_time,
            "voteState": record.vote_state.value,
        }

    @staticmethod
    def _data_to_primary(data: dict[str, Any]) -> PrimaryRecord:
        return PrimaryRecord(
            id=data["id"],
            vm_id=data["vmId"],
            ip=data.get("ip", ""),
            scaling_group_name=data["scalingGroupName"],
            virtual_network_id=data.get("virtualNetworkId", ""),
            subnet_id=data.get("subnetId", ""),
            vote_end_time=data["voteEndTime"],
            vote_state=PrimaryRecordVoteState(data["voteState"]),
        )

    def _get_primary_sync(self) -> PrimaryRecord | None:
        records = [self._data_to_primary(data) for data in self._scan_all(self._tables["primary"])]
        if not records:
            return None
        if len(records) > 1:
            logger.warning("Found %d primary records, using the latest one.", len(records))
        return max(records, key=lambda record: record.vote_end_time)

    async def get_primary_record(self) -> PrimaryRecord | None:
        return await asyncio.to_thread(self._get_primary_sync)

    def _create_primary_sync(self, record: PrimaryRecord, old_record: PrimaryRecord | None) -> None:
        table = self._tables["primary"]
        item = _to_item(self._primary_to_data(record))
        if old_record is None:
            self._call(
                "put_item",
                TableName=table,
                Item=item,
                ConditionExpression="attribute_not_exists(scalingGroupName)",
            )
            return
        if old_record.scaling_group_name == record.scaling_group_name:
            self._call(
                "put_item",
                TableName=table,
                Item=item,
                ConditionExpression="attribute_exists(scalingGroupName) AND id = :id",
                ExpressionAttributeValues=_to_item({":id": old_record.id}),
            )
            return
        # the old record lives under another key: replace it in one transaction
        self._call(
            "transact_write_items",
            TransactItems=[
                {
                    "Delete": {
                        "TableName": table,
                        "Key": _to_item({"scalingGroupName": old_record.scaling_group_name}),
                        "ConditionExpression": "id = :id",
                        "ExpressionAttributeValues": _to_item({":id": old_record.id}),
                    }
                },
                {
                    "Put": {
                        "TableName": table,
                        "Item": item,
                        "ConditionExpression": "attribute_not_exists(scalingGroupName)",
                    }
                },
            ],
        )

    async def create_primary_record(
        self, record: PrimaryRecord, old_record: PrimaryRecord | None
    ) -> None:
        await asyncio.to_thread(self._create_primary_sync, record, old_record)

    async def update_primary_record(self, record: PrimaryRecord, now: int) -> None:
        await asyncio.to_thread(
            self._call,
            "put_item",
            TableName=self._tables["primary"],
            Item=_to_item(self._primary_to_data(record)),
            ConditionExpression="id = :id AND voteState = :pending AND voteEndTime > :now",
            ExpressionAttributeValues=_to_item(
                {
                    ":id": record.id,
                    ":pending": PrimaryRecordVoteState.PENDING.value,
                    ":now": now,
                }
            ),
        )

    # settings

    def _get_settings_sync(self) -> dict[str, SettingItem]:
        settings: dict[str, SettingItem] = {}
        for data in self._scan_all(self._tables["settings"]):
            key = data["settingKey"]
            settings[key] = SettingItem(
                key=key,
                value=data.get("settingValue"),
                description=data.get("description", ""),
                json_encoded=bool(data.get("jsonEncoded", False)),
                editable=bool(data.get("editable", False)),
            )
        return settings

    async def get_settings(self) -> dict[str, SettingItem]:
        return await asyncio.to_thread(self._get_settings_sync)

    async def save_setting_item(self, item: SettingItem) -> None:
        await asyncio.to_thread(
            self._call,
            "put_item",
            TableName=self._tables["settings"],
            Item=_to_item(
                {
                    "settingKey": item.key,
                    "settingValue": item.value,
                    "description": item.description,
                    "jsonEncoded": item.json_encoded,
                    "editable": item.editable,
                }
            ),
        )
