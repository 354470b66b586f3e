"""Platform contract consumed by the autoscale core."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from fw_autoscale.domain.models import (
    DeviceSyncInfo,
    HealthCheckRecord,
    HealthCheckSyncState,
    PrimaryRecord,
    PrimaryRecordVoteState,
    SettingItem,
    VirtualMachine,
    VirtualMachineState,
)
from fw_autoscale.domain.settings import FleetSettings
from fw_autoscale.store.base import RecordStore
from fw_autoscale.utils.time import now_ms

logger = logging.getLogger(__name__)

TAG_KEY_AUTOSCALE_ROLE = "AutoscaleRole"
TAG_KEY_RESOURCE_GROUP = "ResourceGroup"
PRIMARY_ROLE_VALUE = "primary"


def vm_equals(vm_a: VirtualMachine | None, vm_b: VirtualMachine | None) -> bool:
    if vm_a is None or vm_b is None:
        return False
    return vm_a.id == vm_b.id


class PlatformAdapter(ABC):
    """Everything the core needs from the hosting cloud.

    ``create_time`` is the epoch-millisecond timestamp captured when the
    invocation started; heartbeat timing is always measured against it.
    """

    create_time: int

    @abstractmethod
    async def get_target_vm(self) -> VirtualMachine | None: ...

    @abstractmethod
    async def get_primary_vm(self) -> VirtualMachine | None: ...

    @abstractmethod
    async def get_vm_by_id(
        self, vm_id: str, scaling_group_name: str | None = None
    ) -> VirtualMachine | None: ...

    def vm_equals(self, vm_a: VirtualMachine | None, vm_b: VirtualMachine | None) -> bool:
        return vm_equals(vm_a, vm_b)

    @abstractmethod
    async def get_settings(self) -> dict[str, SettingItem]: ...

    async def get_fleet_settings(self) -> FleetSettings:
        return FleetSettings.from_items(await self.get_settings())

    @abstractmethod
    async def save_setting_item(
        self,
        key: str,
        value: str,
        description: str = "",
        json_encoded: bool = False,
        editable: bool = False,
    ) -> str: ...

    @abstractmethod
    async def get_req_device_sync_info(self) -> DeviceSyncInfo: ...

    @abstractmethod
    async def get_health_check_record(self, vm_id: str) -> HealthCheckRecord | None: ...

    @abstractmethod
    async def list_health_check_records(self) -> list[HealthCheckRecord]: ...

    @abstractmethod
    async def create_health_check_record(self, record: HealthCheckRecord) -> None: ...

    @abstractmethod
    async def update_health_check_record(self, record: HealthCheckRecord) -> None: ...

    @abstractmethod
    async def delete_health_check_record(self, vm_id: str) -> None: ...

    @abstractmethod
    async def get_primary_record(self) -> PrimaryRecord | None: ...

    @abstractmethod
    async def create_primary_record(
        self, record: PrimaryRecord, old_record: PrimaryRecord | None
    ) -> None: ...

    @abstractmethod
    async def update_primary_record(self, record: PrimaryRecord) -> None: ...

    @abstractmethod
    async def delete_vm_from_scaling_group(self, vm_id: str) -> None: ...

    @abstractmethod
    async def send_notification(self, vm: VirtualMachine, message: str, subject: str) -> None: ...

    @abstractmethod
    async def list_primary_role_vm_ids(self) -> list[str]: ...

    @abstractmethod
    async def tag_vm(self, vm_id: str, tags: dict[str, str]) -> None: ...

    @abstractmethod
    async def remove_primary_role_tag(self, vm_ids: list[str]) -> None: ...

    @abstractmethod
    async def update_route_table_route(
        self, route_table_id: str, destination: str, network_interface_id: str
    ) -> None: ...


class RecordStorePlatformAdapter(PlatformAdapter):
    """Platform adapter whose records and settings live in a :class:`RecordStore`.

    Health and vote state are derived when records are read: a record whose
    next heartbeat is already overdue counts one extra loss, and a pending
    election past its end time reads as timed out.
    """

    def __init__(self, store: RecordStore, create_time: int | None = None) -> None:
        self.store = store
        self.create_time = create_time if create_time is not None else now_ms()
        self._settings: dict[str, SettingItem] | None = None

    async def get_settings(self) -> dict[str, SettingItem]:
        if self._settings is None:
            self._settings = await self.store.get_settings()
        return self._settings

    async def save_setting_item(
        self,
        key: str,
        value: str,
        description: str = "",
        json_encoded: bool = False,
        editable: bool = False,
    ) -> str:
        item = SettingItem(
            key=key,
            value=value,
            description=description,
            json_encoded=json_encoded,
            editable=editable,
        )
        await self.store.save_setting_item(item)
        self._settings = None
        return key

    async def get_primary_vm(self) -> VirtualMachine | None:
        record = await self.get_primary_record()
        if record is None:
            return None
        vm = await self.get_vm_by_id(record.vm_id, record.scaling_group_name)
        # a terminated vm can still be described for a while
        if vm is None or vm.state == VirtualMachineState.TERMINATED:
            return None
        return vm

    async def get_health_check_record(self, vm_id: str) -> HealthCheckRecord | None:
        record = await self.store.get_health_check_record(vm_id)
        if record is None:
            return None
        settings = await self.get_fleet_settings()
        return self._derive_health(record, settings)

    async def list_health_check_records(self) -> list[HealthCheckRecord]:
        settings = await self.get_fleet_settings()
        records = await self.store.list_health_check_records()
        return [self._derive_health(record, settings) for record in records]

    def _derive_health(
        self, record: HealthCheckRecord, settings: FleetSettings
    ) -> HealthCheckRecord:
        delay = (
            self.create_time
            - record.next_heartbeat_time
            - settings.heartbeat_delay_allowance_ms
        )
        next_loss_count = record.heartbeat_loss_count + (1 if delay > 0 else 0)
        record.healthy = (
            record.sync_state == HealthCheckSyncState.IN_SYNC
            and next_loss_count < settings.heartbeat_loss_count
        )
        record.up_to_date = True
        return record

    async def create_health_check_record(self, record: HealthCheckRecord) -> None:
        await self.store.create_health_check_record(record)

    async def update_health_check_record(self, record: HealthCheckRecord) -> None:
        await self.store.update_health_check_record(record)

    async def delete_health_check_record(self, vm_id: str) -> None:
        await self.store.delete_health_check_record(vm_id)

    async def get_primary_record(self) -> PrimaryRecord | None:
        record = await self.store.get_primary_record()
        if record is None:
            return None
        if (
            record.vote_state != PrimaryRecordVoteState.DONE
            and record.vote_end_time < now_ms()
        ):
            record.vote_state = PrimaryRecordVoteState.TIMEOUT
        return record

    async def create_primary_record(
        self, record: PrimaryRecord, old_record: PrimaryRecord | None
    ) -> None:
        if old_record is not None:
            logger.info("purging existing primary record (id: %s)", old_record.id)
        await self.store.create_primary_record(record, old_record)

    async def update_primary_record(self, record: PrimaryRecord) -> None:
        await self.store.update_primary_record(record, now_ms())
