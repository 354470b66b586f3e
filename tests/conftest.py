from __future__ import annotations

import asyncio
import contextlib

import pytest
import pytest_asyncio

from fw_autoscale.domain.models import (
    DeviceSyncInfo,
    HealthCheckRecord,
    HealthCheckSyncState,
    NetworkInterface,
    PrimaryRecord,
    PrimaryRecordVoteState,
    SettingItem,
    VirtualMachine,
)
from fw_autoscale.platform.base import (
    PRIMARY_ROLE_VALUE,
    TAG_KEY_AUTOSCALE_ROLE,
    RecordStorePlatformAdapter,
)
from fw_autoscale.store.sqlite import SqliteRecordStore

PRIMARY_GROUP = "fw-primary-asg"
SECONDARY_GROUP = "fw-secondary-asg"
ARRIVE_TIME = 1_700_000_000_000
INTERVAL_MS = 30_000

DEFAULT_FLEET_SETTINGS = {
    "primary-scaling-group-name": PRIMARY_GROUP,
    "primary-election-timeout": "300",
    "heartbeat-interval": "30",
    "heartbeat-delay-allowance": "2",
    "heartbeat-loss-count": "3",
    "sync-recovery-count": "3",
    "terminate-unhealthy-vm": "false",
    "resource-tag-prefix": "fwtest",
}


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> None:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)


def make_vm(
    vm_id: str,
    group: str = PRIMARY_GROUP,
    ip: str | None = None,
    eni_count: int = 2,
) -> VirtualMachine:
    return VirtualMachine(
        id=vm_id,
        scaling_group_name=group,
        primary_private_ip_address=ip or "10.0.0.1",
        primary_public_ip_address=None,
        virtual_network_id="vpc-1",
        subnet_id="subnet-1",
        network_interfaces=tuple(
            NetworkInterface(id=f"eni-{vm_id}-{index}", index=index) for index in range(eni_count)
        ),
    )


def make_health_record(
    vm: VirtualMachine,
    seq: int = 1,
    next_heartbeat_time: int = ARRIVE_TIME + INTERVAL_MS,
    loss_count: int = 0,
    sync_state: HealthCheckSyncState = HealthCheckSyncState.IN_SYNC,
    recovery_count: int = 0,
    primary_ip: str = "",
    **device: object,
) -> HealthCheckRecord:
    return HealthCheckRecord(
        vm_id=vm.id,
        scaling_group_name=vm.scaling_group_name,
        ip=vm.primary_private_ip_address,
        primary_ip=primary_ip,
        heartbeat_interval=INTERVAL_MS,
        heartbeat_loss_count=loss_count,
        next_heartbeat_time=next_heartbeat_time,
        sync_state=sync_state,
        sync_recovery_count=recovery_count,
        seq=seq,
        healthy=sync_state == HealthCheckSyncState.IN_SYNC,
        **device,
    )


def make_primary_record(
    vm: VirtualMachine,
    vote_state: PrimaryRecordVoteState = PrimaryRecordVoteState.DONE,
    vote_end_time: int = ARRIVE_TIME,
) -> PrimaryRecord:
    return PrimaryRecord(
        id=f"{vm.scaling_group_name}:{vm.id}",
        vm_id=vm.id,
        ip=vm.primary_private_ip_address,
        scaling_group_name=vm.scaling_group_name,
        virtual_network_id=vm.virtual_network_id,
        subnet_id=vm.subnet_id,
        vote_end_time=vote_end_time,
        vote_state=vote_state,
    )


class FakePlatform(RecordStorePlatformAdapter):
    """Platform over a real record store with in-memory vms, tags and routes."""

    def __init__(
        self,
        store: SqliteRecordStore,
        vms: dict[str, VirtualMachine],
        target_id: str,
        create_time: int = ARRIVE_TIME,
        device: DeviceSyncInfo | None = None,
    ) -> None:
        super().__init__(store, create_time=create_time)
        self.vms = vms
        self.target_id = target_id
        self.device = device or DeviceSyncInfo()
        self.deleted: list[str] = []
        self.fail_delete: set[str] = set()
        self.notifications: list[tuple[str, str, str]] = []
        self.tags: dict[str, dict[str, str]] = {}
        self.routes: dict[tuple[str, str], str] = {}
        self.fail_routes: set[str] = set()

    async def get_target_vm(self) -> VirtualMachine | None:
        return self.vms.get(self.target_id)

    async def get_vm_by_id(
        self, vm_id: str, scaling_group_name: str | None = None
    ) -> VirtualMachine | None:
        vm = self.vms.get(vm_id)
        if vm is None or (scaling_group_name and vm.scaling_group_name != scaling_group_name):
            return None
        return vm

    async def get_req_device_sync_info(self) -> DeviceSyncInfo:
        return self.device

    async def delete_vm_from_scaling_group(self, vm_id: str) -> None:
        if vm_id in self.fail_delete:
            raise RuntimeError(f"cannot delete {vm_id}")
        self.deleted.append(vm_id)

    async def send_notification(self, vm: VirtualMachine, message: str, subject: str) -> None:
        self.notifications.append((vm.id, subject, message))

    async def list_primary_role_vm_ids(self) -> list[str]:
        return sorted(
            vm_id
            for vm_id, tags in self.tags.items()
            if tags.get(TAG_KEY_AUTOSCALE_ROLE) == PRIMARY_ROLE_VALUE
        )

    async def tag_vm(self, vm_id: str, tags: dict[str, str]) -> None:
        self.tags.setdefault(vm_id, {}).update(tags)

    async def remove_primary_role_tag(self, vm_ids: list[str]) -> None:
        for vm_id in vm_ids:
            self.tags.get(vm_id, {}).pop(TAG_KEY_AUTOSCALE_ROLE, None)

    async def update_route_table_route(
        self, route_table_id: str, destination: str, network_interface_id: str
    ) -> None:
        if route_table_id in self.fail_routes:
            raise RuntimeError(f"route table {route_table_id} is busy")
        self.routes[(route_table_id, destination)] = network_interface_id


async def seed_fleet_settings(store: SqliteRecordStore, **overrides: str) -> None:
    values = dict(DEFAULT_FLEET_SETTINGS)
    values.update({key.replace("_", "-"): value for key, value in overrides.items()})
    for key, value in values.items():
        await store.save_setting_item(SettingItem(key=key, value=value))


@pytest.fixture
def sqlite_store(tmp_path) -> SqliteRecordStore:
    store = SqliteRecordStore(str(tmp_path / "records.sqlite"))
    yield store
    store.close()


@pytest_asyncio.fixture
async def store(sqlite_store: SqliteRecordStore) -> SqliteRecordStore:
    await seed_fleet_settings(sqlite_store)
    return sqlite_store


@pytest.fixture
def vms() -> dict[str, VirtualMachine]:
    fleet = [
        make_vm("i-aaa", ip="10.0.1.10"),
        make_vm("i-bbb", ip="10.0.1.11"),
        make_vm("i-ccc", ip="10.0.1.12"),
        make_vm("i-ddd", group=SECONDARY_GROUP, ip="10.0.2.10"),
    ]
    return {vm.id: vm for vm in fleet}
