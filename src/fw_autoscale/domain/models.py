"""Data models for fleet members, health-check records and primary elections."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class VirtualMachineState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    TERMINATED = "terminated"


class HealthCheckSyncState(str, Enum):
    IN_SYNC = "in-sync"
    OUT_OF_SYNC = "out-of-sync"


class HealthCheckResult(str, Enum):
    ON_TIME = "on-time"
    LATE = "late"
    TOO_LATE = "too-late"
    DROPPED = "dropped"


class PrimaryRecordVoteState(str, Enum):
    PENDING = "pending"
    DONE = "done"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class NetworkInterface:
    id: str
    index: int
    private_ip_address: str | None = None
    subnet_id: str | None = None


@dataclass(frozen=True)
class VirtualMachine:
    id: str
    scaling_group_name: str
    primary_private_ip_address: str
    primary_public_ip_address: str | None
    virtual_network_id: str
    subnet_id: str
    state: VirtualMachineState = VirtualMachineState.RUNNING
    network_interfaces: tuple[NetworkInterface, ...] = ()


@dataclass
class DeviceSyncInfo:
    """Optional details a device reports alongside its heartbeat."""

    interval: int | None = None
    sequence: int | None = None
    time: str | None = None
    sync_time: str | None = None
    sync_fail_time: str | None = None
    sync_status: bool | None = None
    is_primary: bool | None = None
    checksum: str | None = None


@dataclass
class HealthCheckRecord:
    vm_id: str
    scaling_group_name: str
    ip: str
    primary_ip: str
    heartbeat_interval: int
    heartbeat_loss_count: int
    next_heartbeat_time: int
    sync_state: HealthCheckSyncState
    sync_recovery_count: int
    seq: int
    healthy: bool
    up_to_date: bool = True
    send_time: str | None = None
    device_sync_time: str | None = None
    device_sync_fail_time: str | None = None
    device_sync_status: bool | None = None
    device_is_primary: bool | None = None
    device_checksum: str | None = None


@dataclass
class HealthCheckResultDetail:
    sequence: int
    result: HealthCheckResult
    expected_arrive_time: int
    actual_arrive_time: int
    heartbeat_interval: int
    old_heartbeat_interval: int
    delay_allowance: int
    calculated_delay: int
    actual_delay: int
    heartbeat_loss_count: int
    max_heartbeat_loss_count: int
    sync_recovery_count: int


@dataclass
class PrimaryRecord:
    id: str
    vm_id: str
    ip: str
    scaling_group_name: str
    virtual_network_id: str
    subnet_id: str
    vote_end_time: int
    vote_state: PrimaryRecordVoteState


@dataclass
class PrimaryElection:
    """Election context for one heartbeat invocation.

    Holds plain values only; it is built by the orchestrator, filled in by an
    election strategy and discarded once the orchestrator has read the outcome.
    """

    candidate: VirtualMachine
    old_primary: VirtualMachine | None = None
    old_primary_record: PrimaryRecord | None = None
    new_primary: VirtualMachine | None = None
    new_primary_record: PrimaryRecord | None = None
    candidate_health_check: HealthCheckRecord | None = None
    preferred_scaling_group: str | None = None
    election_duration: int = 0
    signature: str = ""


@dataclass
class VmTagging:
    vm_id: str
    new_vm: bool = False
    new_primary_role: bool = False
    clear: bool = False


@dataclass
class SettingItem:
    key: str
    value: str | None
    description: str = ""
    json_encoded: bool = False
    editable: bool = False
