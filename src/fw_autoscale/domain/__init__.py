"""Domain types shared by the election, heartbeat and platform layers."""

from fw_autoscale.domain.models import (
    DeviceSyncInfo,
    HealthCheckRecord,
    HealthCheckResult,
    HealthCheckResultDetail,
    HealthCheckSyncState,
    NetworkInterface,
    PrimaryElection,
    PrimaryRecord,
    PrimaryRecordVoteState,
    SettingItem,
    VirtualMachine,
    VirtualMachineState,
    VmTagging,
)
from fw_autoscale.domain.settings import FleetSetting, FleetSettings

__all__ = [
    "DeviceSyncInfo",
    "FleetSetting",
    "FleetSettings",
    "HealthCheckRecord",
    "HealthCheckResult",
    "HealthCheckResultDetail",
    "HealthCheckSyncState",
    "NetworkInterface",
    "PrimaryElection",
    "PrimaryRecord",
    "PrimaryRecordVoteState",
    "SettingItem",
    "VirtualMachine",
    "VirtualMachineState",
    "VmTagging",
]
