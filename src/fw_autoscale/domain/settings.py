"""Fleet setting keys and the per-invocation settings snapshot."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fw_autoscale.domain.models import SettingItem

NO_VALUE = "n/a"


class FleetSetting(str, Enum):
    PRIMARY_ELECTION_TIMEOUT = "primary-election-timeout"
    HEARTBEAT_INTERVAL = "heartbeat-interval"
    HEARTBEAT_DELAY_ALLOWANCE = "heartbeat-delay-allowance"
    HEARTBEAT_LOSS_COUNT = "heartbeat-loss-count"
    SYNC_RECOVERY_COUNT = "sync-recovery-count"
    PRIMARY_SCALING_GROUP_NAME = "primary-scaling-group-name"
    TERMINATE_UNHEALTHY_VM = "terminate-unhealthy-vm"
    EGRESS_TRAFFIC_ROUTE_TABLE = "egress-traffic-route-table"
    ENABLE_SECOND_NIC = "enable-second-nic"
    RESOURCE_TAG_PREFIX = "resource-tag-prefix"


@dataclass(frozen=True)
class SettingItemDefinition:
    key_name: str
    description: str
    editable: bool = False
    json_encoded: bool = False
    boolean_type: bool = False


SETTING_ITEM_DICTIONARY: dict[str, SettingItemDefinition] = {
    FleetSetting.PRIMARY_ELECTION_TIMEOUT.value: SettingItemDefinition(
        FleetSetting.PRIMARY_ELECTION_TIMEOUT.value,
        "The maximum time in seconds to wait for a pending primary election to complete.",
        editable=True,
    ),
    FleetSetting.HEARTBEAT_INTERVAL.value: SettingItemDefinition(
        FleetSetting.HEARTBEAT_INTERVAL.value,
        "The length of time in seconds between two heartbeats of one fleet member.",
        editable=True,
    ),
    FleetSetting.HEARTBEAT_DELAY_ALLOWANCE.value: SettingItemDefinition(
        FleetSetting.HEARTBEAT_DELAY_ALLOWANCE.value,
        "The extra time in seconds a heartbeat may arrive after its expected time "
        "and still count as on time.",
        editable=True,
    ),
    FleetSetting.HEARTBEAT_LOSS_COUNT.value: SettingItemDefinition(
        FleetSetting.HEARTBEAT_LOSS_COUNT.value,
        "The number of consecutive late heartbeats after which a member is out-of-sync.",
        editable=True,
    ),
    FleetSetting.SYNC_RECOVERY_COUNT.value: SettingItemDefinition(
        FleetSetting.SYNC_RECOVERY_COUNT.value,
        "The number of consecutive on-time heartbeats an out-of-sync member needs "
        "to become in-sync again.",
        editable=True,
    ),
    FleetSetting.PRIMARY_SCALING_GROUP_NAME.value: SettingItemDefinition(
        FleetSetting.PRIMARY_SCALING_GROUP_NAME.value,
        "The name of the scaling group whose members may become the primary.",
    ),
    FleetSetting.TERMINATE_UNHEALTHY_VM.value: SettingItemDefinition(
        FleetSetting.TERMINATE_UNHEALTHY_VM.value,
        "Terminate members that are deemed unhealthy instead of waiting for them to recover.",
        editable=True,
        boolean_type=True,
    ),
    FleetSetting.EGRESS_TRAFFIC_ROUTE_TABLE.value: SettingItemDefinition(
        FleetSetting.EGRESS_TRAFFIC_ROUTE_TABLE.value,
        "Comma-separated route table ids whose default route is steered through the primary.",
    ),
    FleetSetting.ENABLE_SECOND_NIC.value: SettingItemDefinition(
        FleetSetting.ENABLE_SECOND_NIC.value,
        "Route egress traffic through the second network interface of the primary.",
        boolean_type=True,
    ),
    FleetSetting.RESOURCE_TAG_PREFIX.value: SettingItemDefinition(
        FleetSetting.RESOURCE_TAG_PREFIX.value,
        "The prefix used to tag and name every resource of the fleet.",
    ),
}


def setting_value(item: SettingItem | None) -> str | None:
    if item is None or item.value is None:
        return None
    value = item.value.strip()
    if value.lower() == NO_VALUE:
        return None
    return value


def truth_value(item: SettingItem | None) -> bool:
    value = setting_value(item)
    return value is not None and value.lower() == "true"


class FleetSettings(BaseModel):
    """Immutable snapshot of the fleet settings for one invocation."""

    model_config = ConfigDict(frozen=True)

    primary_election_timeout: int = Field(default=300, ge=1)
    heartbeat_interval: int = Field(default=30, ge=1)
    heartbeat_delay_allowance: float = Field(default=2, ge=0)
    heartbeat_loss_count: int = Field(default=3, ge=1)
    sync_recovery_count: int = Field(default=3, ge=0)
    primary_scaling_group_name: str | None = None
    terminate_unhealthy_vm: bool = False
    egress_traffic_route_tables: tuple[str, ...] = ()
    enable_second_nic: bool = False
    resource_tag_prefix: str = ""

    @field_validator("egress_traffic_route_tables", mode="before")
    @classmethod
    def _split_route_tables(cls, v: Any) -> Any:
        if v is None:
            return ()
        if isinstance(v, str):
            return tuple(item.strip() for item in v.split(",") if item.strip())
        return v

    @property
    def heartbeat_delay_allowance_ms(self) -> int:
        return int(self.heartbeat_delay_allowance * 1000)

    @classmethod
    def from_items(cls, items: Mapping[str, SettingItem]) -> "FleetSettings":
        data: dict[str, object] = {}
        for setting in FleetSetting:
            item = items.get(setting.value)
            definition = SETTING_ITEM_DICTIONARY.get(setting.value)
            if definition is not None and definition.boolean_type:
                if item is not None:
                    data[_field_name(setting)] = truth_value(item)
                continue
            value = setting_value(item)
            if value is not None:
                data[_field_name(setting)] = value
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Invalid fleet settings: {exc}") from exc


def _field_name(setting: FleetSetting) -> str:
    if setting is FleetSetting.EGRESS_TRAFFIC_ROUTE_TABLE:
        return "egress_traffic_route_tables"
    return setting.value.replace("-", "_")
