"""AWS platform adapter: EC2, Auto Scaling and SNS around a record store."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from botocore.exceptions import ClientError
from pydantic import BaseModel, ConfigDict, Field, field_validator

from fw_autoscale.aws.client import call_aws_api_async, get_client
from fw_autoscale.config import Settings, load_settings
from fw_autoscale.domain.models import (
    DeviceSyncInfo,
    NetworkInterface,
    VirtualMachine,
    VirtualMachineState,
)
from fw_autoscale.platform.base import (
    PRIMARY_ROLE_VALUE,
    TAG_KEY_AUTOSCALE_ROLE,
    TAG_KEY_RESOURCE_GROUP,
    RecordStorePlatformAdapter,
)
from fw_autoscale.store.base import RecordStore

logger = logging.getLogger(__name__)

SCALING_GROUP_TAG = "aws:autoscaling:groupName"
# SNS rejects longer subjects
_MAX_SUBJECT_LENGTH = 100

_NOT_FOUND_CODES = frozenset({"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"})

_EC2_STATES = {
    "pending": VirtualMachineState.PENDING,
    "running": VirtualMachineState.RUNNING,
    "shutting-down": VirtualMachineState.STOPPING,
    "stopping": VirtualMachineState.STOPPING,
    "stopped": VirtualMachineState.STOPPED,
    "terminated": VirtualMachineState.TERMINATED,
}


class HeartbeatRequest(BaseModel):
    """Body of a heartbeat request posted by a device.

    Only ``instance`` and ``interval`` are sent by every device version; the
    remaining fields are optional sync details.
    """

    model_config = ConfigDict(extra="ignore")

    instance: str = Field(min_length=1)
    interval: int | None = Field(default=None, gt=0)
    sequence: int | None = Field(default=None, ge=0)
    time: str | None = None
    sync_time: str | None = None
    sync_fail_time: str | None = None
    sync_status: bool | None = None
    is_primary: bool | None = None
    checksum: str | None = None

    @field_validator("time", "sync_time", "sync_fail_time", "checksum", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    def to_device_sync_info(self) -> DeviceSyncInfo:
        return DeviceSyncInfo(
            interval=self.interval,
            sequence=self.sequence,
            time=self.time,
            sync_time=self.sync_time,
            sync_fail_time=self.sync_fail_time,
            sync_status=self.sync_status,
            is_primary=self.is_primary,
            checksum=self.checksum,
        )


def _tags_to_dict(tags: list[Mapping[str, str]] | None) -> dict[str, str]:
    return {tag["Key"]: tag.get("Value", "") for tag in tags or [] if "Key" in tag}


class AwsPlatformAdapter(RecordStorePlatformAdapter):
    def __init__(
        self,
        store: RecordStore,
        target_vm_id: str,
        device_sync_info: DeviceSyncInfo | None = None,
        settings: Settings | None = None,
        ec2=None,
        autoscaling=None,
        sns=None,
        create_time: int | None = None,
    ) -> None:
        super().__init__(store, create_time=create_time)
        self.settings = settings or load_settings()
        self.target_vm_id = target_vm_id
        self._device_sync_info = device_sync_info
        self._ec2 = ec2 or get_client("ec2", settings=self.settings)
        self._autoscaling = autoscaling or get_client("autoscaling", settings=self.settings)
        self._sns = sns
        self._target_vm: VirtualMachine | None = None

    @property
    def sns(self):
        if self._sns is None:
            self._sns = get_client("sns", settings=self.settings)
        return self._sns

    async def resource_tag_prefix(self) -> str:
        fleet = await self.get_fleet_settings()
        return fleet.resource_tag_prefix or self.settings.aws.resource_tag_prefix

    async def get_req_device_sync_info(self) -> DeviceSyncInfo:
        if self._device_sync_info is None:
            return DeviceSyncInfo()
        return self._device_sync_info

    async def get_target_vm(self) -> VirtualMachine | None:
        if self._target_vm is None:
            self._target_vm = await self.get_vm_by_id(self.target_vm_id)
        return self._target_vm

    async def get_vm_by_id(
        self, vm_id: str, scaling_group_name: str | None = None
    ) -> VirtualMachine | None:
        try:
            resp = await call_aws_api_async(
                self._ec2, "describe_instances", InstanceIds=[vm_id]
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "Unknown")
            if code in _NOT_FOUND_CODES:
                logger.warning("vm (id: %s) not found: %s", vm_id, code)
                return None
            raise
        instances = [
            instance
            for reservation in resp.get("Reservations", []) or []
            for instance in reservation.get("Instances", []) or []
        ]
        if not instances:
            return None
        vm = await self._instance_to_vm(instances[0])
        if scaling_group_name and vm.scaling_group_name != scaling_group_name:
            logger.warning(
                "vm (id: %s) is in scaling group %s, not %s.",
                vm_id,
                vm.scaling_group_name,
                scaling_group_name,
            )
            return None
        return vm

    async def _instance_to_vm(self, instance: Mapping[str, Any]) -> VirtualMachine:
        tags = _tags_to_dict(instance.get("Tags"))
        scaling_group_name = tags.get(SCALING_GROUP_TAG)
        if not scaling_group_name:
            scaling_group_name = await self._lookup_scaling_group(instance["InstanceId"])
        interfaces = tuple(
            sorted(
                (
                    NetworkInterface(
                        id=eni["NetworkInterfaceId"],
                        index=int(eni.get("Attachment", {}).get("DeviceIndex", 0)),
                        private_ip_address=eni.get("PrivateIpAddress"),
                        subnet_id=eni.get("SubnetId"),
                    )
                    for eni in instance.get("NetworkInterfaces", []) or []
                ),
                key=lambda eni: eni.index,
            )
        )
        state_name = instance.get("State", {}).get("Name", "pending")
        return VirtualMachine(
            id=instance["InstanceId"],
            scaling_group_name=scaling_group_name or "",
            primary_private_ip_address=instance.get("PrivateIpAddress", ""),
            primary_public_ip_address=instance.get("PublicIpAddress"),
            virtual_network_id=instance.get("VpcId", ""),
            subnet_id=instance.get("SubnetId", ""),
            state=_EC2_STATES.get(state_name, VirtualMachineState.PENDING),
            network_interfaces=interfaces,
        )

    async def _lookup_scaling_group(self, vm_id: str) -> str | None:
        resp = await call_aws_api_async(
            self._autoscaling, "describe_auto_scaling_instances", InstanceIds=[vm_id]
        )
        for entry in resp.get("AutoScalingInstances", []) or []:
            if entry.get("InstanceId") == vm_id:
                return entry.get("AutoScalingGroupName")
        return None

    async def delete_vm_from_scaling_group(self, vm_id: str) -> None:
        logger.info("terminating vm (id: %s) in its scaling group.", vm_id)
        await call_aws_api_async(
            self._autoscaling,
            "terminate_instance_in_auto_scaling_group",
            InstanceId=vm_id,
            ShouldDecrementDesiredCapacity=False,
        )

    async def send_notification(self, vm: VirtualMachine, message: str, subject: str) -> None:
        topic_arn = self.settings.aws.notification_topic_arn
        if not topic_arn:
            logger.warning(
                "No notification topic configured, notification for vm (id: %s) skipped: %s",
                vm.id,
                subject,
            )
            return
        await call_aws_api_async(
            self.sns,
            "publish",
            TopicArn=topic_arn,
            Subject=subject[:_MAX_SUBJECT_LENGTH],
            Message=message,
            MessageAttributes={"vmId": {"DataType": "String", "StringValue": vm.id}},
        )

    async def list_primary_role_vm_ids(self) -> list[str]:
        prefix = await self.resource_tag_prefix()
        params: dict[str, Any] = {
            "Filters": [
                {"Name": f"tag:{TAG_KEY_AUTOSCALE_ROLE}", "Values": [PRIMARY_ROLE_VALUE]},
                {"Name": f"tag:{TAG_KEY_RESOURCE_GROUP}", "Values": [prefix]},
            ]
        }
        vm_ids: list[str] = []
        while True:
            resp = await call_aws_api_async(self._ec2, "describe_instances", **params)
            for reservation in resp.get("Reservations", []) or []:
                for instance in reservation.get("Instances", []) or []:
                    vm_ids.append(instance["InstanceId"])
            token = resp.get("NextToken")
            if not token:
                break
            params["NextToken"] = token
        return vm_ids

    async def tag_vm(self, vm_id: str, tags: dict[str, str]) -> None:
        await call_aws_api_async(
            self._ec2,
            "create_tags",
            Resources=[vm_id],
            Tags=[{"Key": key, "Value": value} for key, value in tags.items()],
        )

    async def remove_primary_role_tag(self, vm_ids: list[str]) -> None:
        if not vm_ids:
            return
        await call_aws_api_async(
            self._ec2,
            "delete_tags",
            Resources=list(vm_ids),
            Tags=[{"Key": TAG_KEY_AUTOSCALE_ROLE, "Value": PRIMARY_ROLE_VALUE}],
        )

    async def update_route_table_route(
        self, route_table_id: str, destination: str, network_interface_id: str
    ) -> None:
        params = {
            "RouteTableId": route_table_id,
            "DestinationCidrBlock": destination,
            "NetworkInterfaceId": network_interface_id,
        }
        try:
            await call_aws_api_async(self._ec2, "replace_route", **params)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") != "InvalidRoute.NotFound":
                raise
            logger.info(
                "route %s not found in route table %s, creating it.", destination, route_table_id
            )
            await call_aws_api_async(self._ec2, "create_route", **params)
