"""Tagging and egress routing strategies applied after a primary change."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from abc import ABC, abstractmethod

from fw_autoscale.domain.models import VirtualMachine, VmTagging
from fw_autoscale.domain.settings import FleetSettings
from fw_autoscale.errors import RouteUpdateError
from fw_autoscale.platform.base import (
    PRIMARY_ROLE_VALUE,
    TAG_KEY_AUTOSCALE_ROLE,
    TAG_KEY_RESOURCE_GROUP,
    PlatformAdapter,
)

logger = logging.getLogger(__name__)

DEFAULT_EGRESS_DESTINATION = "0.0.0.0/0"


class TaggingVmStrategy(ABC):
    @abstractmethod
    async def apply(self, taggings: list[VmTagging], settings: FleetSettings) -> None: ...


class RoutingEgressTrafficStrategy(ABC):
    @abstractmethod
    async def apply(self, primary_vm: VirtualMachine | None, settings: FleetSettings) -> None: ...


class NoopTaggingVmStrategy(TaggingVmStrategy):
    async def apply(self, taggings: list[VmTagging], settings: FleetSettings) -> None:
        logger.info("NoopTaggingVmStrategy: %d tagging(s) ignored.", len(taggings))


class NoopRoutingEgressTrafficStrategy(RoutingEgressTrafficStrategy):
    async def apply(self, primary_vm: VirtualMachine | None, settings: FleetSettings) -> None:
        logger.info("NoopRoutingEgressTrafficStrategy: egress route unchanged.")


class PlatformTaggingVmStrategy(TaggingVmStrategy):
    """Keep the primary role tag on exactly the current primary.

    Tagging a new primary first strips the role tag from every vm that still
    carries it. Failures are logged and never raised.
    """

    def __init__(self, platform: PlatformAdapter) -> None:
        self.platform = platform

    async def apply(self, taggings: list[VmTagging], settings: FleetSettings) -> None:
        logger.info("calling PlatformTaggingVmStrategy.apply")
        creation = [tagging for tagging in taggings if not tagging.clear]
        deletion = [tagging for tagging in taggings if tagging.clear]
        if creation:
            await self.add(creation, settings)
        if deletion:
            await self.clear(deletion)
        logger.info("called PlatformTaggingVmStrategy.apply")

    async def add(self, taggings: list[VmTagging], settings: FleetSettings) -> None:
        try:
            if any(tagging.new_primary_role for tagging in taggings):
                vm_ids = await self.platform.list_primary_role_vm_ids()
                if vm_ids:
                    await self.platform.remove_primary_role_tag(vm_ids)
        except Exception:
            logger.exception("clearing the primary role tag from previous primaries failed.")

        prefix = settings.resource_tag_prefix

        async def tag_one(tagging: VmTagging) -> None:
            tags = {TAG_KEY_RESOURCE_GROUP: prefix}
            if tagging.new_vm:
                tags["Name"] = f"{prefix}-autoscale-instance-{tagging.vm_id}"
            if tagging.new_primary_role:
                tags[TAG_KEY_AUTOSCALE_ROLE] = PRIMARY_ROLE_VALUE
            try:
                await self.platform.tag_vm(tagging.vm_id, tags)
            except Exception:
                logger.exception("failed to add tags to vm (id: %s)", tagging.vm_id)

        await asyncio.gather(*(tag_one(tagging) for tagging in taggings))

    async def clear(self, taggings: list[VmTagging]) -> None:
        try:
            tagged = set(await self.platform.list_primary_role_vm_ids())
            vm_ids = [tagging.vm_id for tagging in taggings if tagging.vm_id in tagged]
            if vm_ids:
                await self.platform.remove_primary_role_tag(vm_ids)
        except Exception:
            logger.exception("clearing tag from Autoscale vm unsuccessfully")


class PlatformRoutingEgressTrafficStrategy(RoutingEgressTrafficStrategy):
    """Point the default route of each configured route table at the primary."""

    def __init__(
        self, platform: PlatformAdapter, destination: str = DEFAULT_EGRESS_DESTINATION
    ) -> None:
        ipaddress.IPv4Network(destination)
        self.platform = platform
        self.destination = destination

    async def apply(self, primary_vm: VirtualMachine | None, settings: FleetSettings) -> None:
        logger.info("calling PlatformRoutingEgressTrafficStrategy.apply")
        route_table_ids = settings.egress_traffic_route_tables
        if not route_table_ids:
            logger.warning(
                "Route table is required but none is provided. The process is now skipped."
            )
            return
        if primary_vm is None:
            logger.warning("No primary vm is found. The process is now skipped.")
            return

        device_index = 1 if settings.enable_second_nic else 0
        eni_id = next(
            (eni.id for eni in primary_vm.network_interfaces if eni.index == device_index),
            None,
        )
        if eni_id is None:
            raise RouteUpdateError(
                f"No network interface on device index {device_index} found on the primary "
                f"vm (id: {primary_vm.id})."
            )

        results = await asyncio.gather(
            *(
                self.platform.update_route_table_route(route_table_id, self.destination, eni_id)
                for route_table_id in route_table_ids
            ),
            return_exceptions=True,
        )
        failed: list[str] = []
        for route_table_id, outcome in zip(route_table_ids, results):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Failed to update route table %s: %s", route_table_id, outcome
                )
                failed.append(route_table_id)
        if failed:
            raise RouteUpdateError(
                f"{len(failed)} of {len(route_table_ids)} route table(s) could not be "
                f"updated: {', '.join(failed)}"
            )
        logger.info(
            "Egress traffic of %d route table(s) now goes through eni %s.",
            len(route_table_ids),
            eni_id,
        )
