"""Application context assembly and invocation entry points."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Mapping

from fw_autoscale.aws.client import get_client
from fw_autoscale.aws.dynamodb import DynamoDbRecordStore
from fw_autoscale.aws.platform import AwsPlatformAdapter, HeartbeatRequest
from fw_autoscale.config import Settings, load_settings
from fw_autoscale.core.autoscale import Autoscale, AutoscaleEnvironment
from fw_autoscale.core.election import (
    PreferredGroupPrimaryElection,
    PrimaryElectionStrategy,
    WeightedScorePreferredGroupPrimaryElection,
)
from fw_autoscale.core.heartbeat import ConstantIntervalHeartbeatSyncStrategy
from fw_autoscale.core.vm_strategies import (
    PlatformRoutingEgressTrafficStrategy,
    PlatformTaggingVmStrategy,
)
from fw_autoscale.domain.models import DeviceSyncInfo
from fw_autoscale.logging_utils import get_logger
from fw_autoscale.platform.base import PlatformAdapter
from fw_autoscale.store.base import RecordStore
from fw_autoscale.store.loader import seed_settings
from fw_autoscale.store.sqlite import SqliteRecordStore
from fw_autoscale.utils.wait import InvocationDeadline

logger = logging.getLogger(__name__)

TERMINATING_EVENT = "EC2 Instance-terminate Lifecycle Action"
TERMINATED_EVENT = "EC2 Instance Terminate Successful"


@dataclass
class AppContext:
    """Process-wide dependencies, created once and shared by every invocation."""

    settings: Settings
    store: RecordStore
    _seed_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    seeded: bool = False

    async def ensure_seeded(self) -> None:
        path = self.settings.storage.settings_seed_path
        if self.seeded or not path:
            return
        async with self._seed_lock:
            if self.seeded:
                return
            count = await seed_settings(self.store, path)
            logger.info("Seeded %d fleet setting(s) from %s.", count, path)
            self.seeded = True


def build_record_store(settings: Settings) -> RecordStore:
    if settings.storage.backend == "dynamodb":
        client = get_client("dynamodb", settings=settings)
        return DynamoDbRecordStore(client, settings.aws.resource_tag_prefix)
    return SqliteRecordStore(settings.storage.sqlite_path, wal=settings.storage.sqlite_wal)


@lru_cache(maxsize=1)
def get_app_context() -> AppContext:
    settings = load_settings()
    get_logger(__name__).info("Using %s record store.", settings.storage.backend)
    return AppContext(settings=settings, store=build_record_store(settings))


def build_election_strategy(
    settings: Settings, platform: PlatformAdapter
) -> PrimaryElectionStrategy:
    if settings.invocation.election_strategy == "weighted-score":
        return WeightedScorePreferredGroupPrimaryElection(platform)
    return PreferredGroupPrimaryElection(platform)


def build_autoscale(
    target_vm_id: str,
    device_sync_info: DeviceSyncInfo | None = None,
    context: AppContext | None = None,
) -> Autoscale:
    ctx = context or get_app_context()
    settings = ctx.settings
    deadline = InvocationDeadline(
        settings.invocation.timeout_seconds, settings.invocation.safety_margin_seconds
    )
    platform = AwsPlatformAdapter(
        ctx.store, target_vm_id, device_sync_info=device_sync_info, settings=settings
    )
    return Autoscale(
        platform,
        env=AutoscaleEnvironment(target_id=target_vm_id),
        heartbeat_sync_strategy=ConstantIntervalHeartbeatSyncStrategy(platform, deadline=deadline),
        primary_election_strategy=build_election_strategy(settings, platform),
        tagging_vm_strategy=PlatformTaggingVmStrategy(platform),
        routing_egress_traffic_strategy=PlatformRoutingEgressTrafficStrategy(platform),
    )


async def handle_heartbeat(body: Mapping[str, Any], context: AppContext | None = None) -> str:
    """Run one heartbeat sync for the device that posted ``body``."""
    ctx = context or get_app_context()
    await ctx.ensure_seeded()
    request = HeartbeatRequest.model_validate(body)
    autoscale = build_autoscale(request.instance, request.to_device_sync_info(), ctx)
    return await autoscale.handle_heartbeat_sync()


async def handle_scaling_event(event: Mapping[str, Any], context: AppContext | None = None) -> str:
    """Handle an Auto Scaling lifecycle event for one instance."""
    ctx = context or get_app_context()
    await ctx.ensure_seeded()
    detail_type = event.get("detail-type")
    vm_id = (event.get("detail") or {}).get("EC2InstanceId")
    if event.get("source") != "aws.autoscaling" or not vm_id:
        raise ValueError(f"Unsupported scaling event: {detail_type!r}")
    autoscale = build_autoscale(vm_id, context=ctx)
    if detail_type == TERMINATING_EVENT:
        return await autoscale.handle_terminating_vm()
    if detail_type == TERMINATED_EVENT:
        return await autoscale.handle_terminated_vm()
    logger.info("Ignoring scaling event %r for vm (id: %s).", detail_type, vm_id)
    return ""
