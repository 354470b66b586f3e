"""Autoscale orchestrator: one heartbeat or lifecycle event per invocation."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from typing import Mapping

from fw_autoscale.core.election import (
    PreferredGroupPrimaryElection,
    PrimaryElectionStrategy,
    PrimaryElectionStrategyResult,
)
from fw_autoscale.core.heartbeat import (
    ConstantIntervalHeartbeatSyncStrategy,
    HeartbeatSyncStrategy,
)
from fw_autoscale.core.vm_strategies import (
    NoopRoutingEgressTrafficStrategy,
    NoopTaggingVmStrategy,
    RoutingEgressTrafficStrategy,
    TaggingVmStrategy,
)
from fw_autoscale.domain.models import (
    HealthCheckRecord,
    HealthCheckResult,
    HealthCheckResultDetail,
    HealthCheckSyncState,
    PrimaryElection,
    PrimaryRecord,
    PrimaryRecordVoteState,
    VirtualMachine,
    VmTagging,
)
from fw_autoscale.domain.settings import (
    SETTING_ITEM_DICTIONARY,
    FleetSettings,
    SettingItemDefinition,
)
from fw_autoscale.errors import (
    ElectionError,
    PersistenceError,
    RecordConflictError,
    UnknownVmError,
)
from fw_autoscale.platform.base import PlatformAdapter

logger = logging.getLogger(__name__)

UNHEALTHY_VM_SUBJECT = "Autoscale unhealthy vm is detected"
LATE_HEARTBEAT_SUBJECT = "Autoscale late heartbeat occurred"


@dataclass
class AutoscaleEnvironment:
    """What one invocation has learned so far about the target and the primary."""

    target_id: str | None = None
    target_vm: VirtualMachine | None = None
    target_health_check_record: HealthCheckRecord | None = None
    primary_vm: VirtualMachine | None = None
    primary_record: PrimaryRecord | None = None
    primary_health_check_record: HealthCheckRecord | None = None


def late_heartbeat_message(vm: VirtualMachine, detail: HealthCheckResultDetail) -> str:
    return (
        f"One late heartbeat occurred on device (id: {vm.id}, "
        f"ip: {vm.primary_private_ip_address}).\n\nDetails:\n"
        f" heartbeat sequence: {detail.sequence},\n"
        f" expected arrive time: {detail.expected_arrive_time} ms,\n"
        f" actual arrive time: {detail.actual_arrive_time} ms,\n"
        f" actual delay: {detail.actual_delay} ms,\n"
        f" delay allowance: {detail.delay_allowance} ms,\n"
        f" adjusted delay: {detail.calculated_delay} ms,\n"
        f" heartbeat interval: {detail.old_heartbeat_interval}->"
        f"{detail.heartbeat_interval} ms,\n"
        f" heartbeat loss count: {detail.heartbeat_loss_count}/"
        f"{detail.max_heartbeat_loss_count}."
    )


class Autoscale:
    """Per-invocation control loop.

    Strategies are chosen at construction time; all of them share the fleet
    settings snapshot taken on first use, so one invocation never sees two
    different settings.
    """

    def __init__(
        self,
        platform: PlatformAdapter,
        env: AutoscaleEnvironment | None = None,
        heartbeat_sync_strategy: HeartbeatSyncStrategy | None = None,
        primary_election_strategy: PrimaryElectionStrategy | None = None,
        tagging_vm_strategy: TaggingVmStrategy | None = None,
        routing_egress_traffic_strategy: RoutingEgressTrafficStrategy | None = None,
    ) -> None:
        self.platform = platform
        self.env = env or AutoscaleEnvironment()
        self.heartbeat_sync_strategy = (
            heartbeat_sync_strategy or ConstantIntervalHeartbeatSyncStrategy(platform)
        )
        self.primary_election_strategy = (
            primary_election_strategy or PreferredGroupPrimaryElection(platform)
        )
        self.tagging_vm_strategy = tagging_vm_strategy or NoopTaggingVmStrategy()
        self.routing_egress_traffic_strategy = (
            routing_egress_traffic_strategy or NoopRoutingEgressTrafficStrategy()
        )
        self._settings: FleetSettings | None = None

    async def fleet_settings(self) -> FleetSettings:
        if self._settings is None:
            self._settings = await self.platform.get_fleet_settings()
        return self._settings

    async def _load_target_vm(self) -> VirtualMachine:
        if self.env.target_vm is None:
            self.env.target_vm = await self.platform.get_target_vm()
        if self.env.target_vm is None:
            raise UnknownVmError(f"Requested non-existing vm (id: {self.env.target_id}).")
        return self.env.target_vm

    async def handle_heartbeat_sync(self) -> str:
        """Process one heartbeat of the target vm.

        Returns an empty string, or a JSON body carrying ``primary-ip`` when
        the target must learn about a different primary.
        """
        logger.info("calling handle_heartbeat_sync.")
        settings = await self.fleet_settings()
        env = self.env
        unhealthy_vms: list[VirtualMachine] = []

        target_vm = await self._load_target_vm()
        heartbeat = self.heartbeat_sync_strategy
        heartbeat.prepare(target_vm, settings)
        await heartbeat.apply()

        record = heartbeat.target_health_check_record
        if record is not None and record.up_to_date:
            env.target_health_check_record = record
        else:
            env.target_health_check_record = await self.platform.get_health_check_record(
                target_vm.id
            )

        if heartbeat.target_vm_first_heartbeat:
            await self.on_vm_fully_configured()

        result = heartbeat.health_check_result
        if result == HealthCheckResult.DROPPED:
            logger.info("called handle_heartbeat_sync. heartbeat dropped.")
            return ""
        detail = heartbeat.health_check_result_detail
        if result == HealthCheckResult.LATE and detail is not None:
            await self.send_autoscale_notifications(
                target_vm, late_heartbeat_message(target_vm, detail), LATE_HEARTBEAT_SUBJECT
            )

        if env.primary_vm is None:
            env.primary_vm = await self.platform.get_primary_vm()
        if env.primary_vm is not None:
            env.primary_health_check_record = await self.platform.get_health_check_record(
                env.primary_vm.id
            )
        else:
            env.primary_health_check_record = None
        if env.primary_record is None:
            env.primary_record = await self.platform.get_primary_record()

        election = await self.handle_primary_election()

        if election.new_primary is not None:
            env.primary_vm = election.new_primary
            env.primary_record = election.new_primary_record
            env.primary_health_check_record = await self.platform.get_health_check_record(
                election.new_primary.id
            )
            if election.old_primary is not None:
                old_health = await self.platform.get_health_check_record(election.old_primary.id)
                if old_health is not None and not old_health.healthy:
                    self._add_unique(unhealthy_vms, election.old_primary)

        target_health = env.target_health_check_record
        if target_health is None:
            logger.warning("Health check record of vm (id: %s) is gone.", target_vm.id)
            return ""
        if not target_health.healthy:
            self._add_unique(unhealthy_vms, target_vm)

        await self.handle_unhealthy_vm(unhealthy_vms)

        # unhealthy members are not told about primary changes
        if not target_health.healthy:
            logger.info("called handle_heartbeat_sync.")
            return ""

        updated_primary_ip: str | None = None
        if (
            election.new_primary is not None
            and target_health.primary_ip != election.new_primary.primary_private_ip_address
        ):
            updated_primary_ip = election.new_primary.primary_private_ip_address
        elif (
            election.old_primary is not None
            and env.primary_vm is not None
            and env.primary_health_check_record is not None
            and election.old_primary.id == env.primary_vm.id
            and env.primary_health_check_record.healthy
            and target_health.primary_ip != election.old_primary.primary_private_ip_address
        ):
            updated_primary_ip = election.old_primary.primary_private_ip_address

        if election.new_primary is not None:
            await self.handle_tagging_autoscale_vm(
                [VmTagging(vm_id=election.new_primary.id, new_vm=False, new_primary_role=True)]
            )
            await self.handle_egress_traffic_route()

        response = ""
        if updated_primary_ip is not None:
            target_health.primary_ip = updated_primary_ip
            try:
                await self.platform.update_health_check_record(target_health)
            except (PersistenceError, RecordConflictError):
                logger.exception(
                    "Unable to record primary ip %s for vm (id: %s).",
                    updated_primary_ip,
                    target_vm.id,
                )
            else:
                response = json.dumps({"primary-ip": updated_primary_ip})
        logger.info("called handle_heartbeat_sync.")
        return response

    async def handle_primary_election(self) -> PrimaryElection:
        logger.info("calling handle_primary_election.")
        settings = await self.fleet_settings()
        env = self.env
        target_vm = await self._load_target_vm()
        election = PrimaryElection(
            candidate=target_vm,
            old_primary=env.primary_vm,
            old_primary_record=env.primary_record,
            candidate_health_check=env.target_health_check_record,
            preferred_scaling_group=settings.primary_scaling_group_name,
            election_duration=settings.primary_election_timeout,
        )
        self.primary_election_strategy.prepare(election, settings)

        if env.primary_record is None or env.primary_vm is None:
            election = await self._run_election()
        elif env.primary_record.vote_state == PrimaryRecordVoteState.PENDING:
            # only the pending primary itself can confirm the election
            target_health = env.target_health_check_record
            if (
                self.platform.vm_equals(target_vm, env.primary_vm)
                and target_health is not None
                and target_health.healthy
                and target_health.sync_state == HealthCheckSyncState.IN_SYNC
            ):
                done_record = replace(env.primary_record, vote_state=PrimaryRecordVoteState.DONE)
                try:
                    await self.platform.update_primary_record(done_record)
                except RecordConflictError:
                    logger.warning(
                        "Pending primary record (id: %s) changed before it could be "
                        "completed. Leaving it as it is.",
                        done_record.id,
                    )
                else:
                    env.primary_record = done_record
                    election.new_primary = target_vm
                    election.new_primary_record = done_record
        elif env.primary_record.vote_state == PrimaryRecordVoteState.TIMEOUT:
            # the prepared election still replaces the timed-out record
            env.primary_record = None
            env.primary_vm = None
            election = await self._run_election()
        elif env.primary_record.vote_state == PrimaryRecordVoteState.DONE:
            if env.primary_health_check_record is None:
                env.primary_health_check_record = await self.platform.get_health_check_record(
                    env.primary_vm.id
                )
            primary_health = env.primary_health_check_record
            if (primary_health is None or not primary_health.healthy) and not (
                self.platform.vm_equals(target_vm, env.primary_vm)
            ):
                election = await self._run_election()

        logger.info("called handle_primary_election.")
        return election

    async def _run_election(self) -> PrimaryElection:
        outcome = await self.primary_election_strategy.apply()
        if outcome == PrimaryElectionStrategyResult.SHOULD_STOP:
            raise ElectionError(
                "Primary election stopped: the primary record could not be written "
                "and no new primary could be found."
            )
        return self.primary_election_strategy.result()

    def _add_unique(self, vms: list[VirtualMachine], vm: VirtualMachine) -> None:
        if not any(self.platform.vm_equals(existing, vm) for existing in vms):
            vms.append(vm)

    async def handle_unhealthy_vm(self, vms: list[VirtualMachine]) -> None:
        logger.info("calling handle_unhealthy_vm.")
        settings = await self.fleet_settings()
        terminate = settings.terminate_unhealthy_vm

        async def handle(vm: VirtualMachine) -> None:
            logger.info("handling unhealthy vm (id: %s)...", vm.id)
            message = (
                f"Device (id: {vm.id}, ip: {vm.primary_private_ip_address}) has been deemed "
                "unhealthy and marked as out-of-sync by the Autoscale.\n\n"
            )
            logger.warning(
                "Termination of unhealthy vm is %s. vm (id: %s) will %sbe deleted.",
                "enabled" if terminate else "disabled",
                vm.id,
                "" if terminate else "not ",
            )
            try:
                if terminate:
                    await self.platform.delete_vm_from_scaling_group(vm.id)
                    message += (
                        "Autoscale is now terminating this device.\n"
                        "Depending on the scaling policies, a replacement device may be "
                        "created. Further investigation for the cause of termination may be "
                        "necessary."
                    )
                else:
                    record = await self.platform.get_health_check_record(vm.id)
                    recovery_count = record.sync_recovery_count if record is not None else 0
                    message += (
                        " This device is excluded from being candidate of primary device.\n"
                        f" It requires ({recovery_count}) on-time heartbeats to recover from "
                        "out-of-sync state to in-sync state.\n"
                        " A full recovery will include this device into primary elections "
                        "again.\n"
                    )
            except Exception:
                logger.exception("handling unhealthy vm (id: %s) failed.", vm.id)
                return
            await self.send_autoscale_notifications(vm, message, UNHEALTHY_VM_SUBJECT)
            logger.info("handling vm (id: %s) completed.", vm.id)

        await asyncio.gather(*(handle(vm) for vm in vms))
        logger.info("called handle_unhealthy_vm.")

    async def handle_terminating_vm(self) -> str:
        """Take a terminating vm out of elections and drop its primary role tag."""
        logger.info("calling handle_terminating_vm.")
        settings = await self.fleet_settings()
        env = self.env
        target_vm = await self._load_target_vm()
        env.target_health_check_record = await self.platform.get_health_check_record(
            target_vm.id
        )
        # a vm can terminate before its first heartbeat
        if env.target_health_check_record is not None:
            self.heartbeat_sync_strategy.prepare(target_vm, settings)
            if await self.heartbeat_sync_strategy.force_out_of_sync():
                env.target_health_check_record = await self.platform.get_health_check_record(
                    target_vm.id
                )
            if env.primary_vm is None:
                env.primary_vm = await self.platform.get_primary_vm()
            if self.platform.vm_equals(target_vm, env.primary_vm):
                await self.handle_tagging_autoscale_vm([VmTagging(vm_id=target_vm.id, clear=True)])
        logger.info("called handle_terminating_vm.")
        return ""

    async def handle_terminated_vm(self) -> str:
        logger.info("calling handle_terminated_vm.")
        vm_id = self.env.target_id or (self.env.target_vm.id if self.env.target_vm else None)
        if vm_id is None:
            raise UnknownVmError("No vm id given for a terminated vm.")
        await self.platform.delete_health_check_record(vm_id)
        logger.info("Health check record of vm (id: %s) removed.", vm_id)
        logger.info("called handle_terminated_vm.")
        return ""

    async def handle_tagging_autoscale_vm(self, taggings: list[VmTagging]) -> None:
        logger.info("calling handle_tagging_autoscale_vm.")
        settings = await self.fleet_settings()
        await self.tagging_vm_strategy.apply(taggings, settings)
        logger.info("called handle_tagging_autoscale_vm.")

    async def handle_egress_traffic_route(self) -> None:
        logger.info("calling handle_egress_traffic_route.")
        settings = await self.fleet_settings()
        await self.routing_egress_traffic_strategy.apply(self.env.primary_vm, settings)
        logger.info("called handle_egress_traffic_route.")

    async def on_vm_fully_configured(self) -> None:
        target = self.env.target_vm
        logger.info("Vm (id: %s) is fully configured.", target.id if target else None)

    async def send_autoscale_notifications(
        self, vm: VirtualMachine, message: str, subject: str
    ) -> None:
        try:
            await self.platform.send_notification(vm, message, subject)
        except Exception:
            logger.exception("unable to send Autoscale notifications.")

    async def save_settings(
        self,
        values: Mapping[str, str],
        item_dict: Mapping[str, SettingItemDefinition] = SETTING_ITEM_DICTIONARY,
    ) -> bool:
        """Save every supported setting in parallel; False if any save failed."""
        failed: list[str] = []
        unsupported: list[str] = []

        async def save(key: str, definition: SettingItemDefinition, value: str) -> None:
            try:
                await self.platform.save_setting_item(
                    definition.key_name,
                    value,
                    definition.description,
                    definition.json_encoded,
                    definition.editable,
                )
            except Exception:
                logger.exception("failed to save setting for key: %s.", key)
                failed.append(key)

        tasks = []
        for setting_key, value in values.items():
            key = setting_key.lower()
            definition = item_dict.get(key)
            if definition is None:
                unsupported.append(key)
                continue
            if definition.boolean_type:
                value = "true" if str(value).strip().lower() == "true" else "false"
            tasks.append(save(key, definition, str(value)))

        if unsupported:
            logger.warning("Unsupported setting cannot be saved: %s.", ", ".join(unsupported))

        await asyncio.gather(*tasks)
        self._settings = None
        return not failed
