"""Heartbeat health-check strategies.

A heartbeat strategy turns one inbound heartbeat into an updated
:class:`HealthCheckRecord`. The arrive time is the invocation's
``platform.create_time``, captured once when the invocation started.

Lateness is measured one of two ways:

* by arrive time: ``arrive - expected_arrive - delay_allowance``
* by device send time, when the device reports when it sent the heartbeat:
  ``send_time - recorded_send_time - interval`` for the heartbeat that
  immediately follows the recorded one. Any later sequence number means a
  slower invocation is still processing an earlier heartbeat; the delay then
  cannot be measured and the heartbeat counts as on time.

A delay of zero or more is late.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from fw_autoscale.domain.models import (
    DeviceSyncInfo,
    HealthCheckRecord,
    HealthCheckResult,
    HealthCheckResultDetail,
    HealthCheckSyncState,
    VirtualMachine,
)
from fw_autoscale.domain.settings import FleetSettings
from fw_autoscale.errors import AutoscaleError, PersistenceError, RecordConflictError
from fw_autoscale.platform.base import PlatformAdapter
from fw_autoscale.utils.time import ms_to_iso, parse_iso_ms
from fw_autoscale.utils.wait import InvocationDeadline, wait_for

logger = logging.getLogger(__name__)

FORCE_OUT_OF_SYNC_MAX_ATTEMPTS = 3
FORCE_OUT_OF_SYNC_INTERVAL_SECONDS = 5.0


class HeartbeatSyncStrategy(ABC):
    @abstractmethod
    def prepare(self, target_vm: VirtualMachine, settings: FleetSettings) -> None: ...

    @abstractmethod
    async def apply(self) -> HealthCheckResult: ...

    @abstractmethod
    async def force_out_of_sync(self) -> bool:
        """Mark the target out-of-sync and wait until the store reflects it."""

    @property
    @abstractmethod
    def target_health_check_record(self) -> HealthCheckRecord | None: ...

    @property
    @abstractmethod
    def health_check_result(self) -> HealthCheckResult | None: ...

    @property
    @abstractmethod
    def health_check_result_detail(self) -> HealthCheckResultDetail | None: ...

    @property
    @abstractmethod
    def target_vm_first_heartbeat(self) -> bool: ...


class ConstantIntervalHeartbeatSyncStrategy(HeartbeatSyncStrategy):
    def __init__(
        self,
        platform: PlatformAdapter,
        wait_interval_seconds: float = FORCE_OUT_OF_SYNC_INTERVAL_SECONDS,
        deadline: InvocationDeadline | None = None,
    ) -> None:
        self.platform = platform
        self.wait_interval_seconds = wait_interval_seconds
        self.deadline = deadline
        self._target_vm: VirtualMachine | None = None
        self._settings = FleetSettings()
        self._reset()

    def _reset(self) -> None:
        self._first_heartbeat = False
        self._result: HealthCheckResult | None = None
        self._detail: HealthCheckResultDetail | None = None
        self._record: HealthCheckRecord | None = None

    def prepare(self, target_vm: VirtualMachine, settings: FleetSettings) -> None:
        self._target_vm = target_vm
        self._settings = settings
        self._reset()

    @property
    def target_vm(self) -> VirtualMachine:
        if self._target_vm is None:
            raise RuntimeError("prepare() must be called before using the heartbeat strategy")
        return self._target_vm

    @property
    def target_health_check_record(self) -> HealthCheckRecord | None:
        return self._record

    @property
    def health_check_result(self) -> HealthCheckResult | None:
        return self._result

    @property
    def health_check_result_detail(self) -> HealthCheckResultDetail | None:
        return self._detail

    @property
    def target_vm_first_heartbeat(self) -> bool:
        return self._first_heartbeat

    async def apply(self) -> HealthCheckResult:
        logger.info("applying ConstantIntervalHeartbeatSyncStrategy strategy.")
        settings = self._settings
        vm = self.target_vm
        device = await self.platform.get_req_device_sync_info()
        new_interval = (device.interval or settings.heartbeat_interval) * 1000
        arrive_time = self.platform.create_time
        delay_allowance = settings.heartbeat_delay_allowance_ms
        max_loss_count = settings.heartbeat_loss_count

        record = await self.platform.get_health_check_record(vm.id)
        if record is None:
            old_seq = device.sequence or 0
            old_interval = 0
            old_loss_count = 0
            expected_arrive_time = arrive_time
            delay = 0
            delay_at_send_time: int | None = None
            method = "by arrive time"
            record = await self._first_heartbeat_record(device, new_interval, arrive_time)
        else:
            old_seq = record.seq
            old_interval = record.heartbeat_interval
            old_loss_count = record.heartbeat_loss_count
            expected_arrive_time = record.next_heartbeat_time
            delay, delay_at_send_time, method = await self._regular_heartbeat(
                record, device, new_interval, arrive_time
            )

        self._record = record
        self._detail = HealthCheckResultDetail(
            sequence=record.seq,
            result=self._result,
            expected_arrive_time=expected_arrive_time,
            actual_arrive_time=arrive_time,
            heartbeat_interval=new_interval,
            old_heartbeat_interval=old_interval,
            delay_allowance=delay_allowance,
            calculated_delay=delay,
            actual_delay=delay + delay_allowance,
            heartbeat_loss_count=record.heartbeat_loss_count,
            max_heartbeat_loss_count=max_loss_count,
            sync_recovery_count=record.sync_recovery_count,
        )
        logger.info(
            "Heartbeat sync result: %s, heartbeat sequence: %s->%s, "
            "heartbeat interval: %s->%s ms, device time for received heartbeat: %s, "
            "delay at send time: %s ms, heartbeat expected arrive time: %s, "
            "heartbeat actual arrive time: %s, heartbeat delay at arrive time: %s ms, "
            "heartbeat delay allowance for arrival: %s ms, "
            "heartbeat calculated delay: %s ms %s, heartbeat loss count: %s->%s, "
            "max loss count allowed: %s.",
            self._result.value,
            old_seq,
            record.seq,
            old_interval,
            new_interval,
            device.time,
            "n/a" if delay_at_send_time is None else delay_at_send_time,
            ms_to_iso(expected_arrive_time),
            ms_to_iso(arrive_time),
            arrive_time - expected_arrive_time,
            delay_allowance,
            delay,
            method,
            old_loss_count,
            record.heartbeat_loss_count,
            max_loss_count,
        )
        logger.info("applied ConstantIntervalHeartbeatSyncStrategy strategy.")
        return self._result

    async def _first_heartbeat_record(
        self, device: DeviceSyncInfo, new_interval: int, arrive_time: int
    ) -> HealthCheckRecord:
        vm = self.target_vm
        self._first_heartbeat = True
        self._result = HealthCheckResult.ON_TIME
        record = HealthCheckRecord(
            vm_id=vm.id,
            scaling_group_name=vm.scaling_group_name,
            ip=vm.primary_private_ip_address,
            primary_ip="",
            heartbeat_interval=new_interval,
            heartbeat_loss_count=0,
            next_heartbeat_time=arrive_time + new_interval,
            sync_state=HealthCheckSyncState.IN_SYNC,
            sync_recovery_count=0,
            seq=device.sequence or 1,
            healthy=True,
            up_to_date=True,
        )
        self._copy_device_info(record, device)
        try:
            await self.platform.create_health_check_record(record)
        except (PersistenceError, RecordConflictError):
            logger.exception("create_health_check_record() error.")
            record.up_to_date = False
            self._result = HealthCheckResult.DROPPED
        return record

    async def _regular_heartbeat(
        self,
        record: HealthCheckRecord,
        device: DeviceSyncInfo,
        new_interval: int,
        arrive_time: int,
    ) -> tuple[int, int | None, str]:
        settings = self._settings
        send_time = parse_iso_ms(device.time)
        use_device_time = send_time is not None
        outdated = False
        delay_at_send_time: int | None = None
        if use_device_time:
            method = "by device send time"
            delay = 0
            if device.sequence is not None and device.sequence <= record.seq:
                outdated = True
            else:
                recorded_send_time = parse_iso_ms(record.send_time)
                if (
                    device.sequence is not None
                    and device.sequence == record.seq + 1
                    and recorded_send_time is not None
                ):
                    delay = send_time - recorded_send_time - new_interval
                else:
                    delay = -1
                delay_at_send_time = delay
        else:
            method = "by arrive time"
            delay = (
                arrive_time - record.next_heartbeat_time - settings.heartbeat_delay_allowance_ms
            )

        if record.sync_state == HealthCheckSyncState.OUT_OF_SYNC:
            self._apply_sync_recovery(record, delay)
        elif delay >= 0:
            record.heartbeat_loss_count += 1
            if record.heartbeat_loss_count >= settings.heartbeat_loss_count:
                record.sync_state = HealthCheckSyncState.OUT_OF_SYNC
                record.healthy = False
                record.sync_recovery_count = settings.sync_recovery_count
            else:
                record.healthy = True
            self._result = HealthCheckResult.LATE
        else:
            record.heartbeat_loss_count = 0
            record.healthy = True
            self._result = HealthCheckResult.ON_TIME

        if use_device_time and device.sequence is not None:
            record.seq = device.sequence
        else:
            record.seq += 1
        record.heartbeat_interval = new_interval
        record.next_heartbeat_time = arrive_time + new_interval
        self._copy_device_info(record, device)

        if outdated:
            logger.warning("Dropped an outdated heartbeat request.")
            record.up_to_date = False
            self._result = HealthCheckResult.DROPPED
            return delay, delay_at_send_time, method
        try:
            await self.platform.update_health_check_record(record)
        except (PersistenceError, RecordConflictError):
            logger.exception("update_health_check_record() error.")
            record.up_to_date = False
            self._result = HealthCheckResult.DROPPED
        return delay, delay_at_send_time, method

    def _apply_sync_recovery(self, record: HealthCheckRecord, delay: int) -> None:
        # out-of-sync members are out of the election until fully recovered
        self._result = HealthCheckResult.DROPPED
        record.healthy = False
        if self._settings.terminate_unhealthy_vm:
            return
        if delay >= 0:
            record.sync_recovery_count = self._settings.sync_recovery_count
            return
        record.sync_recovery_count -= 1
        if record.sync_recovery_count <= 0:
            record.sync_recovery_count = 0
            record.heartbeat_loss_count = 0
            record.sync_state = HealthCheckSyncState.IN_SYNC
            record.healthy = True
            self._result = HealthCheckResult.ON_TIME

    @staticmethod
    def _copy_device_info(record: HealthCheckRecord, device: DeviceSyncInfo) -> None:
        record.send_time = device.time
        record.device_sync_time = device.sync_time
        record.device_sync_fail_time = device.sync_fail_time
        record.device_sync_status = device.sync_status
        record.device_is_primary = device.is_primary
        record.device_checksum = device.checksum

    async def force_out_of_sync(self) -> bool:
        logger.info("calling ConstantIntervalHeartbeatSyncStrategy.force_out_of_sync.")
        vm_id = self.target_vm.id
        try:
            record = await self.platform.get_health_check_record(vm_id)
            if record is None:
                logger.warning("No health check record found for vm (id: %s).", vm_id)
                return False
            if record.sync_state == HealthCheckSyncState.OUT_OF_SYNC:
                return True
            record.sync_state = HealthCheckSyncState.OUT_OF_SYNC
            record.healthy = False
            await self.platform.update_health_check_record(record)
            await wait_for(
                lambda: self.platform.get_health_check_record(vm_id),
                lambda current, _attempt: (
                    current is not None
                    and current.sync_state == HealthCheckSyncState.OUT_OF_SYNC
                ),
                interval_seconds=self.wait_interval_seconds,
                max_attempts=FORCE_OUT_OF_SYNC_MAX_ATTEMPTS,
                deadline=self.deadline,
            )
            return True
        except AutoscaleError:
            logger.exception("error in force_out_of_sync()")
            return False
        finally:
            logger.info("called ConstantIntervalHeartbeatSyncStrategy.force_out_of_sync.")
