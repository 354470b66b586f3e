from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from conftest import (
    ARRIVE_TIME,
    INTERVAL_MS,
    FakePlatform,
    make_health_record,
    seed_fleet_settings,
)
from fw_autoscale.core.heartbeat import ConstantIntervalHeartbeatSyncStrategy
from fw_autoscale.domain.models import (
    DeviceSyncInfo,
    HealthCheckResult,
    HealthCheckSyncState,
)
from fw_autoscale.errors import PersistenceError


async def _heartbeat(store, vms, vm_id="i-aaa", create_time=ARRIVE_TIME, device=None):
    platform = FakePlatform(store, vms, vm_id, create_time=create_time, device=device)
    strategy = ConstantIntervalHeartbeatSyncStrategy(platform, wait_interval_seconds=0.01)
    strategy.prepare(vms[vm_id], await platform.get_fleet_settings())
    result = await strategy.apply()
    return strategy, result


@pytest.mark.asyncio
async def test_first_heartbeat_creates_record(store, vms) -> None:
    strategy, result = await _heartbeat(store, vms, device=DeviceSyncInfo(interval=30))

    assert result == HealthCheckResult.ON_TIME
    assert strategy.target_vm_first_heartbeat is True
    stored = await store.get_health_check_record("i-aaa")
    assert stored.seq == 1
    assert stored.heartbeat_loss_count == 0
    assert stored.sync_state == HealthCheckSyncState.IN_SYNC
    assert stored.next_heartbeat_time == ARRIVE_TIME + 30_000
    assert stored.heartbeat_interval == 30_000
    assert stored.ip == "10.0.1.10"


@pytest.mark.asyncio
async def test_first_heartbeat_uses_setting_interval_when_device_sends_none(store, vms) -> None:
    await _heartbeat(store, vms)

    stored = await store.get_health_check_record("i-aaa")
    assert stored.heartbeat_interval == INTERVAL_MS


@pytest.mark.asyncio
async def test_first_heartbeat_persistence_failure_is_dropped(store, vms, monkeypatch) -> None:
    monkeypatch.setattr(
        store, "create_health_check_record", AsyncMock(side_effect=PersistenceError("disk full"))
    )

    strategy, result = await _heartbeat(store, vms)

    assert result == HealthCheckResult.DROPPED
    assert strategy.target_health_check_record.up_to_date is False


@pytest.mark.asyncio
async def test_seq_increases_by_one_per_heartbeat(store, vms) -> None:
    arrive = ARRIVE_TIME
    await _heartbeat(store, vms, create_time=arrive)
    for expected_seq in (2, 3, 4):
        arrive += INTERVAL_MS
        _, result = await _heartbeat(store, vms, create_time=arrive)
        assert result == HealthCheckResult.ON_TIME
        assert (await store.get_health_check_record("i-aaa")).seq == expected_seq


@pytest.mark.asyncio
async def test_on_time_heartbeat_resets_loss_count(store, vms) -> None:
    await store.create_health_check_record(make_health_record(vms["i-aaa"], loss_count=2))

    _, result = await _heartbeat(store, vms, create_time=ARRIVE_TIME + INTERVAL_MS)

    stored = await store.get_health_check_record("i-aaa")
    assert result == HealthCheckResult.ON_TIME
    assert stored.heartbeat_loss_count == 0
    assert stored.next_heartbeat_time == ARRIVE_TIME + 2 * INTERVAL_MS


@pytest.mark.asyncio
async def test_late_heartbeat_below_max_loss_stays_in_sync(store, vms) -> None:
    await store.create_health_check_record(make_health_record(vms["i-aaa"], loss_count=1))
    late = ARRIVE_TIME + INTERVAL_MS + 2_000

    strategy, result = await _heartbeat(store, vms, create_time=late)

    stored = await store.get_health_check_record("i-aaa")
    assert result == HealthCheckResult.LATE
    assert stored.heartbeat_loss_count == 2
    assert stored.sync_state == HealthCheckSyncState.IN_SYNC
    assert strategy.target_health_check_record.healthy is True
    assert strategy.health_check_result_detail.calculated_delay == 0


@pytest.mark.asyncio
async def test_late_heartbeat_at_max_loss_goes_out_of_sync(store, vms) -> None:
    await store.create_health_check_record(make_health_record(vms["i-aaa"], loss_count=2))

    strategy, result = await _heartbeat(store, vms, create_time=ARRIVE_TIME + 2 * INTERVAL_MS)

    stored = await store.get_health_check_record("i-aaa")
    assert result == HealthCheckResult.LATE
    assert stored.heartbeat_loss_count == 3
    assert stored.sync_state == HealthCheckSyncState.OUT_OF_SYNC
    assert stored.sync_recovery_count == 3
    assert strategy.target_health_check_record.healthy is False


@pytest.mark.asyncio
async def test_heartbeat_within_allowance_is_on_time(store, vms) -> None:
    await store.create_health_check_record(make_health_record(vms["i-aaa"]))

    _, result = await _heartbeat(store, vms, create_time=ARRIVE_TIME + INTERVAL_MS + 1_999)

    assert result == HealthCheckResult.ON_TIME


@pytest.mark.asyncio
async def test_out_of_sync_on_time_heartbeat_counts_down(store, vms) -> None:
    await store.create_health_check_record(
        make_health_record(
            vms["i-aaa"],
            loss_count=3,
            sync_state=HealthCheckSyncState.OUT_OF_SYNC,
            recovery_count=2,
        )
    )

    strategy, result = await _heartbeat(store, vms, create_time=ARRIVE_TIME + INTERVAL_MS)

    stored = await store.get_health_check_record("i-aaa")
    assert result == HealthCheckResult.DROPPED
    assert stored.sync_recovery_count == 1
    assert stored.sync_state == HealthCheckSyncState.OUT_OF_SYNC
    assert stored.heartbeat_loss_count == 3
    assert strategy.target_health_check_record.healthy is False


@pytest.mark.asyncio
async def test_out_of_sync_recovers_fully_when_count_reaches_zero(store, vms) -> None:
    await store.create_health_check_record(
        make_health_record(
            vms["i-aaa"],
            loss_count=3,
            sync_state=HealthCheckSyncState.OUT_OF_SYNC,
            recovery_count=1,
        )
    )

    strategy, result = await _heartbeat(store, vms, create_time=ARRIVE_TIME + INTERVAL_MS)

    stored = await store.get_health_check_record("i-aaa")
    assert result == HealthCheckResult.ON_TIME
    assert stored.sync_state == HealthCheckSyncState.IN_SYNC
    assert stored.sync_recovery_count == 0
    assert stored.heartbeat_loss_count == 0
    assert strategy.target_health_check_record.healthy is True


@pytest.mark.asyncio
async def test_out_of_sync_late_heartbeat_resets_recovery(store, vms) -> None:
    await store.create_health_check_record(
        make_health_record(
            vms["i-aaa"],
            loss_count=3,
            sync_state=HealthCheckSyncState.OUT_OF_SYNC,
            recovery_count=1,
        )
    )

    _, result = await _heartbeat(store, vms, create_time=ARRIVE_TIME + 3 * INTERVAL_MS)

    stored = await store.get_health_check_record("i-aaa")
    assert result == HealthCheckResult.DROPPED
    assert stored.sync_recovery_count == 3


@pytest.mark.asyncio
async def test_out_of_sync_does_not_recover_when_terminating_unhealthy(store, vms) -> None:
    await seed_fleet_settings(store, terminate_unhealthy_vm="true")
    await store.create_health_check_record(
        make_health_record(
            vms["i-aaa"],
            loss_count=3,
            sync_state=HealthCheckSyncState.OUT_OF_SYNC,
            recovery_count=1,
        )
    )

    _, result = await _heartbeat(store, vms, create_time=ARRIVE_TIME + INTERVAL_MS)

    stored = await store.get_health_check_record("i-aaa")
    assert result == HealthCheckResult.DROPPED
    assert stored.sync_recovery_count == 1
    assert stored.sync_state == HealthCheckSyncState.OUT_OF_SYNC


@pytest.mark.asyncio
async def test_update_failure_drops_heartbeat(store, vms, monkeypatch) -> None:
    await store.create_health_check_record(make_health_record(vms["i-aaa"]))
    monkeypatch.setattr(
        store, "update_health_check_record", AsyncMock(side_effect=PersistenceError("locked"))
    )

    strategy, result = await _heartbeat(store, vms, create_time=ARRIVE_TIME + INTERVAL_MS)

    assert result == HealthCheckResult.DROPPED
    assert strategy.target_health_check_record.up_to_date is False


@pytest.mark.asyncio
async def test_device_send_time_measures_delay_between_consecutive_heartbeats(store, vms) -> None:
    await store.create_health_check_record(
        make_health_record(vms["i-aaa"], seq=5, send_time="2024-01-01T00:00:00Z")
    )
    device = DeviceSyncInfo(interval=30, sequence=6, time="2024-01-01T00:00:29Z")

    # arrives far too late, but the device sent it on time
    strategy, result = await _heartbeat(
        store, vms, create_time=ARRIVE_TIME + 5 * INTERVAL_MS, device=device
    )

    stored = await store.get_health_check_record("i-aaa")
    assert result == HealthCheckResult.ON_TIME
    assert stored.seq == 6
    assert stored.send_time == "2024-01-01T00:00:29Z"
    assert strategy.health_check_result_detail.calculated_delay == -1_000


@pytest.mark.asyncio
async def test_device_send_time_late(store, vms) -> None:
    await store.create_health_check_record(
        make_health_record(vms["i-aaa"], seq=5, send_time="2024-01-01T00:00:00Z")
    )
    device = DeviceSyncInfo(interval=30, sequence=6, time="2024-01-01T00:00:31Z")

    _, result = await _heartbeat(store, vms, create_time=ARRIVE_TIME + INTERVAL_MS, device=device)

    stored = await store.get_health_check_record("i-aaa")
    assert result == HealthCheckResult.LATE
    assert stored.heartbeat_loss_count == 1


@pytest.mark.asyncio
async def test_device_skipped_sequence_counts_as_on_time(store, vms) -> None:
    await store.create_health_check_record(
        make_health_record(vms["i-aaa"], seq=5, send_time="2024-01-01T00:00:00Z")
    )
    device = DeviceSyncInfo(interval=30, sequence=8, time="2024-01-01T00:05:00Z")

    _, result = await _heartbeat(store, vms, create_time=ARRIVE_TIME + INTERVAL_MS, device=device)

    stored = await store.get_health_check_record("i-aaa")
    assert result == HealthCheckResult.ON_TIME
    assert stored.seq == 8


@pytest.mark.asyncio
async def test_outdated_device_sequence_is_dropped_without_write(store, vms) -> None:
    await store.create_health_check_record(
        make_health_record(vms["i-aaa"], seq=5, send_time="2024-01-01T00:00:00Z")
    )
    device = DeviceSyncInfo(interval=30, sequence=4, time="2023-12-31T23:59:30Z")

    strategy, result = await _heartbeat(
        store, vms, create_time=ARRIVE_TIME + INTERVAL_MS, device=device
    )

    stored = await store.get_health_check_record("i-aaa")
    assert result == HealthCheckResult.DROPPED
    assert strategy.target_health_check_record.up_to_date is False
    assert stored.seq == 5
    assert stored.send_time == "2024-01-01T00:00:00Z"


@pytest.mark.asyncio
async def test_replayed_device_sequence_is_dropped_without_write(store, vms) -> None:
    await store.create_health_check_record(
        make_health_record(
            vms["i-aaa"], seq=5, loss_count=2, send_time="2024-01-01T00:00:00Z"
        )
    )
    device = DeviceSyncInfo(interval=30, sequence=5, time="2024-01-01T00:00:00Z")

    strategy, result = await _heartbeat(
        store, vms, create_time=ARRIVE_TIME + 10 * INTERVAL_MS, device=device
    )

    stored = await store.get_health_check_record("i-aaa")
    assert result == HealthCheckResult.DROPPED
    assert strategy.target_health_check_record.up_to_date is False
    assert stored.seq == 5
    assert stored.heartbeat_loss_count == 2


@pytest.mark.asyncio
async def test_device_details_are_recorded(store, vms) -> None:
    device = DeviceSyncInfo(
        interval=30,
        sequence=3,
        time="2024-01-01T00:00:00Z",
        sync_time="2024-01-01T00:00:00Z",
        sync_status=True,
        is_primary=False,
        checksum="abc123",
    )

    await _heartbeat(store, vms, device=device)

    stored = await store.get_health_check_record("i-aaa")
    assert stored.seq == 3
    assert stored.device_checksum == "abc123"
    assert stored.device_sync_status is True
    assert stored.device_is_primary is False


@pytest.mark.asyncio
async def test_force_out_of_sync_marks_record(store, vms) -> None:
    await store.create_health_check_record(make_health_record(vms["i-aaa"]))
    platform = FakePlatform(store, vms, "i-aaa")
    strategy = ConstantIntervalHeartbeatSyncStrategy(platform, wait_interval_seconds=0.01)
    strategy.prepare(vms["i-aaa"], await platform.get_fleet_settings())

    assert await strategy.force_out_of_sync() is True

    stored = await store.get_health_check_record("i-aaa")
    assert stored.sync_state == HealthCheckSyncState.OUT_OF_SYNC


@pytest.mark.asyncio
async def test_force_out_of_sync_is_idempotent(store, vms, monkeypatch) -> None:
    await store.create_health_check_record(
        make_health_record(vms["i-aaa"], sync_state=HealthCheckSyncState.OUT_OF_SYNC)
    )
    update = AsyncMock()
    monkeypatch.setattr(store, "update_health_check_record", update)
    platform = FakePlatform(store, vms, "i-aaa")
    strategy = ConstantIntervalHeartbeatSyncStrategy(platform, wait_interval_seconds=0.01)
    strategy.prepare(vms["i-aaa"], await platform.get_fleet_settings())

    assert await strategy.force_out_of_sync() is True
    assert await strategy.force_out_of_sync() is True
    update.assert_not_awaited()


@pytest.mark.asyncio
async def test_force_out_of_sync_without_record(store, vms) -> None:
    platform = FakePlatform(store, vms, "i-aaa")
    strategy = ConstantIntervalHeartbeatSyncStrategy(platform, wait_interval_seconds=0.01)
    strategy.prepare(vms["i-aaa"], await platform.get_fleet_settings())

    assert await strategy.force_out_of_sync() is False


@pytest.mark.asyncio
async def test_force_out_of_sync_gives_up_after_three_reads(store, vms, monkeypatch) -> None:
    await store.create_health_check_record(make_health_record(vms["i-aaa"]))
    monkeypatch.setattr(store, "update_health_check_record", AsyncMock())
    platform = FakePlatform(store, vms, "i-aaa")
    reads = AsyncMock(wraps=platform.get_health_check_record)
    monkeypatch.setattr(platform, "get_health_check_record", reads)
    strategy = ConstantIntervalHeartbeatSyncStrategy(platform, wait_interval_seconds=0.01)
    strategy.prepare(vms["i-aaa"], await platform.get_fleet_settings())

    assert await strategy.force_out_of_sync() is False
    # one read before the write, three while waiting
    assert reads.await_count == 4


def test_strategy_requires_prepare(sqlite_store, vms) -> None:
    strategy = ConstantIntervalHeartbeatSyncStrategy(FakePlatform(sqlite_store, vms, "i-aaa"))

    with pytest.raises(RuntimeError, match="prepare"):
        _ = strategy.target_vm
