"""Primary election strategies.

Concurrent invocations race on the store's conditional create: the first
write wins, and every loser reads the winner back and reports it as the new
primary instead of itself.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import replace
from enum import Enum

from fw_autoscale.domain.models import (
    HealthCheckRecord,
    HealthCheckSyncState,
    PrimaryElection,
    PrimaryRecord,
    PrimaryRecordVoteState,
    VirtualMachine,
)
from fw_autoscale.domain.settings import FleetSettings
from fw_autoscale.errors import PersistenceError, RecordConflictError
from fw_autoscale.platform.base import PlatformAdapter
from fw_autoscale.utils.time import now_ms, parse_iso_ms

logger = logging.getLogger(__name__)


class PrimaryElectionStrategyResult(str, Enum):
    SHOULD_CONTINUE = "should-continue"
    SHOULD_STOP = "should-stop"


def election_signature(vm: VirtualMachine) -> str:
    return f"{vm.scaling_group_name}:{vm.id}"


class PrimaryElectionStrategy(ABC):
    @abstractmethod
    def prepare(self, election: PrimaryElection, settings: FleetSettings) -> None: ...

    @abstractmethod
    async def apply(self) -> PrimaryElectionStrategyResult: ...

    @abstractmethod
    def result(self) -> PrimaryElection: ...

    @property
    @abstractmethod
    def applied(self) -> bool: ...


class PreferredGroupPrimaryElection(PrimaryElectionStrategy):
    """Only a vm of the preferred scaling group can become the primary.

    A candidate that is already in service (its health-check record is
    healthy) wins outright and the record is written as done. Otherwise the
    record stays pending until the candidate confirms it on a later healthy
    heartbeat, or until the election times out.
    """

    def __init__(self, platform: PlatformAdapter) -> None:
        self.platform = platform
        self._env: PrimaryElection | None = None
        self._res: PrimaryElection | None = None
        self._settings = FleetSettings()
        self._applied = False

    def prepare(self, election: PrimaryElection, settings: FleetSettings) -> None:
        self._env = election
        self._settings = settings
        self._res = replace(election, new_primary=None, new_primary_record=None, signature="")
        self._applied = False

    @property
    def applied(self) -> bool:
        return self._applied

    @property
    def env(self) -> PrimaryElection:
        if self._env is None:
            raise RuntimeError("prepare() must be called before applying the election strategy")
        return self._env

    def result(self) -> PrimaryElection:
        if self._res is None:
            raise RuntimeError("prepare() must be called before reading the election result")
        return self._res

    @property
    def preferred_scaling_group(self) -> str | None:
        return self.env.preferred_scaling_group or self._settings.primary_scaling_group_name

    async def apply(self) -> PrimaryElectionStrategyResult:
        name = type(self).__name__
        logger.info("applying %s strategy.", name)
        self._applied = True
        result = await self.run()
        logger.info("applied %s strategy, result: %s.", name, result.value)
        return result

    async def run(self) -> PrimaryElectionStrategyResult:
        candidate = self.env.candidate
        if candidate.scaling_group_name != self.preferred_scaling_group:
            logger.warning(
                "The candidate (id: %s) isn't in the preferred scaling group. "
                "It cannot run a primary election. Primary election not started.",
                candidate.id,
            )
            return PrimaryElectionStrategyResult.SHOULD_CONTINUE

        health = self.env.candidate_health_check
        now = now_ms()
        if health is not None and health.healthy:
            record = self.build_record(candidate, PrimaryRecordVoteState.DONE, now)
        else:
            record = self.build_record(
                candidate,
                PrimaryRecordVoteState.PENDING,
                now + self.env.election_duration * 1000,
            )
        return await self.commit(candidate, record)

    def build_record(
        self, vm: VirtualMachine, vote_state: PrimaryRecordVoteState, vote_end_time: int
    ) -> PrimaryRecord:
        signature = election_signature(vm)
        self.result().signature = signature
        return PrimaryRecord(
            id=signature,
            vm_id=vm.id,
            ip=vm.primary_private_ip_address,
            scaling_group_name=vm.scaling_group_name,
            virtual_network_id=vm.virtual_network_id,
            subnet_id=vm.subnet_id,
            vote_end_time=vote_end_time,
            vote_state=vote_state,
        )

    async def commit(
        self, vm: VirtualMachine, record: PrimaryRecord
    ) -> PrimaryElectionStrategyResult:
        res = self.result()
        try:
            await self.platform.create_primary_record(record, self.env.old_primary_record)
        except RecordConflictError as exc:
            logger.info(
                "Primary record (id: %s) was not created (%s). Checking for a primary "
                "elected by another invocation.",
                record.id,
                exc,
            )
            return await self._adopt_winner()
        except PersistenceError:
            logger.exception(
                "Error in running %s strategy: primary record (id: %s) could not be written.",
                type(self).__name__,
                record.id,
            )
            return PrimaryElectionStrategyResult.SHOULD_STOP

        logger.info(
            "Primary election completed. New primary is (id: %s), vote state: %s.",
            vm.id,
            record.vote_state.value,
        )
        res.new_primary = vm
        res.new_primary_record = record
        return PrimaryElectionStrategyResult.SHOULD_CONTINUE

    async def _adopt_winner(self) -> PrimaryElectionStrategyResult:
        res = self.result()
        winner_record = await self.platform.get_primary_record()
        winner = None
        if winner_record is not None and not _same_record(
            winner_record, self.env.old_primary_record
        ):
            winner = await self.platform.get_primary_vm()
        if winner is None:
            logger.error(
                "Error in running %s strategy: no new primary found after a conflicting "
                "primary record creation.",
                type(self).__name__,
            )
            return PrimaryElectionStrategyResult.SHOULD_STOP
        res.new_primary = winner
        res.new_primary_record = winner_record
        return PrimaryElectionStrategyResult.SHOULD_CONTINUE


def _same_record(record: PrimaryRecord, other: PrimaryRecord | None) -> bool:
    return (
        other is not None
        and record.id == other.id
        and record.vote_end_time == other.vote_end_time
    )


CHECKSUM_AGREEMENT_SCORE = 2
DEVICE_PRIMARY_SCORE = 3
SYNC_STATUS_SCORE = 1
LATEST_SYNC_SCORE = 1


def score_candidates(records: list[HealthCheckRecord]) -> dict[str, int]:
    """Score eligible members by what their devices report about themselves.

    A device that already acts as primary scores highest, then agreement of
    its configuration checksum with a strict plurality of at least two peers,
    then a successful last sync and the most recent sync time.
    """
    scores = {record.vm_id: 0 for record in records}

    checksums = Counter(record.device_checksum for record in records if record.device_checksum)
    agreed_checksum: str | None = None
    ranked = checksums.most_common(2)
    if ranked and ranked[0][1] >= 2 and (len(ranked) == 1 or ranked[0][1] > ranked[1][1]):
        agreed_checksum = ranked[0][0]

    sync_times = {record.vm_id: parse_iso_ms(record.device_sync_time) for record in records}
    known_times = [value for value in sync_times.values() if value is not None]
    latest_sync = max(known_times) if known_times else None

    for record in records:
        if record.device_is_primary:
            scores[record.vm_id] += DEVICE_PRIMARY_SCORE
        if agreed_checksum is not None and record.device_checksum == agreed_checksum:
            scores[record.vm_id] += CHECKSUM_AGREEMENT_SCORE
        if record.device_sync_status:
            scores[record.vm_id] += SYNC_STATUS_SCORE
        if latest_sync is not None and sync_times[record.vm_id] == latest_sync:
            scores[record.vm_id] += LATEST_SYNC_SCORE
    return scores


class WeightedScorePreferredGroupPrimaryElection(PreferredGroupPrimaryElection):
    """Elect the best-scoring healthy member of the preferred scaling group.

    The candidate only triggers the election; any eligible member may win. A
    tie for the top score elects nobody and leaves the decision to a later
    heartbeat.
    """

    async def run(self) -> PrimaryElectionStrategyResult:
        candidate = self.env.candidate
        preferred = self.preferred_scaling_group
        if candidate.scaling_group_name != preferred:
            logger.warning(
                "The candidate (id: %s) isn't in the preferred scaling group. "
                "It cannot run a primary election. Primary election not started.",
                candidate.id,
            )
            return PrimaryElectionStrategyResult.SHOULD_CONTINUE

        records = await self.platform.list_health_check_records()
        eligible = [
            record
            for record in records
            if record.scaling_group_name == preferred
            and record.healthy
            and record.sync_state == HealthCheckSyncState.IN_SYNC
        ]
        if not eligible:
            logger.warning("No eligible vm in scaling group %s. No primary elected.", preferred)
            return PrimaryElectionStrategyResult.SHOULD_CONTINUE

        scores = score_candidates(eligible)
        top_score = max(scores.values())
        leaders = [vm_id for vm_id, score in scores.items() if score == top_score]
        logger.info("Primary election scores: %s", scores)
        if len(leaders) > 1:
            logger.warning(
                "Vms %s tie with score %d. No primary elected in this round.",
                ", ".join(sorted(leaders)),
                top_score,
            )
            return PrimaryElectionStrategyResult.SHOULD_CONTINUE

        winner_id = leaders[0]
        if winner_id == candidate.id:
            winner: VirtualMachine | None = candidate
        else:
            winner = await self.platform.get_vm_by_id(winner_id, preferred)
        if winner is None:
            logger.warning(
                "Top scoring vm (id: %s) cannot be found. No primary elected.", winner_id
            )
            return PrimaryElectionStrategyResult.SHOULD_CONTINUE

        record = self.build_record(winner, PrimaryRecordVoteState.DONE, now_ms())
        return await self.commit(winner, record)
