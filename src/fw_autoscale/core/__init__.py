"""Heartbeat, election and orchestration logic."""

from fw_autoscale.core.autoscale import Autoscale, AutoscaleEnvironment
from fw_autoscale.core.election import (
    PreferredGroupPrimaryElection,
    PrimaryElectionStrategy,
    PrimaryElectionStrategyResult,
    WeightedScorePreferredGroupPrimaryElection,
)
from fw_autoscale.core.heartbeat import (
    ConstantIntervalHeartbeatSyncStrategy,
    HeartbeatSyncStrategy,
)
from fw_autoscale.core.vm_strategies import (
    NoopRoutingEgressTrafficStrategy,
    NoopTaggingVmStrategy,
    PlatformRoutingEgressTrafficStrategy,
    PlatformTaggingVmStrategy,
    RoutingEgressTrafficStrategy,
    TaggingVmStrategy,
)

__all__ = [
    "Autoscale",
    "AutoscaleEnvironment",
    "ConstantIntervalHeartbeatSyncStrategy",
    "HeartbeatSyncStrategy",
    "NoopRoutingEgressTrafficStrategy",
    "NoopTaggingVmStrategy",
    "PlatformRoutingEgressTrafficStrategy",
    "PlatformTaggingVmStrategy",
    "PreferredGroupPrimaryElection",
    "PrimaryElectionStrategy",
    "PrimaryElectionStrategyResult",
    "RoutingEgressTrafficStrategy",
    "TaggingVmStrategy",
    "WeightedScorePreferredGroupPrimaryElection",
]
