"""
datacenter/control_plane — the cloudlet lifecycle around the balancer.

Public API:
    DatacenterController  — VM registry, placement, completion, metrics
    WorkloadEventBus      — explicitly owned notification channel
    PlacementFailedError  — no VM to place on
    UnknownVmError        — VM id not in the registry
"""

from datacenter.control_plane.events import WorkloadEventBus
from datacenter.control_plane.controller import (
    DatacenterController,
    PlacementFailedError,
    UnknownVmError,
)

__all__ = [
    "DatacenterController",
    "WorkloadEventBus",
    "PlacementFailedError",
    "UnknownVmError",
]
