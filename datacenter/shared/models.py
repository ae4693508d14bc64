"""
datacenter/shared/models.py
───────────────────────────
Every data structure shared between the balancer core and the controller.

Design philosophy
-----------------
The balancer itself only ever needs integers: a VM id and a count of
cloudlets in flight on that VM. Everything in this file exists so that the
*edges* of the system (construction, events, inspection) are typed and
validated once, at the boundary, instead of being re-checked on the hot path.

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class VmState(str, Enum):
    """
    Coarse lifecycle flag of a virtual machine, owned by the controller.

    AVAILABLE → No cloudlet currently running.
    BUSY      → At least one cloudlet running.

    The balancer never reads this. It classifies load from its own ledger,
    which counts cloudlets rather than flipping a single bit.
    """
    AVAILABLE = "available"
    BUSY = "busy"


class LoadClass(str, Enum):
    """
    Threshold classification of a VM's active cloudlet count.

    UNDERLOADED → load <  t_under
    MEDIUM      → t_under ≤ load ≤ t_upper
    OVERLOADED  → load >  t_upper
    """
    UNDERLOADED = "underloaded"
    MEDIUM = "medium"
    OVERLOADED = "overloaded"


class WorkloadEventType(str, Enum):
    """
    The two notifications the controller emits about cloudlets.

    CLOUDLET_ALLOCATED_TO_VM → a cloudlet started on a VM.
    VM_FINISHED_CLOUDLET     → a VM finished one cloudlet.
    """
    CLOUDLET_ALLOCATED_TO_VM = "cloudlet-allocated-to-vm"
    VM_FINISHED_CLOUDLET = "vm-finished-cloudlet"


class CloudletState(str, Enum):
    """Lifecycle of a cloudlet as tracked by the controller."""
    RUNNING = "running"
    FINISHED = "finished"


class PlacementPath(str, Enum):
    """
    Which tier of the two-tier selection produced a placement.

    SAMPLED     → the uniformly sampled VM was not overloaded.
    UNDERLOADED → the sampled VM was overloaded; the underloaded queue
                  supplied a replacement.
    FORCED      → the sampled VM was overloaded and no candidate remained;
                  the sampled VM was used anyway.
    """
    SAMPLED = "sampled"
    UNDERLOADED = "underloaded"
    FORCED = "forced"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: CONFIGURATION
# ─────────────────────────────────────────────────────────────────────────────

DEFAULT_T_UNDER: int = 50
"""Default upper bound (exclusive) of the UNDERLOADED class."""

DEFAULT_T_UPPER: int = 150
"""Default lower bound (exclusive) of the OVERLOADED class."""


class ThresholdConfig(BaseModel):
    """
    The two load thresholds of the balancer.

    No ordering between t_under and t_upper is enforced. A configuration with
    t_upper < t_under is legal: VMs then move straight from UNDERLOADED to
    OVERLOADED and the MEDIUM band is empty.
    """
    t_under: int = Field(
        DEFAULT_T_UNDER, ge=0,
        description="load < t_under → underloaded"
    )
    t_upper: int = Field(
        DEFAULT_T_UPPER, ge=0,
        description="load > t_upper → overloaded"
    )

    def classify(self, load: int) -> LoadClass:
        """Map an active cloudlet count to its LoadClass."""
        if load > self.t_upper:
            return LoadClass.OVERLOADED
        if load < self.t_under:
            return LoadClass.UNDERLOADED
        return LoadClass.MEDIUM


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: VIRTUAL MACHINES & EVENTS
# ─────────────────────────────────────────────────────────────────────────────

class VirtualMachine(BaseModel):
    """
    A VM in the controller's registry.

    Only the id matters to the balancer. The registry is keyed by vm_id and
    handed to the balancer at construction; the balancer captures the key set
    once and never observes later additions.
    """
    vm_id: int = Field(..., ge=0, description="Unique VM identifier")
    state: VmState = Field(VmState.AVAILABLE, description="Controller-side state")


class WorkloadEvent(BaseModel):
    """
    A single notification about cloudlet activity on a VM.

    The balancer reads only event_type and vm_id. cloudlet_id and timestamp
    are carried for subscribers that keep their own history.
    """
    event_type: WorkloadEventType
    vm_id: int = Field(..., description="VM the cloudlet ran on")
    cloudlet_id: Optional[str] = Field(None, description="Cloudlet that triggered the event")
    timestamp: datetime = Field(default_factory=datetime.utcnow)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: CLOUDLET TRACKING
# ─────────────────────────────────────────────────────────────────────────────

class CloudletExecution(BaseModel):
    """A cloudlet placed by the controller, live or finished."""
    cloudlet_id: str
    vm_id: int
    state: CloudletState = CloudletState.RUNNING
    placed_by_balancer: bool = Field(
        True,
        description="False when the caller pinned the cloudlet to a VM explicitly"
    )
    submitted_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: INSPECTION
# ─────────────────────────────────────────────────────────────────────────────

class BalancerSnapshot(BaseModel):
    """
    A consistent, read-only copy of the balancer's internal state.

    Fields:
        ledger            → vm_id → active cloudlet count (recorded VMs only).
        underloaded_queue → candidate order, front first. May hold duplicates.
        overloaded_queue  → VMs forced into placement while overloaded,
                            oldest first.
        load_classes      → vm_id → LoadClass for every VM in the working set.
        path_counts       → how many placements each selection tier produced.
    """
    ledger: Dict[int, int] = Field(default_factory=dict)
    underloaded_queue: List[int] = Field(default_factory=list)
    overloaded_queue: List[int] = Field(default_factory=list)
    load_classes: Dict[int, LoadClass] = Field(default_factory=dict)
    path_counts: Dict[PlacementPath, int] = Field(default_factory=dict)
    config: ThresholdConfig = Field(default_factory=ThresholdConfig)
