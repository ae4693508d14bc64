"""
datacenter/control_plane/controller.py
──────────────────────────────────────
DatacenterController: the VM registry and the cloudlet lifecycle around the
threshold balancer.

What the controller owns
─────────────────────────
  - vm_states       : Dict[int, VirtualMachine]   — the authoritative registry
  - events          : WorkloadEventBus            — notifications it publishes
  - balancer        : ThresholdVmLoadBalancer     — subscribed to `events`
  - active cloudlets, and a bounded history of finished ones

Who tells the balancer what
────────────────────────────
  submit_cloudlet()    → balancer.pick_node(). The balancer records the work
                         start itself, so NO allocated event is published.
  assign_cloudlet(vm)  → placement outside the balancer. Publishes
                         CLOUDLET_ALLOCATED_TO_VM so the ledger catches up.
  complete_cloudlet()  → publishes VM_FINISHED_CLOUDLET.

Publishing an allocated event for a pick_node() placement would count the
same cloudlet twice.

Thread safety
──────────────
The controller's own maps are guarded by one lock. Events are published after
that lock is released; the balancer serialises itself.
"""

from __future__ import annotations

import logging
import random
import threading
import uuid
from collections import deque
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional

import numpy as np

from datacenter.shared.models import (
    CloudletExecution,
    CloudletState,
    LoadClass,
    ThresholdConfig,
    VirtualMachine,
    VmState,
    WorkloadEvent,
    WorkloadEventType,
)
from datacenter.control_plane.events import WorkloadEventBus
from threshold_core import ThresholdVmLoadBalancer

logger = logging.getLogger(__name__)

COMPLETED_HISTORY_SIZE: int = 100
"""Finished cloudlets kept for get_cloudlet() lookups."""


class PlacementFailedError(Exception):
    """
    Raised inside the controller when the balancer has no VM to offer.

    Only happens with an empty VM pool. Caught by submit_cloudlet() and
    reported as REJECTED.
    """
    pass


class UnknownVmError(Exception):
    """Raised inside the controller when a caller names a VM not in the registry."""

    def __init__(self, vm_id: int) -> None:
        self.vm_id = vm_id
        super().__init__(f"VM {vm_id} is not in the registry")


class DatacenterController:
    """
    Cloudlet lifecycle around a ThresholdVmLoadBalancer.

    Public API:
        submit_cloudlet()               → Dict   place via the balancer
        assign_cloudlet(vm_id)          → Dict   place on an explicit VM
        complete_cloudlet(cloudlet_id)  → Dict
        get_cloudlet(cloudlet_id)       → Optional[CloudletExecution]
        get_active_cloudlets()          → List[CloudletExecution]
        get_balancing_metrics()         → Dict
    """

    def __init__(
        self,
        vm_ids: Iterable[int],
        config: Optional[ThresholdConfig] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.vm_states: Dict[int, VirtualMachine] = {
            vm_id: VirtualMachine(vm_id=vm_id) for vm_id in vm_ids
        }
        self.events = WorkloadEventBus()
        self.balancer = ThresholdVmLoadBalancer(
            self.vm_states, events=self.events, config=config, rng=rng,
        )

        self.active_cloudlets: Dict[str, CloudletExecution] = {}
        self.completed_cloudlets: Deque[CloudletExecution] = deque(
            maxlen=COMPLETED_HISTORY_SIZE
        )
        self._running_per_vm: Dict[int, int] = {vm_id: 0 for vm_id in self.vm_states}
        self._lock = threading.Lock()

        logger.info("DatacenterController initialised with %d VMs.", len(self.vm_states))

    # ── Placement ─────────────────────────────────────────────────────────────

    def submit_cloudlet(self) -> Dict[str, object]:
        """
        Place a new cloudlet wherever the balancer says.

        Returns:
            {"status": "ALLOCATED"|"REJECTED"|"ERROR", "cloudlet_id", "vm_id", "message"}
        """
        cloudlet_id = f"cloudlet-{uuid.uuid4().hex[:8]}"
        try:
            vm_id = self.balancer.pick_node()
            if vm_id is None:
                raise PlacementFailedError(
                    f"Cloudlet {cloudlet_id} could not be placed: no VM available."
                )
            self._start(cloudlet_id, vm_id, placed_by_balancer=True)

            logger.info("Cloudlet %s allocated → vm %d", cloudlet_id, vm_id)
            return {
                "status": "ALLOCATED",
                "cloudlet_id": cloudlet_id,
                "vm_id": vm_id,
                "message": f"Cloudlet placed on vm {vm_id} by threshold balancer",
            }

        except PlacementFailedError as e:
            return {
                "status": "REJECTED",
                "cloudlet_id": cloudlet_id,
                "vm_id": None,
                "message": str(e),
            }
        except Exception as e:
            logger.exception("Unexpected error in submit_cloudlet for %s", cloudlet_id)
            return {
                "status": "ERROR",
                "cloudlet_id": cloudlet_id,
                "vm_id": None,
                "message": f"Unexpected error: {e.__class__.__name__}: {e}",
            }

    def assign_cloudlet(self, vm_id: int) -> Dict[str, object]:
        """
        Place a new cloudlet on vm_id without asking the balancer.

        The balancer learns about it through a CLOUDLET_ALLOCATED_TO_VM event.
        """
        cloudlet_id = f"cloudlet-{uuid.uuid4().hex[:8]}"
        try:
            if vm_id not in self.vm_states:
                raise UnknownVmError(vm_id)
            self._start(cloudlet_id, vm_id, placed_by_balancer=False)
        except UnknownVmError as e:
            return {
                "status": "REJECTED",
                "cloudlet_id": cloudlet_id,
                "vm_id": None,
                "message": str(e),
            }

        self.events.publish(WorkloadEvent(
            event_type=WorkloadEventType.CLOUDLET_ALLOCATED_TO_VM,
            vm_id=vm_id,
            cloudlet_id=cloudlet_id,
        ))
        logger.info("Cloudlet %s pinned → vm %d", cloudlet_id, vm_id)
        return {
            "status": "ALLOCATED",
            "cloudlet_id": cloudlet_id,
            "vm_id": vm_id,
            "message": f"Cloudlet pinned to vm {vm_id}",
        }

    def complete_cloudlet(self, cloudlet_id: str) -> Dict[str, object]:
        """
        Mark a running cloudlet finished and notify subscribers.

        Returns:
            {"status": "SUCCESS"|"ERROR", ...}
        """
        with self._lock:
            execution = self.active_cloudlets.pop(cloudlet_id, None)
            if execution is None:
                for done in self.completed_cloudlets:
                    if done.cloudlet_id == cloudlet_id:
                        return {
                            "status": "ERROR",
                            "message": f"Cloudlet {cloudlet_id} already finished at {done.finished_at}",
                        }
                return {"status": "ERROR", "message": f"Cloudlet {cloudlet_id} not found"}

            execution.state = CloudletState.FINISHED
            execution.finished_at = datetime.utcnow()
            self.completed_cloudlets.append(execution)

            vm_id = execution.vm_id
            self._running_per_vm[vm_id] = max(0, self._running_per_vm[vm_id] - 1)
            if self._running_per_vm[vm_id] == 0:
                self.vm_states[vm_id].state = VmState.AVAILABLE

        self.events.publish(WorkloadEvent(
            event_type=WorkloadEventType.VM_FINISHED_CLOUDLET,
            vm_id=vm_id,
            cloudlet_id=cloudlet_id,
        ))
        logger.info("Cloudlet %s finished on vm %d", cloudlet_id, vm_id)
        return {
            "status": "SUCCESS",
            "cloudlet_id": cloudlet_id,
            "vm_id": vm_id,
            "message": f"Cloudlet finished on vm {vm_id}",
        }

    # ── Read-only queries ─────────────────────────────────────────────────────

    def get_cloudlet(self, cloudlet_id: str) -> Optional[CloudletExecution]:
        """Return the cloudlet record (active or finished). None if not found."""
        with self._lock:
            if cloudlet_id in self.active_cloudlets:
                return self.active_cloudlets[cloudlet_id]
            for done in self.completed_cloudlets:
                if done.cloudlet_id == cloudlet_id:
                    return done
        return None

    def get_active_cloudlets(self) -> List[CloudletExecution]:
        with self._lock:
            return list(self.active_cloudlets.values())

    def get_balancing_metrics(self) -> dict:
        """
        Summarise how evenly load is spread.

        Metrics:
            active_cloudlets:  Count of running cloudlets.
            completed_cloudlets: Count of finished cloudlets in history.
            vm_load:           vm_id → balancer ledger count (0 if no entry).
            load_classes:      LoadClass value → number of VMs in it.
            mean_load / std_load / max_load: over vm_load.
            imbalance_ratio:   max_load / mean_load (1.0 = perfectly even,
                               0.0 when there is no load at all).
            underloaded_queue_len / overloaded_queue_len
            placement_paths:   selection tier → placements it produced.
        """
        snapshot = self.balancer.snapshot()
        vm_ids = list(self.balancer.vm_ids)
        loads = np.array(
            [snapshot.ledger.get(vm_id, 0) for vm_id in vm_ids], dtype=np.float64
        )

        if loads.size:
            mean_load = float(loads.mean())
            std_load = float(loads.std())
            max_load = float(loads.max())
        else:
            mean_load = std_load = max_load = 0.0
        imbalance = max_load / mean_load if mean_load > 0 else 0.0

        class_counts = {lc.value: 0 for lc in LoadClass}
        for load_class in snapshot.load_classes.values():
            class_counts[load_class.value] += 1

        with self._lock:
            active = len(self.active_cloudlets)
            completed = len(self.completed_cloudlets)

        return {
            "active_cloudlets": active,
            "completed_cloudlets": completed,
            "vm_load": {vm_id: int(load) for vm_id, load in zip(vm_ids, loads)},
            "load_classes": class_counts,
            "mean_load": round(mean_load, 2),
            "std_load": round(std_load, 2),
            "max_load": round(max_load, 2),
            "imbalance_ratio": round(imbalance, 3),
            "underloaded_queue_len": len(snapshot.underloaded_queue),
            "overloaded_queue_len": len(snapshot.overloaded_queue),
            "placement_paths": {
                path.value: count for path, count in snapshot.path_counts.items()
            },
        }

    # ── Private helpers ───────────────────────────────────────────────────────

    def _start(self, cloudlet_id: str, vm_id: int, placed_by_balancer: bool) -> None:
        with self._lock:
            self.active_cloudlets[cloudlet_id] = CloudletExecution(
                cloudlet_id=cloudlet_id,
                vm_id=vm_id,
                placed_by_balancer=placed_by_balancer,
            )
            self._running_per_vm[vm_id] += 1
            self.vm_states[vm_id].state = VmState.BUSY
