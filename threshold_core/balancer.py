"""
threshold_core/balancer.py
──────────────────────────
ThresholdVmLoadBalancer: two-tier threshold placement over a fixed VM pool.

The threshold policy
─────────────────────
Every VM is in one of three load classes, decided by its active cloudlet
count and two fixed thresholds:

    load <  t_under            → UNDERLOADED
    t_under ≤ load ≤ t_upper   → MEDIUM
    load >  t_upper            → OVERLOADED

Initially every VM is assumed underloaded. A cloudlet is placed on a
randomly sampled VM unless that VM is overloaded; then a remote underloaded
VM is used instead, and if none exists the cloudlet goes to the sampled VM
anyway. (McEntire, O'Reilly & Larson, Distributed Computing: Concepts and
Implementations, 1984.)

Two selection tiers
────────────────────
1. Random sample (O(1)):
     Draw one VM uniformly from the whole pool. Across many placements this
     spreads load statistically without a sorted-by-load structure.
     If the sampled VM is not overloaded, it wins.

2. Underloaded queue (O(1) amortised):
     A deque of VMs believed to be underloaded. Consulted only when the
     sample lands on an overloaded VM. The front candidate is taken, its
     count bumped, and it goes back to the tail while it stays under t_under.

If tier 2 has nothing to offer, the sampled VM is used anyway (forced
placement) and recorded in the overloaded queue. That queue is a passive
record: nothing in the decision logic reads it.

The "no entry ⇒ 1" default
───────────────────────────
A VM with no ledger entry is treated as having a count of 1, not 0, when a
placement or a work-started notification updates it. Consequences:
  • the first placement on a fresh VM stores 1, and the work-started
    notification that follows raises it to 2;
  • a finish notification for a VM with no entry does not store anything;
    it pushes the VM to the FRONT of the underloaded queue instead.
This is reproduced exactly, including the front/back asymmetry between the
"no entry" finish path and every other enqueue.

Thread safety
──────────────
One RLock owned by the balancer covers the ledger and both queues for every
public operation. It is reentrant because pick_node() runs the work-started
handler while still holding it. The ledger's own lock is always taken second.
"""

from __future__ import annotations

import logging
import random
import threading
from collections import deque
from typing import TYPE_CHECKING, Deque, Dict, Mapping, Optional, Tuple

from datacenter.shared.models import (
    BalancerSnapshot,
    LoadClass,
    PlacementPath,
    ThresholdConfig,
    VirtualMachine,
    WorkloadEvent,
    WorkloadEventType,
)
from threshold_core.base import VmLoadBalancer
from threshold_core.ledger import LoadLedger

if TYPE_CHECKING:
    from datacenter.control_plane.events import WorkloadEventBus

logger = logging.getLogger(__name__)

ABSENT_COUNT_DEFAULT: int = 1
"""Count assumed for a VM with no ledger entry when it is being loaded."""


class ThresholdVmLoadBalancer(VmLoadBalancer):
    """
    Threshold load balancer over the VM pool captured at construction.

    Public API:
        pick_node()               → Optional[int]   placement query
        on_work_started(vm_id)    → None            notification
        on_work_finished(vm_id)   → None            notification
        handle_event(event)       → None            bus adapter for the two above
        classify(vm_id)           → LoadClass
        snapshot()                → BalancerSnapshot

    Attributes:
        config  : ThresholdConfig   — t_under / t_upper
        vm_ids  : Tuple[int, ...]   — the working set, fixed at construction
    """

    def __init__(
        self,
        vm_states: Mapping[int, VirtualMachine],
        events: Optional["WorkloadEventBus"] = None,
        config: Optional[ThresholdConfig] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """
        Capture the VM pool and, optionally, subscribe to a notification source.

        Args:
            vm_states: Controller-owned registry, vm_id → VirtualMachine.
                       Only the keys are used, and only once.
            events:    Anything with subscribe(handler). When given, the
                       balancer registers handle_event() on it.
            config:    Thresholds. Defaults to t_under=50, t_upper=150.
            rng:       Random source for sampling. Pass a seeded
                       random.Random for reproducible placement.
        """
        super().__init__()
        self.config = config or ThresholdConfig()
        self.vm_ids: Tuple[int, ...] = tuple(vm_states.keys())
        self._members = frozenset(self.vm_ids)
        self._rng = rng or random.Random()
        self._lock = threading.RLock()

        self._ledger = LoadLedger()
        self._underloaded: Deque[int] = deque()
        self._overloaded: Deque[int] = deque()
        self._path_counts: Dict[PlacementPath, int] = {p: 0 for p in PlacementPath}

        # Everyone starts underloaded. push() semantics: the last id
        # iterated ends up at the front.
        for vm_id in self.vm_ids:
            self._underloaded.appendleft(vm_id)

        if events is not None:
            events.subscribe(self.handle_event)

        logger.info(
            "ThresholdVmLoadBalancer initialised with %d VMs (t_under=%d, t_upper=%d).",
            len(self.vm_ids), self.config.t_under, self.config.t_upper,
        )

    # ── Placement query ───────────────────────────────────────────────────────

    def pick_node(self) -> Optional[int]:
        """
        Choose the VM for the next cloudlet.

        Algorithm:
            1. Sample rn uniformly from the pool.
            2. Take rn's count (no entry → 1).
            3. rn not overloaded                  → rn            (SAMPLED)
               else a live underloaded candidate  → candidate     (UNDERLOADED)
               else                               → rn, recorded  (FORCED)
            4. Store the selected VM's count, then run the work-started
               handler for it.

        Returns:
            The selected vm_id, or None when the pool is empty.
        """
        if not self.vm_ids:
            logger.debug("pick_node: empty VM pool, nothing to place on.")
            return None

        t_upper = self.config.t_upper
        with self._lock:
            rn = self._rng.choice(self.vm_ids)
            prior = self._ledger.remove(rn)
            if prior is None:
                prior = ABSENT_COUNT_DEFAULT

            if not prior > t_upper:
                vm_id = rn
                path = PlacementPath.SAMPLED
                self._ledger.set(rn, prior + 1 if prior > 1 else prior)
            else:
                # rn stays overloaded whatever we pick; put its count back
                # before the queue is consulted.
                self._ledger.set(rn, prior)
                candidate = self._find_underloaded_node() if self._underloaded else None
                if candidate is not None:
                    vm_id = candidate
                    path = PlacementPath.UNDERLOADED
                else:
                    vm_id = rn
                    path = PlacementPath.FORCED
                    self._overloaded.append(rn)
                    logger.warning(
                        "pick_node: vm %d overloaded (count=%d > t_upper=%d) and no "
                        "underloaded VM available; forcing placement.",
                        rn, prior, t_upper,
                    )

            self._path_counts[path] += 1
            self.on_work_started(vm_id)
            self._record_allocation(vm_id)

        logger.debug(
            "pick_node: sampled vm %d (prior=%d) → vm %d via %s",
            rn, prior, vm_id, path.value,
        )
        return vm_id

    def _find_underloaded_node(self) -> Optional[int]:
        """
        Take the front candidate from the underloaded queue and load it.

        A popped VM whose current count already exceeds t_upper got there
        through work-started notifications while it was queued. It is
        discarded and the next candidate is tried.

        The surviving candidate's count becomes 1 (no entry) or count + 1.
        It returns to the tail of the queue while that is below t_under.

        Returns:
            The candidate vm_id, or None if the queue drained.

        Caller must hold self._lock.
        """
        while self._underloaded:
            vm_id = self._underloaded.popleft()
            count = self._ledger.remove(vm_id)
            if count is not None and count > self.config.t_upper:
                self._ledger.set(vm_id, count)
                logger.debug(
                    "_find_underloaded_node: dropping stale candidate vm %d (count=%d)",
                    vm_id, count,
                )
                continue

            count = ABSENT_COUNT_DEFAULT if count is None else count + 1
            if count < self.config.t_under:
                self._underloaded.append(vm_id)
            self._ledger.set(vm_id, count)
            return vm_id
        return None

    # ── Notifications ─────────────────────────────────────────────────────────

    def on_work_started(self, vm_id: int) -> None:
        """A cloudlet started on vm_id: count becomes 1 (no entry) or count + 1."""
        if not self._is_tracked(vm_id, "on_work_started"):
            return
        with self._lock:
            count = self._ledger.remove(vm_id)
            count = ABSENT_COUNT_DEFAULT if count is None else count + 1
            self._ledger.set(vm_id, count)
        logger.debug("on_work_started: vm %d count=%d", vm_id, count)

    def on_work_finished(self, vm_id: int) -> None:
        """
        A cloudlet finished on vm_id.

        With an entry: decrement (never below 0), store, and append vm_id
        to the back of the underloaded queue if it is now below t_under.

        Without an entry: push vm_id to the FRONT of the underloaded queue.
        Nothing is stored.

        Neither path checks whether vm_id is already queued. Every finish
        below t_under adds another entry, so the queue holds duplicates and
        only shrinks as _find_underloaded_node() pops and drops candidates.
        """
        if not self._is_tracked(vm_id, "on_work_finished"):
            return
        with self._lock:
            count = self._ledger.remove(vm_id)
            if count is None:
                self._underloaded.appendleft(vm_id)
                logger.debug("on_work_finished: vm %d had no entry, queued at front", vm_id)
                return

            count = max(count - 1, 0)
            self._ledger.set(vm_id, count)
            if count < self.config.t_under:
                self._underloaded.append(vm_id)
        logger.debug("on_work_finished: vm %d count=%d", vm_id, count)

    def handle_event(self, event: WorkloadEvent) -> None:
        """Route a bus event to the matching notification handler."""
        if event.event_type == WorkloadEventType.CLOUDLET_ALLOCATED_TO_VM:
            self.on_work_started(event.vm_id)
        elif event.event_type == WorkloadEventType.VM_FINISHED_CLOUDLET:
            self.on_work_finished(event.vm_id)

    def _is_tracked(self, vm_id: int, caller: str) -> bool:
        if vm_id in self._members:
            return True
        logger.warning("%s: ignoring event for untracked vm %s", caller, vm_id)
        return False

    # ── Inspection ────────────────────────────────────────────────────────────

    def load_of(self, vm_id: int) -> int:
        """
        Recorded active count for vm_id; 0 when there is no entry.

        Taken under the balancer lock: pick_node() and the handlers clear an
        entry before storing its new value, and an unlocked read in between
        would see no entry.
        """
        with self._lock:
            count = self._ledger.get(vm_id)
        return 0 if count is None else count

    def classify(self, vm_id: int) -> LoadClass:
        """LoadClass of vm_id from its recorded count (no entry → 0)."""
        return self.config.classify(self.load_of(vm_id))

    def snapshot(self) -> BalancerSnapshot:
        """Consistent copy of ledger, queues, classes and path counters."""
        with self._lock:
            ledger = self._ledger.snapshot()
            return BalancerSnapshot(
                ledger=ledger,
                underloaded_queue=list(self._underloaded),
                overloaded_queue=list(self._overloaded),
                load_classes={
                    vm_id: self.config.classify(ledger.get(vm_id, 0))
                    for vm_id in self.vm_ids
                },
                path_counts=dict(self._path_counts),
                config=self.config,
            )

    def __repr__(self) -> str:
        return (
            f"ThresholdVmLoadBalancer(vms={len(self.vm_ids)}, "
            f"t_under={self.config.t_under}, t_upper={self.config.t_upper}, "
            f"underloaded={len(self._underloaded)}, overloaded={len(self._overloaded)})"
        )
