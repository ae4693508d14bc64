"""
tests/test_datacenter_controller.py
────────────────────────────────────
Test suite for the controller and event bus around the balancer.

Test groups
────────────
Group 1: WorkloadEventBus        — fan-out, unsubscribe, failing subscribers
Group 2: Cloudlet lifecycle      — submit / assign / complete, VM state
Group 3: Ledger bookkeeping      — each placement counted once
Group 4: Metrics                 — numpy load summary, class histogram
"""

from __future__ import annotations

import random
from typing import List

import pytest

from datacenter.control_plane import DatacenterController, WorkloadEventBus
from datacenter.shared.models import (
    CloudletState,
    ThresholdConfig,
    VmState,
    WorkloadEvent,
    WorkloadEventType,
)


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def controller() -> DatacenterController:
    return DatacenterController(
        vm_ids=range(4),
        config=ThresholdConfig(t_under=3, t_upper=6),
        rng=random.Random(1234),
    )


def _event(vm_id: int, kind: WorkloadEventType) -> WorkloadEvent:
    return WorkloadEvent(event_type=kind, vm_id=vm_id)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 — WorkloadEventBus
# ─────────────────────────────────────────────────────────────────────────────

class TestWorkloadEventBus:
    def test_publish_reaches_every_subscriber_in_order(self) -> None:
        bus = WorkloadEventBus()
        seen: List[str] = []
        bus.subscribe(lambda e: seen.append("a"))
        bus.subscribe(lambda e: seen.append("b"))

        bus.publish(_event(1, WorkloadEventType.VM_FINISHED_CLOUDLET))
        assert seen == ["a", "b"]

    def test_unsubscribe_stops_delivery(self) -> None:
        bus = WorkloadEventBus()
        seen: List[WorkloadEvent] = []
        bus.subscribe(seen.append)
        bus.unsubscribe(seen.append)
        bus.unsubscribe(seen.append)

        bus.publish(_event(1, WorkloadEventType.VM_FINISHED_CLOUDLET))
        assert seen == []
        assert bus.subscriber_count == 0

    def test_failing_subscriber_does_not_block_others(self) -> None:
        bus = WorkloadEventBus()
        seen: List[WorkloadEvent] = []

        def broken(event: WorkloadEvent) -> None:
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        bus.publish(_event(2, WorkloadEventType.CLOUDLET_ALLOCATED_TO_VM))
        assert len(seen) == 1

    def test_buses_are_independent(self) -> None:
        a, b = WorkloadEventBus(), WorkloadEventBus()
        a.subscribe(lambda e: None)
        assert a.subscriber_count == 1
        assert b.subscriber_count == 0


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 — Cloudlet lifecycle
# ─────────────────────────────────────────────────────────────────────────────

class TestCloudletLifecycle:
    def test_submit_allocates_on_known_vm(self, controller: DatacenterController) -> None:
        result = controller.submit_cloudlet()
        assert result["status"] == "ALLOCATED"
        assert result["vm_id"] in controller.vm_states
        assert controller.vm_states[result["vm_id"]].state == VmState.BUSY

        record = controller.get_cloudlet(result["cloudlet_id"])
        assert record is not None
        assert record.state == CloudletState.RUNNING
        assert record.placed_by_balancer is True

    def test_submit_on_empty_pool_is_rejected(self) -> None:
        empty = DatacenterController(vm_ids=[])
        result = empty.submit_cloudlet()
        assert result["status"] == "REJECTED"
        assert result["vm_id"] is None
        assert empty.get_active_cloudlets() == []

    def test_assign_unknown_vm_is_rejected(self, controller: DatacenterController) -> None:
        result = controller.assign_cloudlet(99)
        assert result["status"] == "REJECTED"
        assert "99" in result["message"]

    def test_complete_releases_vm(self, controller: DatacenterController) -> None:
        result = controller.assign_cloudlet(2)
        done = controller.complete_cloudlet(result["cloudlet_id"])

        assert done["status"] == "SUCCESS"
        assert done["vm_id"] == 2
        assert controller.vm_states[2].state == VmState.AVAILABLE
        record = controller.get_cloudlet(result["cloudlet_id"])
        assert record.state == CloudletState.FINISHED
        assert record.finished_at is not None

    def test_vm_stays_busy_until_last_cloudlet_finishes(
        self, controller: DatacenterController
    ) -> None:
        first = controller.assign_cloudlet(1)
        controller.assign_cloudlet(1)
        controller.complete_cloudlet(first["cloudlet_id"])
        assert controller.vm_states[1].state == VmState.BUSY

    def test_complete_twice_is_an_error(self, controller: DatacenterController) -> None:
        result = controller.submit_cloudlet()
        controller.complete_cloudlet(result["cloudlet_id"])

        again = controller.complete_cloudlet(result["cloudlet_id"])
        assert again["status"] == "ERROR"
        assert "already finished" in again["message"]

    def test_complete_unknown_is_an_error(self, controller: DatacenterController) -> None:
        result = controller.complete_cloudlet("cloudlet-nope")
        assert result["status"] == "ERROR"
        assert "not found" in result["message"]


# ─────────────────────────────────────────────────────────────────────────────
# Group 3 — Ledger bookkeeping through the controller
# ─────────────────────────────────────────────────────────────────────────────

class TestLedgerBookkeeping:
    def test_assign_reaches_balancer_through_bus(
        self, controller: DatacenterController
    ) -> None:
        controller.assign_cloudlet(3)
        controller.assign_cloudlet(3)
        assert controller.balancer.load_of(3) == 2

    def test_submit_does_not_publish_allocated_event(
        self, controller: DatacenterController
    ) -> None:
        seen: List[WorkloadEvent] = []
        controller.events.subscribe(seen.append)

        controller.submit_cloudlet()
        assert seen == []

    def test_complete_publishes_finished_event(
        self, controller: DatacenterController
    ) -> None:
        seen: List[WorkloadEvent] = []
        controller.events.subscribe(seen.append)

        result = controller.assign_cloudlet(0)
        controller.complete_cloudlet(result["cloudlet_id"])

        kinds = [e.event_type for e in seen]
        assert kinds == [
            WorkloadEventType.CLOUDLET_ALLOCATED_TO_VM,
            WorkloadEventType.VM_FINISHED_CLOUDLET,
        ]
        assert seen[-1].cloudlet_id == result["cloudlet_id"]

    def test_assign_then_complete_returns_to_zero(
        self, controller: DatacenterController
    ) -> None:
        ids = [controller.assign_cloudlet(1)["cloudlet_id"] for _ in range(3)]
        for cloudlet_id in ids:
            controller.complete_cloudlet(cloudlet_id)
        assert controller.balancer.load_of(1) == 0

    def test_finish_below_t_under_requeues_vm(
        self, controller: DatacenterController
    ) -> None:
        ids = [controller.assign_cloudlet(0)["cloudlet_id"] for _ in range(4)]
        controller.complete_cloudlet(ids[0])
        controller.complete_cloudlet(ids[1])

        snap = controller.balancer.snapshot()
        assert snap.ledger[0] == 2
        assert snap.underloaded_queue[-1] == 0


# ─────────────────────────────────────────────────────────────────────────────
# Group 4 — Metrics
# ─────────────────────────────────────────────────────────────────────────────

class TestBalancingMetrics:
    def test_empty_cluster_metrics(self) -> None:
        metrics = DatacenterController(vm_ids=[]).get_balancing_metrics()
        assert metrics["active_cloudlets"] == 0
        assert metrics["mean_load"] == 0.0
        assert metrics["imbalance_ratio"] == 0.0
        assert metrics["vm_load"] == {}

    def test_metrics_reflect_ledger(self, controller: DatacenterController) -> None:
        for _ in range(4):
            controller.assign_cloudlet(0)

        metrics = controller.get_balancing_metrics()
        assert metrics["active_cloudlets"] == 4
        assert metrics["vm_load"] == {0: 4, 1: 0, 2: 0, 3: 0}
        assert metrics["mean_load"] == 1.0
        assert metrics["max_load"] == 4.0
        assert metrics["imbalance_ratio"] == 4.0
        assert metrics["load_classes"] == {
            "underloaded": 3,
            "medium": 1,
            "overloaded": 0,
        }

    def test_metrics_count_placement_paths(self, controller: DatacenterController) -> None:
        for _ in range(10):
            controller.submit_cloudlet()

        metrics = controller.get_balancing_metrics()
        assert sum(metrics["placement_paths"].values()) == 10
        assert metrics["active_cloudlets"] == 10
