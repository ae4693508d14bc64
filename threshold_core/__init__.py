"""
threshold_core — threshold VM load balancer core.

Public API:
    ThresholdVmLoadBalancer — two-tier threshold placement over a VM pool
    VmLoadBalancer          — abstract placement policy
    LoadLedger              — thread-safe vm_id → active cloudlet count map

Usage:
    from threshold_core import ThresholdVmLoadBalancer

    balancer = ThresholdVmLoadBalancer(vm_states, events=bus)
    vm_id = balancer.pick_node()     # None when the pool is empty
"""

from threshold_core.base import VmLoadBalancer
from threshold_core.ledger import LoadLedger
from threshold_core.balancer import ThresholdVmLoadBalancer

__all__ = ["ThresholdVmLoadBalancer", "VmLoadBalancer", "LoadLedger"]
