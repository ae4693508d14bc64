"""
threshold_core/base.py
──────────────────────
VmLoadBalancer: the contract every VM placement policy fulfils.

A placement policy answers one question, "which VM gets the next cloudlet?",
through pick_node(). The base class adds the one piece of bookkeeping every
policy shares: a lifetime tally of how many placements each VM received.
That tally is statistics only. It never feeds back into a decision.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional


class VmLoadBalancer(ABC):
    """
    Abstract VM placement policy.

    Subclasses implement pick_node() and call _record_allocation() once per
    placement they hand out.
    """

    def __init__(self) -> None:
        self._allocation_totals: Dict[int, int] = {}
        self._totals_lock = threading.Lock()

    @abstractmethod
    def pick_node(self) -> Optional[int]:
        """Return the VM id for the next cloudlet, or None if there is no VM."""

    def _record_allocation(self, vm_id: int) -> None:
        with self._totals_lock:
            self._allocation_totals[vm_id] = self._allocation_totals.get(vm_id, 0) + 1

    def allocation_totals(self) -> Dict[int, int]:
        """vm_id → number of placements handed out since construction."""
        with self._totals_lock:
            return dict(self._allocation_totals)
