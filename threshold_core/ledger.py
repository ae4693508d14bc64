"""
threshold_core/ledger.py
────────────────────────
The load ledger: the balancer's single source of truth for VM load.

What is in the ledger?
──────────────────────
One integer per VM: the number of cloudlets currently running on it.
Nothing else. Classification (underloaded / medium / overloaded) is always
derived from this count at the moment it is needed, never cached.

Entries are created lazily. A VM that has never been referenced has no entry,
and the balancer decides what "no entry" means (see balancer.py). The ledger
itself never invents a default.

The update idiom
────────────────
Every read-modify-write in the balancer follows the same three steps:

    count = ledger.remove(vm_id)     # take and clear, atomically
    count = f(count)                 # compute the new value
    ledger.set(vm_id, count)         # store it back

remove() and set() are each atomic under the ledger's own lock. The whole
three-step sequence is atomic only when the caller holds an outer lock, which
the balancer always does. Lock order is therefore fixed:

    balancer lock  →  ledger lock

The ledger never calls out while holding its lock, so the order cannot invert.

Thread safety
─────────────
Safe for concurrent use on its own. A plain threading.Lock (not RLock) is
enough because no ledger method calls another ledger method under the lock.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional


class LoadLedger:
    """
    A thread-safe vm_id → active cloudlet count map.

    Used by:
        ThresholdVmLoadBalancer → every placement and every notification.
        Tests                   → snapshot() to inspect state.
    """

    def __init__(self) -> None:
        self._counts: Dict[int, int] = {}
        self._lock = threading.Lock()

    # ── Core operations ────────────────────────────────────────────────────────

    def get(self, vm_id: int) -> Optional[int]:
        """Return the recorded count for vm_id, or None if there is no entry."""
        with self._lock:
            return self._counts.get(vm_id)

    def set(self, vm_id: int, count: int) -> None:
        """
        Record count as the active cloudlet count of vm_id.

        Raises:
            ValueError: if count is negative. A negative number of running
                        cloudlets means a caller double-counted a finish.
        """
        if count < 0:
            raise ValueError(
                f"LoadLedger count must be ≥ 0, got {count} for vm {vm_id}"
            )
        with self._lock:
            self._counts[vm_id] = count

    def remove(self, vm_id: int) -> Optional[int]:
        """
        Atomically read and clear the entry for vm_id.

        Returns:
            The count that was recorded, or None if there was no entry.
            After the call the ledger has no entry for vm_id.
        """
        with self._lock:
            return self._counts.pop(vm_id, None)

    # ── Inspection & testing ───────────────────────────────────────────────────

    def snapshot(self) -> Dict[int, int]:
        """Return a copy of every recorded entry."""
        with self._lock:
            return dict(self._counts)

    def __contains__(self, vm_id: object) -> bool:
        with self._lock:
            return vm_id in self._counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._counts)

    def __repr__(self) -> str:
        with self._lock:
            total = sum(self._counts.values())
            return f"LoadLedger(entries={len(self._counts)}, total_active={total})"
