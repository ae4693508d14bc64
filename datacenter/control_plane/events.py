"""
datacenter/control_plane/events.py
──────────────────────────────────
WorkloadEventBus: an explicitly owned channel for cloudlet notifications.

There is no module-level bus. Whoever creates a bus hands it to the parties
that need it (the controller publishes, the balancer subscribes), so every
dependency is visible at construction time.

Delivery is synchronous and in subscription order. publish() snapshots the
subscriber list under the bus lock and calls handlers outside it, so a
handler may itself subscribe or publish without deadlocking.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List

from datacenter.shared.models import WorkloadEvent

logger = logging.getLogger(__name__)

WorkloadEventHandler = Callable[[WorkloadEvent], None]


class WorkloadEventBus:
    """Publish/subscribe fan-out of WorkloadEvent to registered handlers."""

    def __init__(self) -> None:
        self._subscribers: List[WorkloadEventHandler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: WorkloadEventHandler) -> None:
        with self._lock:
            self._subscribers.append(handler)

    def unsubscribe(self, handler: WorkloadEventHandler) -> None:
        """Remove handler. Unknown handlers are ignored."""
        with self._lock:
            try:
                self._subscribers.remove(handler)
            except ValueError:
                pass

    def publish(self, event: WorkloadEvent) -> None:
        """
        Deliver event to every subscriber.

        A failing handler does not stop delivery to the rest; its exception
        is logged with traceback.
        """
        with self._lock:
            subscribers = list(self._subscribers)

        logger.debug(
            "publish: %s vm=%d → %d subscriber(s)",
            event.event_type.value, event.vm_id, len(subscribers),
        )
        for handler in subscribers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Subscriber %r failed on %s for vm %d",
                    handler, event.event_type.value, event.vm_id,
                )

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
