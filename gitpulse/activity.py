"""Activity bus: live, advisory progress events for observers.

Publishers (pipeline, dispatcher, tools) call ``emit``; observers (CLI, the
run record) ``subscribe``. Delivery is synchronous to whoever is subscribed
at emission time. Nothing here feeds back into control flow.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from .models import ActivityItem, ActivityType

logger = logging.getLogger(__name__)

Listener = Callable[[ActivityItem], None]


def _now_ms() -> float:
    return time.time() * 1000


class ActivityBus:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._counter = 0
        self._last_ts = 0.0
        self.started_at = 0.0

    def reset(self) -> None:
        """Start a new run: ids restart at 1. Subscribers are kept."""
        self._counter = 0
        self._last_ts = 0.0
        self.started_at = _now_ms()

    def emit(
        self,
        type: ActivityType | str,
        message: str,
        detail: str | None = None,
    ) -> ActivityItem:
        self._counter += 1
        # wall clock may step backwards; timestamps must not
        ts = max(_now_ms(), self._last_ts)
        self._last_ts = ts
        item = ActivityItem(
            id=self._counter,
            timestamp=ts,
            type=ActivityType(type),
            message=message,
            detail=detail,
        )
        for fn in list(self._listeners):
            try:
                fn(item)
            except Exception:
                logger.exception("activity listener failed on item #%d", item.id)
        return item

    def subscribe(self, fn: Listener) -> Callable[[], None]:
        """Register a listener, return its unsubscribe function."""
        self._listeners.append(fn)

        def unsubscribe() -> None:
            if fn in self._listeners:
                self._listeners.remove(fn)

        return unsubscribe
