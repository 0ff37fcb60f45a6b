"""Async pub/sub event bus for real-time event streaming."""

from __future__ import annotations

import logging
from typing import Callable, Coroutine

from stepforge.observe.tracer import TraceEvent

_log = logging.getLogger(__name__)


class EventBus:

    def __init__(self):
        self._subscribers: list[Callable[[TraceEvent], Coroutine]] = []
        self._sync_subscribers: list[Callable[[TraceEvent], None]] = []

    def subscribe(self, callback: Callable[[TraceEvent], Coroutine]):
        self._subscribers.append(callback)

    def subscribe_sync(self, callback: Callable[[TraceEvent], None]):
        self._sync_subscribers.append(callback)

    async def emit(self, event: TraceEvent):
        # Subscriber failures are logged and never interrupt a run.
        for sync_cb in self._sync_subscribers:
            try:
                sync_cb(event)
            except Exception:
                _log.warning("Event subscriber failed on %s", event.event_type.value, exc_info=True)

        for async_cb in self._subscribers:
            try:
                await async_cb(event)
            except Exception:
                _log.warning("Event subscriber failed on %s", event.event_type.value, exc_info=True)

    def clear(self):
        self._subscribers.clear()
        self._sync_subscribers.clear()
