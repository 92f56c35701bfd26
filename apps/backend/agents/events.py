"""
Task Event Bus
==============

In-process change notifications keyed by task id. The task store publishes
after every save or delete and the supervisor publishes after every
terminal session transition; the sequencer waits on them instead of
re-reading the store on a fixed interval.

Notifications carry no payload. A waiter always re-reads the store after
waking, so a missed or coalesced notification only costs one poll interval.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class TaskEventBus:
    """Publish/subscribe of "task changed" signals.

    Must be used from a single event loop thread.
    """

    def __init__(self) -> None:
        self._waiters: dict[str, set[asyncio.Event]] = {}
        self._listeners: list[Callable[[str], None]] = []

    def publish(self, task_id: str) -> None:
        """Wake every waiter and listener interested in *task_id*."""
        for event in self._waiters.get(task_id, ()):
            event.set()
        for listener in list(self._listeners):
            try:
                listener(task_id)
            except Exception:
                logger.exception("[EventBus] Listener failed for task %s", task_id)

    def add_listener(self, listener: Callable[[str], None]) -> None:
        """Register a callback invoked with the task id of every change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[str], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @asynccontextmanager
    async def watch(self, task_id: str) -> AsyncIterator[asyncio.Event]:
        """Subscribe to *task_id* for the duration of the block.

        Subscribe before reading state, clear the event before each read and
        wait on it afterwards; a change that lands between the read and the
        wait is then never lost.
        """
        event = asyncio.Event()
        self._waiters.setdefault(task_id, set()).add(event)
        try:
            yield event
        finally:
            waiters = self._waiters.get(task_id)
            if waiters is not None:
                waiters.discard(event)
                if not waiters:
                    del self._waiters[task_id]
