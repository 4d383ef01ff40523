"""Deferred delivery: the task queue every write's notifications wait on.

A write returns immediately; the listeners it affects are delivered on a
later task. Tasks run FIFO when the queue is flushed, either by the
embedding code (runtime.flush()) or by a host hook that is handed the flush
function once per batch, e.g. `loop.call_soon` or a UI toolkit's
`call_later`.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Callable, Sequence

from scopefx.errors import UpdateLoopError

logger = logging.getLogger("scopefx.scheduler")

DEFAULT_TTL = 10_000

Host = Callable[[Callable[[], Any]], Any]


class Scheduler:
    """FIFO task queue plus the global post-update queue of one runtime."""

    def __init__(
        self,
        exception_handler: Callable[..., None],
        host: Host | None = None,
        ttl: int = DEFAULT_TTL,
    ) -> None:
        self._handle = exception_handler
        self._host = host
        self.ttl = ttl
        self._tasks: deque[Callable[[], Any]] = deque()
        self._post_update: deque[Callable[[], Any]] = deque()
        self._flushing = False
        self._requested = False

    def set_host(self, host: Host | None) -> None:
        """Hand future batches to host. None means the caller flushes."""
        self._host = host
        self._requested = False
        if self._tasks or self._post_update:
            self._request()

    @property
    def pending(self) -> int:
        """Number of queued tasks. Useful for testing."""
        return len(self._tasks)

    def clear(self) -> None:
        """Drop queued tasks and post-update callbacks without running them."""
        self._tasks.clear()
        self._post_update.clear()

    def queue_task(self, fn: Callable[[], Any]) -> None:
        self._tasks.append(fn)
        self._request()

    def post_update(self, fn: Callable[[], Any]) -> None:
        """Run fn once after the next delivery, FIFO across the whole runtime."""
        self._post_update.append(fn)
        self._request()

    def _request(self) -> None:
        if self._host is None or self._requested or self._flushing:
            return
        self._requested = True
        self._host(self.flush)

    def schedule_delivery(
        self,
        listeners: Sequence,
        notify: Callable[[Any], None],
        live_filter: Callable[[Sequence], Sequence] | None = None,
    ) -> None:
        """Queue one task that delivers every live entry of listeners.

        The live view is recomputed before each delivery instead of being
        snapshotted: entries appended by an earlier callback are delivered in
        the same pass, entries removed before their turn are skipped, and no
        entry is delivered twice.
        """

        def _deliver_all() -> None:
            # holding each delivered entry keeps its id from being reused
            done: dict[int, Any] = {}
            previous = None
            index = 0
            while True:
                live = listeners if live_filter is None else live_filter(listeners)
                # An earlier entry was removed: restart the scan.
                if index and (index > len(live) or live[index - 1] is not previous):
                    index = 0
                while index < len(live) and id(live[index]) in done:
                    index += 1
                if index >= len(live):
                    return
                previous = live[index]
                index += 1
                done[id(previous)] = previous
                notify(previous)
                self.drain_post_update()

        self.queue_task(_deliver_all)

    def drain_post_update(self) -> None:
        """Run queued post-update callbacks, including ones queued meanwhile."""
        while self._post_update:
            fn = self._post_update.popleft()
            try:
                fn()
            except Exception as exc:
                self._handle(exc, "post_update callback")

    def flush(self) -> int:
        """Run queued tasks until the queue is empty. Returns the task count.

        Not re-entrant: a flush requested from inside a task returns 0 and the
        outer flush picks up whatever was queued.
        """
        if self._flushing:
            return 0
        self._flushing = True
        self._requested = False
        ran = 0
        overflowed = False
        try:
            while (self._tasks or self._post_update) and not overflowed:
                while self._tasks:
                    if ran >= self.ttl:
                        overflowed = True
                        dropped = len(self._tasks)
                        self._tasks.clear()
                        logger.warning("Flush exceeded %d tasks; dropped %d", self.ttl, dropped)
                        self._handle(
                            UpdateLoopError(f"{self.ttl} tasks ran without the queue settling"),
                            "flush",
                        )
                        break
                    task = self._tasks.popleft()
                    ran += 1
                    task()
                self.drain_post_update()
        finally:
            self._flushing = False
        return ran
