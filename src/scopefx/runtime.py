"""Runtime: one application instance of scopefx.

Owns everything that would otherwise be module-level global state: the task
and post-update queues, the exception handler, the expression parser and the
distinguished root scope.

    runtime = Runtime(host=loop.call_soon)
    root = runtime.root_scope
    root.watch("count", lambda new, old: print(old, "->", new))
    root.count = 1   # printed on the loop's next turn
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Callable

from scopefx.model import Model
from scopefx.parse import Accessor, compile_expression
from scopefx.scheduler import DEFAULT_TTL, Host, Scheduler
from scopefx.scope import Scope

logger = logging.getLogger("scopefx.runtime")

ExceptionHandler = Callable[[BaseException, "str | None"], Any]


class Runtime:
    """Per-application state shared by every scope tree it creates."""

    def __init__(
        self,
        *,
        exception_handler: ExceptionHandler | None = None,
        host: Host | None = None,
        ttl: int = DEFAULT_TTL,
        parser: Callable[[Any], Accessor] = compile_expression,
    ) -> None:
        self._exception_handler = exception_handler
        self.parse = parser
        self.scheduler = Scheduler(self.handle_exception, host=host, ttl=ttl)
        self._root: Scope | None = None
        self._apply_queue: deque[tuple[Scope, Accessor]] = deque()
        self._applying = False

    @property
    def root_scope(self) -> Model:
        """The application's root scope, created on first access."""
        if self._root is None:
            self._root = Scope(self)
            logger.debug("Created root scope %d", self._root.id)
        return self._root.proxy

    def create_scope(self, data: dict | None = None) -> Model:
        """Wrap data as the root of a separate tree.

        Assigning the result into another tree stores it as a foreign
        reference; watchers reaching through it register on this tree.
        """
        scope = Scope(self, data)
        logger.debug("Created detached scope %d", scope.id)
        return scope.proxy

    def flush(self) -> int:
        """Deliver everything queued so far. Returns the number of tasks run."""
        return self.scheduler.flush()

    def set_host(self, host: Host | None) -> None:
        self.scheduler.set_host(host)

    def queue_apply(self, scope: Scope, accessor: Accessor) -> None:
        """Queue accessor for evaluation on scope. One task drains the queue."""
        if not self._apply_queue and not self._applying:
            self.scheduler.queue_task(self._drain_apply)
        self._apply_queue.append((scope, accessor))

    def _drain_apply(self) -> None:
        self._applying = True
        try:
            while self._apply_queue:
                scope, accessor = self._apply_queue.popleft()
                if scope.destroyed:
                    continue
                try:
                    accessor(scope.proxy)
                except Exception as exc:
                    self.handle_exception(exc, f"apply_async {accessor.source!r}")
        finally:
            self._applying = False

    def handle_exception(self, exc: BaseException, cause: str | None = None) -> None:
        """Forward a delivery error to the exception handler.

        Without a handler the error is logged. A handler that raises is
        logged too, so one failure never stops the remaining deliveries.
        """
        if self._exception_handler is None:
            logger.error("Error in %s", cause or "scope callback", exc_info=exc)
            return
        try:
            self._exception_handler(exc, cause)
        except Exception:
            logger.exception("Exception handler failed while handling %r", exc)

    def destroy(self) -> None:
        """Destroy the root scope and drop anything still queued."""
        if self._root is not None:
            self._root.destroy()
        self._apply_queue.clear()
        self.scheduler.clear()
