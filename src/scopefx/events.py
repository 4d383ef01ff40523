"""Named events on the scope tree.

emit() climbs from a scope to its ancestors and stops when a listener calls
stop_propagation(). broadcast() visits the scope and every descendant,
depth-first in child order, and ignores stop_propagation().
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from scopefx.model import Model


class ScopeEvent:
    """One emit/broadcast pass. current_scope is None once the pass is over."""

    __slots__ = ("name", "target_scope", "current_scope", "stopped", "default_prevented")

    def __init__(self, name: str, target_scope: Model) -> None:
        self.name = name
        self.target_scope = target_scope
        self.current_scope: Model | None = None
        self.stopped = False
        self.default_prevented = False

    def stop_propagation(self) -> None:
        self.stopped = True

    def prevent_default(self) -> None:
        self.default_prevented = True

    def __repr__(self) -> str:
        return f"ScopeEvent({self.name!r})"


class EventBus:
    """Event registration and dispatch, mixed into Scope.

    Expects the host to provide event_listeners, parent, children, proxy,
    runtime and destroyed.
    """

    _dispatch_depth = 0

    def on(self, name: str, listener: Callable[..., Any]) -> Callable[[], bool]:
        """Register listener(event, *args) for name. Returns a deregistration function."""
        if self.destroyed:
            return lambda: False
        self.event_listeners.setdefault(name, []).append(listener)
        removed = False

        def deregister() -> bool:
            nonlocal removed
            if removed:
                return False
            removed = True
            slots = self.event_listeners.get(name, [])
            for index, fn in enumerate(slots):
                if fn is listener:
                    if self._dispatch_depth:
                        # Tombstone; the slot is compacted after dispatch.
                        slots[index] = None
                    else:
                        del slots[index]
                        if not slots:
                            del self.event_listeners[name]
                    return True
            return False

        return deregister

    def emit(self, name: str, *args: Any) -> ScopeEvent:
        event = ScopeEvent(name, self.proxy)
        scope = self
        while scope is not None:
            scope._dispatch(event, args)
            if event.stopped:
                break
            scope = scope.parent
        event.current_scope = None
        return event

    def broadcast(self, name: str, *args: Any) -> ScopeEvent:
        event = ScopeEvent(name, self.proxy)
        self._broadcast(event, args)
        event.current_scope = None
        return event

    def _broadcast(self, event: ScopeEvent, args: tuple) -> None:
        self._dispatch(event, args)
        for child in list(self.children):
            child._broadcast(event, args)

    def _dispatch(self, event: ScopeEvent, args: tuple) -> None:
        listeners = self.event_listeners.get(event.name)
        if not listeners:
            return
        event.current_scope = self.proxy
        self._dispatch_depth += 1
        try:
            index = 0
            while index < len(listeners):
                fn = listeners[index]
                index += 1
                if fn is None:
                    continue
                try:
                    fn(event, *args)
                except Exception as exc:
                    self.runtime.handle_exception(exc, f"event listener for {event.name!r}")
        finally:
            self._dispatch_depth -= 1
        if self._dispatch_depth == 0:
            listeners[:] = [fn for fn in listeners if fn is not None]
            if not listeners and self.event_listeners.get(event.name) is listeners:
                del self.event_listeners[event.name]
