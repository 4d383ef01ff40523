"""Scopes: reactive state containers arranged in a tree.

Every wrapped dict or list has a Scope handler behind its Model handle.
Scope nodes (roots and the children derived from them) carry the tree
position, the event bus and the lifecycle; nested values inside a node are
Scopes too, flagged `nested`, so a write at any depth runs the same change
detection.

A write never notifies synchronously. It looks up the listeners filed under
the written key and hands them to the runtime's Scheduler; each listener is
re-evaluated on a later task and its callback fires only if the value it
watches actually changed.

Registries:
- watchers: key -> listeners. Shared by every handler of one tree, so a
  write on a parent reaches listeners registered on its children.
- foreign_watchers: key -> listeners registered by another tree that
  watches through this handler.
- object_refs: id(nested handle) -> keys whose listeners last saw that
  handle, or read their value out of it, so mutating a nested value
  re-notifies the outer key.
"""

from __future__ import annotations

import logging
import math
import weakref
from collections import ChainMap, deque
from typing import Any, Callable, Iterator

from scopefx import _anchor
from scopefx._tracking import record, trace_reads
from scopefx.errors import ExpressionError, RegistryError
from scopefx.events import EventBus
from scopefx.model import Model, ModelList, is_model
from scopefx.parse import Accessor, SyntaxKind

logger = logging.getLogger("scopefx.scope")

Callback = Callable[[Any, Any], Any]

# Compared by value; everything else only by identity.
_VALUE_TYPES = (str, bytes, int, float, complex, bool, tuple, frozenset, type(None))
_NUMBERS = (int, float)


def same_value(old: Any, new: Any) -> bool:
    """Would replacing old with new go unnoticed by a watcher?

    Numbers compare by value across int, float and bool (1, 1.0 and True
    are the same value). NaN replacing NaN counts as unchanged.
    """
    if old is new:
        return True
    if isinstance(old, float) and isinstance(new, float) and math.isnan(old) and math.isnan(new):
        return True
    if isinstance(old, _NUMBERS) and isinstance(new, _NUMBERS):
        return old == new
    if type(old) is type(new) and isinstance(old, _VALUE_TYPES):
        return old == new
    return False


def _noop() -> bool:
    return False


class Listener:
    """A registered (accessor, callback) pair filed under one key."""

    __slots__ = (
        "id", "scope", "accessor", "callback", "one_time", "key", "path",
        "delegate", "key_path", "container", "last", "initialized", "stale", "active",
    )

    def __init__(
        self,
        scope: Scope,
        accessor: Accessor,
        callback: Callback | None,
        key: str,
        path: str | None,
        delegate: Scope | None = None,
        key_path: Accessor | None = None,
    ) -> None:
        self.id = _anchor.new_listener_id()
        self.scope = scope
        self.accessor = accessor
        self.callback = callback
        self.one_time = accessor.one_time
        self.key = key
        self.path = path
        self.delegate = delegate
        # Reads the value stored at key when the watched value sits inside it.
        self.key_path = key_path
        self.container: Any = None
        self.last: Any = None
        self.initialized = False
        self.stale = False
        self.active = True

    @property
    def owner(self) -> Scope:
        """Scope node that created this listener."""
        return self.scope.owner

    def __repr__(self) -> str:
        state = "active" if self.active else "removed"
        return f"Listener({self.accessor.source!r}, key={self.key!r}, {state})"


def deliver(listener: Listener) -> None:
    """Re-evaluate listener and call its callback if the value changed."""
    if not listener.active:
        return
    scope = listener.scope
    runtime = scope.runtime
    try:
        value, keyed = _evaluate(listener)
    except Exception as exc:
        runtime.handle_exception(exc, f"watch expression {listener.accessor.source!r}")
        return

    if listener.delegate is None:
        # An element read out of a list: mutating the list re-delivers.
        if keyed is not value and scope.owns(keyed):
            listener.container = keyed
            scope.track_ref(listener.key, keyed)
        else:
            listener.container = None

    if listener.initialized and not listener.stale and same_value(listener.last, value):
        return
    listener.stale = False
    if listener.one_time and value is None:
        return

    old = listener.last
    listener.last = value
    listener.initialized = True
    if listener.delegate is None:
        scope.track_ref(listener.key, value)

    if listener.callback is not None:
        try:
            listener.callback(value, old)
        except Exception as exc:
            runtime.handle_exception(exc, f"watch callback for {listener.accessor.source!r}")

    if listener.one_time and listener.active and not scope.release(listener):
        raise RegistryError(f"{listener!r} is active but missing from its registry")

    if scope.async_queue:
        runtime.scheduler.queue_task(scope.drain_async)


def _evaluate(listener: Listener) -> tuple[Any, Any]:
    """Return (value, value stored at the listener's key)."""
    proxy = listener.scope.proxy
    if listener.accessor.syntax is None:
        value, reads, error = trace_reads(listener.accessor, proxy)
        if error is not None:
            raise error
        if not reads:
            return value, None
        holder, key = reads[-1]
        return value, holder.target.get(key)
    value = listener.accessor(proxy)
    if listener.key_path is None:
        return value, None
    return value, listener.key_path(proxy)


def _shallow(value: Any) -> Any:
    if isinstance(value, (Model, dict)):
        return dict(value.items())
    if isinstance(value, (ModelList, list)):
        return list(value)
    return value


def _shallow_equal(old: Any, new: Any) -> bool:
    if isinstance(old, dict) and isinstance(new, dict):
        return old.keys() == new.keys() and all(same_value(old[k], new[k]) for k in old)
    if isinstance(old, list) and isinstance(new, list):
        return len(old) == len(new) and all(same_value(a, b) for a, b in zip(old, new))
    return same_value(old, new)


def _plain(value: Any) -> Any:
    return value.deproxy() if is_model(value) else value


class Scope(EventBus):
    """Handler behind a Model or ModelList.

    Created by Runtime (tree roots), by new_child/new_isolate/new_transcluded
    (scope nodes) and by writes that store a dict or list (nested values).
    """

    def __init__(
        self,
        runtime,
        data: dict | list | None = None,
        *,
        context: Scope | None = None,
        parent: Scope | None = None,
        inherit: Scope | None = None,
        nested: bool = False,
        path: str | None = "",
    ) -> None:
        self.id = _anchor.new_scope_id()
        self.runtime = runtime
        self.context = context
        self.parent = parent
        self.root: Scope = self if context is None else context.root
        self.owner: Scope = context.owner if nested and context is not None else self
        self.nested = nested
        self.path = path
        self.children: list[Scope] = []
        self.destroyed = False

        if context is None:
            self.watchers: dict[str, list[Listener]] = {}
            self.object_refs: dict[int, tuple[weakref.ref, list[str]]] = {}
            self.delegates: dict[int, Scope] = {}
        else:
            self.watchers = context.watchers
            self.object_refs = context.object_refs
            self.delegates = context.delegates
        self.foreign_watchers: dict[str, list[Listener]] = {}
        self.event_listeners: dict[str, list] = {}
        self.async_queue: deque[tuple[Accessor, dict | None]] = deque()

        if isinstance(data, list):
            self.data: dict | list = data
            self.target: Any = data
            self.proxy: Model | ModelList = ModelList(self)
        else:
            self.data = {}
            if inherit is None:
                self.target = self.data
            elif isinstance(inherit.target, ChainMap):
                self.target = inherit.target.new_child(self.data)
            else:
                self.target = ChainMap(self.data, inherit.target)
            self.proxy = Model(self)
            for key, value in (data or {}).items():
                self.data[key] = self.wrap(value, key)

    def __repr__(self) -> str:
        kind = "nested" if self.nested else "scope"
        return f"Scope({self.id}, {kind}, path={self.path!r})"

    # ─── Structure ───────────────────────────────────────────────────────────

    def path_of(self, key: Any) -> str | None:
        """Structural path of key below this handler's tree node."""
        if self.path is None:
            return None
        return f"{self.path}.{key}" if self.path else str(key)

    def owns(self, value: Any) -> bool:
        """Is value a handle wrapped by this tree (not a foreign proxy)?"""
        return is_model(value) and value.handler.root is self.root

    def wrap(self, value: Any, key: Any) -> Any:
        """Wrap dicts and lists stored under key; handles are stored as is."""
        if is_model(value):
            return value
        if isinstance(value, dict):
            return Scope(
                self.runtime, value, context=self, nested=True, path=self.path_of(key)
            ).proxy
        if isinstance(value, list):
            return Scope(
                self.runtime, list(value), context=self, nested=True, path=self.path_of(key)
            ).proxy
        return value

    def subtree(self) -> Iterator[Scope]:
        yield self
        for child in self.children:
            yield from child.subtree()

    # ─── Interception ────────────────────────────────────────────────────────

    def get(self, key: str) -> Any:
        record(self, key)
        return self.target.get(key)

    def get_item(self, key: str) -> Any:
        record(self, key)
        return self.target[key]

    def set(self, key: str, value: Any) -> bool:
        if self.destroyed:
            self.data[key] = self.wrap(value, key)
            return True

        own = self.data.get(key)
        if self.owns(own):
            changed = True
            fresh = None
            if isinstance(value, (list, ModelList)):
                new = value if isinstance(value, ModelList) else self.wrap(value, key)
                self.data[key] = new
                changed = new is not own
            elif isinstance(value, dict) and isinstance(own, Model):
                # Merge in place so listeners on the nested value survive;
                # the nested writes re-notify this key through object_refs.
                own.handler.merge(value)
                changed = False
            elif value is None:
                nested = own.handler.teardown()
                self.data[key] = None
                changed = not nested
            else:
                new = self.wrap(value, key)
                self.data[key] = new
                changed = new is not own
                if new is not value:
                    fresh = new
            if changed:
                self.schedule_key(key)
                self.retrigger()
                self._announce(fresh)
            return True

        existing = self.target.get(key)
        new = self.wrap(value, key)
        self.data[key] = new
        if not same_value(existing, new):
            self.schedule_key(key)
            self.retrigger()
            if new is not value:
                self._announce(new)
        return True

    def delete(self, key: str) -> bool:
        if key not in self.data:
            return False
        if self.owns(self.data[key]) and not self.destroyed:
            self.set(key, None)
        old = self.data.pop(key)
        if not self.destroyed and not same_value(old, self.target.get(key)):
            self.schedule_key(key)
            self.retrigger()
        return True

    def _announce(self, value: Any) -> None:
        """Schedule the keys of a freshly wrapped dict, at every depth.

        Listeners on a deeper path (`x.b`) registered before `x` existed are
        filed under the leaf key, so writing `x` alone would not reach them.
        """
        if not isinstance(value, Model):
            return
        handler = value.handler
        for key, item in handler.data.items():
            handler.schedule_key(key)
            if isinstance(item, Model) and item.handler.context is handler:
                handler._announce(item)

    def merge(self, value: dict) -> None:
        """Deep-merge a plain dict into this nested value in place."""
        for key in [k for k in self.data if k not in value]:
            self.delete(key)
        for key, item in value.items():
            self.set(key, item)

    def teardown(self) -> bool:
        """Remove own keys recursively. True if a key held a nested handle."""
        if isinstance(self.data, list):
            if self.data:
                self.data.clear()
                self.touch()
            return False
        nested = False
        for key in list(self.data):
            nested = nested or self.owns(self.data[key])
            self.delete(key)
        return nested

    def touch(self) -> None:
        """Report an in-place change (list mutation) to the owning keys."""
        if not self.destroyed:
            self.retrigger()

    def deproxy(self) -> dict | list:
        if isinstance(self.data, list):
            return [_plain(item) for item in self.data]
        return {key: _plain(value) for key, value in self.data.items()}

    # ─── Scheduling ──────────────────────────────────────────────────────────

    def schedule_key(self, key: str) -> None:
        """Queue delivery for the own and foreign listeners of key.

        Own listeners are filtered to the structural path just written, which
        tells apart listeners that share a leaf key under different parents.
        """
        if self.destroyed:
            return
        scheduler = self.runtime.scheduler
        path = self.path_of(key)

        listeners = self.watchers.get(key)
        if listeners:
            def _live(entries):
                return [
                    entry for entry in entries
                    if entry.active
                    and (entry.path is None or path is None or entry.path == path)
                ]

            scheduler.schedule_delivery(listeners, deliver, _live)

        foreign = self.foreign_watchers.get(key)
        if foreign:
            scheduler.schedule_delivery(foreign, deliver, _active)

    def retrigger(self) -> None:
        """Re-notify outer keys whose listeners last saw this handle.

        Listeners holding the handle itself are marked stale and always fire;
        listeners that read through it (an element of a list) fire only if
        their value changed.
        """
        entry = self.object_refs.get(id(self.proxy))
        if entry is None:
            return
        proxy = self.proxy

        def _live(entries):
            return [
                e for e in entries
                if e.active and (e.last is proxy or e.container is proxy)
            ]

        for key in list(entry[1]):
            listeners = self.watchers.get(key)
            if not listeners:
                continue
            for listener in listeners:
                if listener.last is proxy:
                    listener.stale = True
            self.runtime.scheduler.schedule_delivery(listeners, deliver, _live)

    def track_ref(self, key: str, value: Any) -> None:
        if not self.owns(value):
            return
        refs = self.object_refs
        ref_id = id(value)
        entry = refs.get(ref_id)
        if entry is None or entry[0]() is not value:
            entry = (weakref.ref(value, lambda _, k=ref_id: refs.pop(k, None)), [])
            refs[ref_id] = entry
        if key not in entry[1]:
            entry[1].append(key)

    # ─── Registry ────────────────────────────────────────────────────────────

    def register_key(self, listener: Listener) -> None:
        self.watchers.setdefault(listener.key, []).append(listener)

    def register_foreign_key(self, listener: Listener) -> None:
        self.foreign_watchers.setdefault(listener.key, []).append(listener)

    def deregister_key(self, listener: Listener) -> bool:
        return _remove(self.watchers, listener)

    def deregister_foreign_key(self, listener: Listener) -> bool:
        return _remove(self.foreign_watchers, listener)

    def release(self, listener: Listener) -> bool:
        """Deregister listener wherever it was filed. False if already gone."""
        if not listener.active:
            return False
        if listener.delegate is not None:
            return listener.delegate.deregister_foreign_key(listener)
        return self.deregister_key(listener)

    # ─── Watching ────────────────────────────────────────────────────────────

    def watch(self, expr: Any, callback: Callback | None = None) -> Callable[[], bool]:
        """Call callback(new, old) whenever the value of expr changes.

        The first delivery happens on a later task with old=None. Returns a
        function that deregisters the listener and reports whether it did.
        """
        if self.destroyed:
            return _noop
        accessor = self.runtime.parse(expr)
        key_path = None

        if accessor.syntax is None:
            value, reads, error = trace_reads(accessor, self.proxy)
            if not reads:
                if error is not None:
                    self.runtime.handle_exception(error, f"watch expression {accessor.source!r}")
                    return _noop
                return self._deliver_constant(lambda: value, callback)
            holder, key = reads[-1]
            path = holder.path_of(key)
            delegate = holder if holder.root is not self.root else None
        else:
            syntax = accessor.syntax
            if accessor.constant:
                return self._deliver_constant(lambda: accessor(self.proxy), callback)
            if syntax.kind is SyntaxKind.ASSIGNMENT and callback is None:
                accessor(self.proxy)
                return _noop
            if syntax.kind is SyntaxKind.UNSUPPORTED or syntax.key is None:
                raise ExpressionError(f"Cannot watch {accessor.source!r}: no observable key")
            key = syntax.key
            path = self.path_of(syntax.path) if syntax.path is not None else None
            if syntax.path and syntax.path != accessor.source:
                key_path = self.runtime.parse(syntax.path)
            delegate = None
            if syntax.object_path:
                holder = self._resolve(syntax.object_path)
                if isinstance(holder, Model):
                    path = holder.handler.path_of(key)
                    if holder.handler.root is not self.root:
                        delegate = holder.handler
            value = None

        listener = Listener(self, accessor, callback, key, path, delegate, key_path)
        if delegate is None:
            self.register_key(listener)
            self.track_ref(key, value)
        else:
            delegate.register_foreign_key(listener)
            self.delegates[delegate.id] = delegate
        self.runtime.scheduler.schedule_delivery([listener], deliver)

        def deregister() -> bool:
            return self.release(listener)

        return deregister

    def _resolve(self, object_path: str) -> Any:
        try:
            return self.runtime.parse(object_path)(self.proxy)
        except Exception:
            logger.debug("Could not resolve %r on scope %d", object_path, self.id, exc_info=True)
            return None

    def _deliver_constant(self, compute: Callable[[], Any], callback: Callback | None) -> Callable[[], bool]:
        def _fire() -> None:
            if self.destroyed:
                return
            try:
                value = compute()
                if callback is not None:
                    callback(value, None)
            except Exception as exc:
                self.runtime.handle_exception(exc, "constant watch")

        self.runtime.scheduler.queue_task(_fire)
        return _noop

    def watch_group(self, exprs, callback: Callable[[list, list], Any]) -> Callable[[], bool]:
        """Watch several expressions; callback(new_values, old_values) once per turn.

        On the first call both arguments are the same list.
        """
        exprs = list(exprs)
        new_values: list = [None] * len(exprs)
        old_values: list = new_values
        first = True
        scheduled = False
        active = True

        def _group_task() -> None:
            nonlocal first, scheduled, old_values
            scheduled = False
            if not active or self.destroyed:
                return
            try:
                callback(new_values, new_values if first else old_values)
            except Exception as exc:
                self.runtime.handle_exception(exc, "watch_group callback")
            first = False
            old_values = list(new_values)

        def _schedule() -> None:
            nonlocal scheduled
            if not scheduled:
                scheduled = True
                self.runtime.scheduler.queue_task(_group_task)

        if not exprs:
            _schedule()

        def _member(index: int) -> Callback:
            def _changed(value, _old) -> None:
                new_values[index] = value
                _schedule()

            return _changed

        deregisters = [self.watch(expr, _member(i)) for i, expr in enumerate(exprs)]

        def deregister() -> bool:
            nonlocal active
            if not active:
                return False
            active = False
            for fn in deregisters:
                fn()
            return True

        return deregister

    def watch_collection(self, expr: Any, callback: Callback) -> Callable[[], bool]:
        """Shallow watch: fires when expr's value or its top-level items change."""
        snapshot: Any = None
        first = True

        def _changed(value, _old) -> None:
            nonlocal snapshot, first
            current = _shallow(value)
            if first:
                first = False
                snapshot = current
                callback(value, value)
                return
            if _shallow_equal(snapshot, current):
                return
            previous, snapshot = snapshot, current
            callback(value, previous)

        return self.watch(expr, _changed)

    # ─── Evaluation ──────────────────────────────────────────────────────────

    def evaluate(self, expr: Any, locals: dict | None = None) -> Any:
        return self.runtime.parse(expr)(self.proxy, locals)

    def apply(self, expr: Any = None) -> Any:
        """Evaluate expr, routing exceptions to the exception handler."""
        if self.destroyed or expr is None:
            return None
        try:
            return self.evaluate(expr)
        except Exception as exc:
            self.runtime.handle_exception(exc, f"apply {expr!r}")
            return None

    def evaluate_async(self, expr: Any, locals: dict | None = None) -> None:
        if self.destroyed:
            return
        self.async_queue.append((self.runtime.parse(expr), locals))
        self.runtime.scheduler.queue_task(self.drain_async)

    def drain_async(self) -> None:
        while self.async_queue and not self.destroyed:
            accessor, locals = self.async_queue.popleft()
            try:
                accessor(self.proxy, locals)
            except Exception as exc:
                self.runtime.handle_exception(exc, f"evaluate_async {accessor.source!r}")

    def apply_async(self, expr: Any) -> None:
        """Evaluate expr on a later task, in order with every apply_async of the runtime.

        Expressions queued while the queue is draining run in the same task.
        Errors go to the exception handler and do not stop later expressions.
        """
        if self.destroyed:
            return
        self.runtime.queue_apply(self, self.runtime.parse(expr))

    def post_update(self, fn: Callable[[], Any]) -> None:
        self.runtime.scheduler.post_update(fn)

    # ─── Hierarchy ───────────────────────────────────────────────────────────

    def new_child(self) -> Model:
        return self._derive(inherit=self, parent=self)

    def new_isolate(self) -> Model:
        return self._derive(inherit=None, parent=self)

    def new_transcluded(self, parent: Model | Scope) -> Model:
        handler = parent.handler if isinstance(parent, Model) else parent
        return self._derive(inherit=self, parent=handler)

    def _derive(self, inherit: Scope | None, parent: Scope) -> Model:
        child = Scope(self.runtime, context=self, parent=parent, inherit=inherit)
        parent.children.append(child)
        logger.debug("Created scope %d under %d", child.id, parent.id)
        return child.proxy

    @property
    def watcher_count(self) -> int:
        owners = {node.id for node in self.owner.subtree()}
        registries = [self.watchers]
        registries.extend(d.foreign_watchers for d in self.delegates.values())
        return sum(
            1
            for registry in registries
            for listeners in registry.values()
            for listener in listeners
            if listener.owner.id in owners
        )

    def destroy(self) -> None:
        """Tear down the reactive wiring of this scope and its descendants.

        Data stays readable and writable; listeners, event handlers and
        pending async evaluations are dropped. Idempotent.
        """
        if self.destroyed:
            return
        self.broadcast("$destroy")
        nodes = list(self.subtree())
        owners = {node.id for node in nodes}
        registries = [self.watchers]
        registries.extend(d.foreign_watchers for d in self.delegates.values())
        for registry in registries:
            _purge(registry, owners)
        for node in nodes:
            node.destroyed = True
            node.event_listeners.clear()
            node.async_queue.clear()
        if self.parent is not None and self in self.parent.children:
            self.parent.children.remove(self)
        logger.debug("Destroyed scope %d (%d nodes)", self.id, len(nodes))


def _active(entries):
    return [entry for entry in entries if entry.active]


def _remove(registry: dict[str, list[Listener]], listener: Listener) -> bool:
    listeners = registry.get(listener.key)
    if not listeners:
        return False
    for index, entry in enumerate(listeners):
        if entry is listener:
            del listeners[index]
            listener.active = False
            if not listeners:
                del registry[listener.key]
            return True
    return False


def _purge(registry: dict[str, list[Listener]], owners: set[int]) -> None:
    for key in list(registry):
        listeners = registry[key]
        kept = []
        for listener in listeners:
            if listener.owner.id in owners:
                listener.active = False
            else:
                kept.append(listener)
        # In place: queued deliveries hold the list itself.
        listeners[:] = kept
        if not kept:
            del registry[key]
