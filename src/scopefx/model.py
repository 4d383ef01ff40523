"""Model handles: the objects calling code reads and writes.

A Model looks like a plain mapping with attribute access. Every data read,
write and delete is forwarded to the Scope that owns it, which is where
change detection happens. The scope API (watch, on, destroy, ...) lives on
the class, so those names are reserved for attribute syntax; item syntax
always addresses data:

    m = runtime.root_scope
    m.count = 1            # data
    m["watch"] = "ok"      # data key that shares a reserved name
    m.watch("count", cb)   # scope API

All state lives in the handler; instances are thin handles holding it.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Callable, Iterator

if TYPE_CHECKING:
    from scopefx.scope import Scope

_MISSING = object()


class Model:
    """Attribute-style handle over a dict-backed scope or nested value."""

    __slots__ = ("_handler", "__weakref__")

    def __init__(self, handler: Scope) -> None:
        object.__setattr__(self, "_handler", handler)

    # --- Data access ---

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return self._handler.get(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_") or hasattr(type(self), name):
            raise AttributeError(f"{name!r} is reserved on Model; use m[{name!r}] for data")
        self._handler.set(name, value)

    def __delattr__(self, name: str) -> None:
        if name.startswith("_") or hasattr(type(self), name):
            raise AttributeError(f"{name!r} is reserved on Model; use del m[{name!r}] for data")
        if not self._handler.delete(name):
            raise AttributeError(name)

    def __getitem__(self, key: str) -> Any:
        return self._handler.get_item(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self._handler.set(key, value)

    def __delitem__(self, key: str) -> None:
        if not self._handler.delete(key):
            raise KeyError(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self._handler.target)

    def __len__(self) -> int:
        return len(self._handler.target)

    def __contains__(self, key: object) -> bool:
        return key in self._handler.target

    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if isinstance(other, (Model, Mapping)):
            return dict(self.items()) == dict(other.items())
        return NotImplemented

    __hash__ = None  # mutable, compared by contents

    def __repr__(self) -> str:
        return f"Model({dict(self._handler.target)!r})"

    # --- Mapping helpers ---

    def keys(self):
        return self._handler.target.keys()

    def values(self):
        return [self._handler.get(key) for key in self._handler.target]

    def items(self):
        return [(key, self._handler.get(key)) for key in self._handler.target]

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._handler.target:
            return self._handler.get(key)
        return default

    def pop(self, key: str, default: Any = _MISSING) -> Any:
        if key in self._handler.data:
            value = self._handler.data[key]
            if is_model(value):
                value = value.deproxy()
            self._handler.delete(key)
            return value
        if default is _MISSING:
            raise KeyError(key)
        return default

    def update(self, other: Any = (), **kwargs: Any) -> None:
        pairs = other.items() if hasattr(other, "items") else other
        for key, value in pairs:
            self._handler.set(key, value)
        for key, value in kwargs.items():
            self._handler.set(key, value)

    def setdefault(self, key: str, default: Any = None) -> Any:
        if key not in self._handler.target:
            self._handler.set(key, default)
        return self._handler.get(key)

    def clear(self) -> None:
        for key in list(self._handler.data):
            self._handler.delete(key)

    # --- Scope API ---

    def watch(self, expr: Any, callback: Callable[[Any, Any], Any] | None = None) -> Callable[[], bool]:
        return self._handler.watch(expr, callback)

    def watch_group(self, exprs: Any, callback: Callable[[list, list], Any]) -> Callable[[], bool]:
        return self._handler.watch_group(exprs, callback)

    def watch_collection(self, expr: Any, callback: Callable[[Any, Any], Any]) -> Callable[[], bool]:
        return self._handler.watch_collection(expr, callback)

    def evaluate(self, expr: Any, locals: dict | None = None) -> Any:
        return self._handler.evaluate(expr, locals)

    def apply(self, expr: Any = None) -> Any:
        return self._handler.apply(expr)

    def evaluate_async(self, expr: Any, locals: dict | None = None) -> None:
        self._handler.evaluate_async(expr, locals)

    def apply_async(self, expr: Any) -> None:
        self._handler.apply_async(expr)

    def post_update(self, fn: Callable[[], Any]) -> None:
        self._handler.post_update(fn)

    def on(self, name: str, listener: Callable[..., Any]) -> Callable[[], bool]:
        return self._handler.on(name, listener)

    def emit(self, name: str, *args: Any):
        return self._handler.emit(name, *args)

    def broadcast(self, name: str, *args: Any):
        return self._handler.broadcast(name, *args)

    def new_child(self) -> Model:
        return self._handler.new_child()

    def new_isolate(self) -> Model:
        return self._handler.new_isolate()

    def new_transcluded(self, parent: Model) -> Model:
        return self._handler.new_transcluded(parent)

    def destroy(self) -> None:
        self._handler.destroy()

    def deproxy(self) -> dict:
        return self._handler.deproxy()

    # --- Introspection ---

    @property
    def handler(self) -> Scope:
        return self._handler

    @property
    def id(self) -> int:
        return self._handler.id

    @property
    def parent(self) -> Model | None:
        parent = self._handler.parent
        return None if parent is None else parent.proxy

    @property
    def root(self) -> Model:
        return self._handler.root.proxy

    @property
    def children(self) -> list[Model]:
        return [child.proxy for child in self._handler.children]

    @property
    def is_root(self) -> bool:
        return self._handler.root is self._handler

    @property
    def destroyed(self) -> bool:
        return self._handler.destroyed

    @property
    def watcher_count(self) -> int:
        return self._handler.watcher_count


class ModelList:
    """A list handle. Mutations notify watchers of the list's owner key.

    Elements are stored as given; only the list itself is tracked.
    """

    __slots__ = ("_handler", "__weakref__")

    def __init__(self, handler: Scope) -> None:
        self._handler = handler

    @property
    def _items(self) -> list:
        return self._handler.data

    @property
    def handler(self) -> Scope:
        return self._handler

    def deproxy(self) -> list:
        return self._handler.deproxy()

    # --- Read operations ---

    def __getitem__(self, index):
        return self._items[index]

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator:
        return iter(self._items)

    def __contains__(self, item: object) -> bool:
        return item in self._items

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ModelList):
            return self is other or self._items == other._items
        if isinstance(other, list):
            return self._items == other
        return NotImplemented

    __hash__ = None

    def index(self, item: Any, *args: int) -> int:
        return self._items.index(item, *args)

    def count(self, item: Any) -> int:
        return self._items.count(item)

    # --- Write operations (notify) ---

    def append(self, item: Any) -> None:
        self._items.append(item)
        self._handler.touch()

    def extend(self, items) -> None:
        self._items.extend(items)
        self._handler.touch()

    def insert(self, index: int, item: Any) -> None:
        self._items.insert(index, item)
        self._handler.touch()

    def pop(self, index: int = -1) -> Any:
        result = self._items.pop(index)
        self._handler.touch()
        return result

    def remove(self, item: Any) -> None:
        self._items.remove(item)
        self._handler.touch()

    def clear(self) -> None:
        self._items.clear()
        self._handler.touch()

    def sort(self, *, key=None, reverse: bool = False) -> None:
        self._items.sort(key=key, reverse=reverse)
        self._handler.touch()

    def reverse(self) -> None:
        self._items.reverse()
        self._handler.touch()

    def __setitem__(self, index, value) -> None:
        self._items[index] = value
        self._handler.touch()

    def __delitem__(self, index) -> None:
        del self._items[index]
        self._handler.touch()

    def __iadd__(self, items) -> ModelList:
        self.extend(items)
        return self

    def __repr__(self) -> str:
        return f"ModelList({self._items!r})"


def is_model(value: object) -> bool:
    """Is value already a scope handle (of any tree)?"""
    return isinstance(value, (Model, ModelList))
