"""Read tracing for function watchers.

Uses contextvars to record which scope keys are read while a watched function
runs. The last read decides where the listener is registered: the key it is
filed under, the structural path it filters writes by, and the scope that
owns it when the read crossed into another tree.
"""

from __future__ import annotations

import contextvars
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from scopefx.scope import Scope

    Read = tuple[Scope, str]

# The trace of the function currently being classified.
# When set, every data read through a Model appends (scope, key) to it.
current_trace: contextvars.ContextVar[list[Read] | None] = contextvars.ContextVar(
    "current_trace", default=None
)


def record(scope: Scope, key: str) -> None:
    """Note a data read. No-op outside trace_reads()."""
    trace = current_trace.get()
    if trace is not None:
        trace.append((scope, key))


def trace_reads(fn: Callable[..., Any], *args: Any) -> tuple[Any, list[Read], Exception | None]:
    """Run fn, returning (value, reads, error).

    Reads made before an exception are kept, so a function that fails on its
    first run can still be keyed.
    """
    trace: list[Read] = []
    token = current_trace.set(trace)
    try:
        value = fn(*args)
    except Exception as exc:
        return None, trace, exc
    finally:
        current_trace.reset(token)
    return value, trace, None
