"""Identity sequences for scopes and listeners.

Ids are process-wide and strictly increasing, so a scope derived from another
always carries a larger id than its creator.
"""

import itertools

# itertools.count is thread-safe (C-level GIL atomic)
_scope_ids = itertools.count(1)
_listener_ids = itertools.count(1)


def new_scope_id() -> int:
    return next(_scope_ids)


def new_listener_id() -> int:
    return next(_listener_ids)
