"""Textual integration for scopefx. Opt-in, requires textual.

attach() lets the app's message loop drive runtime flushes, so watch
callbacks always run on the app thread. The guarded watch() and on() skip
callbacks while widgets are being replaced and swallow NoMatches from widget
queries that race a recompose.
"""

import threading
from contextlib import contextmanager

from textual.css.query import NoMatches

# id(app) -> open pause() blocks, so multiple apps work in tests.
_pause_depth: dict[int, int] = {}


@contextmanager
def pause(app):
    """Hold back guarded watch and event callbacks while widgets are replaced.

    Scope writes inside the block still apply; guarded callbacks that fire
    meanwhile are skipped until every nested pause() on app has exited.
    """
    key = id(app)
    _pause_depth[key] = _pause_depth.get(key, 0) + 1
    try:
        yield
    finally:
        remaining = _pause_depth.pop(key) - 1
        if remaining:
            _pause_depth[key] = remaining


def is_safe(app) -> bool:
    """May a scope callback touch app's widgets right now?"""
    return app.is_running and id(app) not in _pause_depth


def attach(app, runtime) -> None:
    """Flush runtime from app's message loop.

    Batches queued on the app thread are flushed with call_later; batches
    queued from a worker thread are marshaled with call_from_thread.
    """
    _main = threading.get_ident()

    def _host(flush):
        if threading.get_ident() != _main:
            app.call_from_thread(flush)
        else:
            app.call_later(flush)

    runtime.set_host(_host)


def watch(app, scope, expr, effect):
    """scope.watch() that safely bridges to Textual widgets.

    Returns the deregistration function.
    """

    def _guarded(value, old):
        if not is_safe(app):
            return
        try:
            effect(value, old)
        except NoMatches:
            pass

    return scope.watch(expr, _guarded)


def on(app, scope, name, handler):
    """scope.on() that safely bridges to Textual widgets."""

    def _guarded(event, *args):
        if not is_safe(app):
            return
        try:
            handler(event, *args)
        except NoMatches:
            pass

    return scope.on(name, _guarded)
