"""Tests for scopefx.textual: Textual integration layer."""

import threading

import pytest
from textual.css.query import NoMatches

from scopefx import textual as stx


class _MockApp:
    """Minimal mock matching the Textual App interface stx needs."""

    def __init__(self, *, is_running=True):
        self.is_running = is_running
        self._later = []
        self._call_from_thread_log = []

    def call_later(self, fn, *args):
        self._later.append((fn, args))

    def call_from_thread(self, fn, *args):
        self._call_from_thread_log.append((fn, args))
        fn(*args)

    def run_pending(self):
        while self._later:
            fn, args = self._later.pop(0)
            fn(*args)


class TestAttach:
    def test_flush_runs_on_message_loop(self, runtime, root):
        app = _MockApp()
        stx.attach(app, runtime)
        calls = []
        root.watch("a", lambda n, o: calls.append(n))
        assert calls == []
        app.run_pending()
        assert calls == [None]

    def test_background_thread_marshals(self, runtime, root):
        app = _MockApp()
        stx.attach(app, runtime)
        calls = []

        def worker():
            root.watch("a", lambda n, o: calls.append(n))

        t = threading.Thread(target=worker)
        t.start()
        t.join()

        assert len(app._call_from_thread_log) == 1
        assert calls == [None]


class TestWatch:
    def test_skips_when_not_running(self, runtime, root):
        app = _MockApp(is_running=False)
        effects = []
        stx.watch(app, root, "a", lambda n, o: effects.append(n))
        root.a = 2
        runtime.flush()
        assert effects == []

    def test_skips_during_pause(self, runtime, root):
        app = _MockApp()
        effects = []
        stx.watch(app, root, "a", lambda n, o: effects.append(n))
        with stx.pause(app):
            root.a = 2
            runtime.flush()
        assert effects == []

    def test_fires_when_safe(self, runtime, root):
        app = _MockApp()
        effects = []
        stx.watch(app, root, "a", lambda n, o: effects.append(n))
        root.a = 2
        runtime.flush()
        assert effects == [2]

    def test_catches_nomatch(self, runtime, root, errors):
        """NoMatches from widget queries are silently swallowed."""
        app = _MockApp()

        def _raise_nomatch(n, o):
            raise NoMatches("StatusFooter")

        stx.watch(app, root, "a", _raise_nomatch)
        root.a = 2
        runtime.flush()
        assert errors == []

    def test_real_errors_reach_handler(self, runtime, root, errors):
        """Non-NoMatches exceptions go to the exception handler."""
        app = _MockApp()

        def _raise_value_error(n, o):
            raise ValueError("boom")

        stx.watch(app, root, "a", _raise_value_error)
        root.a = 2
        runtime.flush()
        assert len(errors) == 1
        assert isinstance(errors[0], ValueError)

    def test_deregister_stops_watch(self, runtime, root):
        app = _MockApp()
        effects = []
        deregister = stx.watch(app, root, "a", lambda n, o: effects.append(n))
        root.a = 2
        runtime.flush()
        deregister()
        root.a = 3
        runtime.flush()
        assert effects == [2]


class TestOn:
    def test_fires_when_safe(self, root):
        app = _MockApp()
        log = []
        stx.on(app, root, "evt", lambda event, value: log.append(value))
        root.emit("evt", 1)
        assert log == [1]

    def test_skips_during_pause(self, root):
        app = _MockApp()
        log = []
        stx.on(app, root, "evt", lambda event: log.append(event.name))
        with stx.pause(app):
            root.emit("evt")
        assert log == []

    def test_catches_nomatch(self, root, errors):
        app = _MockApp()

        def _raise_nomatch(event):
            raise NoMatches("Sidebar")

        stx.on(app, root, "evt", _raise_nomatch)
        root.emit("evt")
        assert errors == []


class TestPause:
    def test_is_safe_toggles(self):
        app = _MockApp()
        assert stx.is_safe(app)
        with stx.pause(app):
            assert not stx.is_safe(app)
        assert stx.is_safe(app)

    def test_pause_restores_after_error(self):
        app = _MockApp()
        with pytest.raises(RuntimeError):
            with stx.pause(app):
                raise RuntimeError("boom")
        assert stx.is_safe(app)

    def test_nested_pause_stays_paused_until_outermost_exit(self):
        app = _MockApp()
        with stx.pause(app):
            with stx.pause(app):
                assert not stx.is_safe(app)
            assert not stx.is_safe(app)
        assert stx.is_safe(app)

    def test_pause_is_per_app(self):
        first, second = _MockApp(), _MockApp()
        with stx.pause(first):
            assert not stx.is_safe(first)
            assert stx.is_safe(second)
