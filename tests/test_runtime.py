"""Tests for Runtime: application state, host hook and error routing."""

import logging

from scopefx import Runtime, UpdateLoopError, compile_expression


class TestRootScope:
    def test_created_once(self, runtime):
        assert runtime.root_scope is runtime.root_scope
        assert runtime.root_scope.is_root

    def test_create_scope_is_a_separate_tree(self, runtime):
        other = runtime.create_scope({"a": 1})
        assert other.is_root
        assert other.root is other
        assert other.root is not runtime.root_scope
        assert other.a == 1

    def test_runtimes_are_independent(self):
        first, second = Runtime(), Runtime()
        first.root_scope.watch("a", lambda n, o: None)
        assert first.scheduler.pending == 1
        assert second.scheduler.pending == 0

    def test_destroy(self, runtime):
        log = []
        root = runtime.root_scope
        root.on("$destroy", lambda event: log.append("destroyed"))
        root.watch("a", lambda n, o: log.append(n))
        runtime.destroy()
        runtime.flush()
        assert log == ["destroyed"]
        assert root.destroyed


class TestHost:
    def test_host_receives_flush(self):
        requests = []
        runtime = Runtime(host=requests.append)
        calls = []
        runtime.root_scope.watch("a", lambda n, o: calls.append(n))
        assert len(requests) == 1
        requests[0]()
        assert calls == [None]

    def test_set_host(self, runtime):
        requests = []
        runtime.set_host(requests.append)
        runtime.root_scope.a = 1
        runtime.root_scope.watch("a", lambda n, o: None)
        assert len(requests) == 1


class TestExceptionHandling:
    def test_default_handler_logs(self, caplog):
        runtime = Runtime()

        def boom(new, old):
            raise ValueError("boom")

        runtime.root_scope.watch("a", boom)
        with caplog.at_level(logging.ERROR, logger="scopefx.runtime"):
            runtime.flush()
        assert "boom" in caplog.text
        assert caplog.records[0].exc_info is not None

    def test_handler_receives_cause(self):
        seen = []
        runtime = Runtime(exception_handler=lambda exc, cause: seen.append(cause))
        runtime.root_scope.apply("missing + undefined_call()")
        runtime.root_scope.apply("1 / 0")
        assert len(seen) == 1
        assert "apply" in seen[0]

    def test_failing_handler_is_logged(self, caplog):
        def bad_handler(exc, cause):
            raise RuntimeError("handler broke")

        runtime = Runtime(exception_handler=bad_handler)
        runtime.root_scope.watch("a", lambda n, o: 1 / 0)
        runtime.root_scope.watch("a", lambda n, o: None)
        with caplog.at_level(logging.ERROR, logger="scopefx.runtime"):
            runtime.flush()
        assert "Exception handler failed" in caplog.text

    def test_ttl_reports_update_loop(self, errors):
        runtime = Runtime(
            exception_handler=lambda exc, cause=None: errors.append(exc), ttl=20
        )
        root = runtime.root_scope

        def bump(new, old):
            root["n"] = (new or 0) + 1

        root.watch("n", bump)
        runtime.flush()
        assert any(isinstance(e, UpdateLoopError) for e in errors)


class TestParser:
    def test_custom_parser(self):
        compiled = []

        def parser(source):
            compiled.append(source)
            return compile_expression(source)

        runtime = Runtime(parser=parser)
        runtime.root_scope.evaluate("1 + 1")
        assert compiled == ["1 + 1"]
