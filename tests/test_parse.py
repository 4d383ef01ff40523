"""Tests for compile_expression and the expression accessor."""

import pytest

from scopefx import ExpressionError, SyntaxKind, compile_expression


class TestClassification:
    @pytest.mark.parametrize(
        "source, kind, key",
        [
            ("a", SyntaxKind.IDENTIFIER, "a"),
            ("a.b.c", SyntaxKind.MEMBER, "c"),
            ("a['b']", SyntaxKind.MEMBER, "b"),
            ("items[i]", SyntaxKind.MEMBER, "items"),
            ("getName()", SyntaxKind.CALL, "getName"),
            ("user.fullName()", SyntaxKind.CALL, "fullName"),
            ("a + b", SyntaxKind.BINARY, "a"),
            ("1 + count", SyntaxKind.BINARY, "count"),
            ("x.y > 2", SyntaxKind.BINARY, "y"),
            ("{'k': value}", SyntaxKind.LITERAL, "value"),
            ("[first, second]", SyntaxKind.LITERAL, "first"),
            ("b = 4", SyntaxKind.ASSIGNMENT, "b"),
            ("parent.a = 0", SyntaxKind.ASSIGNMENT, "a"),
            ("a and b", SyntaxKind.UNSUPPORTED, None),
            ("a if b else c", SyntaxKind.UNSUPPORTED, None),
            ("not a", SyntaxKind.UNSUPPORTED, None),
            ("this", SyntaxKind.UNSUPPORTED, None),
        ],
    )
    def test_kind_and_key(self, source, kind, key):
        syntax = compile_expression(source).syntax
        assert syntax.kind is kind
        assert syntax.key == key

    def test_member_paths(self):
        syntax = compile_expression("a.b.c").syntax
        assert syntax.path == "a.b.c"
        assert syntax.object_path == "a.b"

    def test_this_prefix_is_dropped_from_paths(self):
        syntax = compile_expression("this.a").syntax
        assert syntax.key == "a"
        assert syntax.path == "a"
        assert syntax.object_path is None


class TestFlags:
    def test_constant(self):
        assert compile_expression("1 + 2").constant
        assert compile_expression("[1, 'a']").constant
        assert not compile_expression("a + 1").constant

    def test_one_time_marker(self):
        accessor = compile_expression("::name")
        assert accessor.one_time
        assert accessor.syntax.key == "name"
        assert not compile_expression("name").one_time

    def test_strings_are_cached(self):
        assert compile_expression("a.b") is compile_expression("a.b")

    def test_accessor_passes_through(self):
        accessor = compile_expression("a")
        assert compile_expression(accessor) is accessor

    def test_function_has_no_syntax(self):
        accessor = compile_expression(lambda t: t["a"])
        assert accessor.syntax is None
        assert accessor({"a": 1}) == 1

    def test_function_receives_locals(self):
        accessor = compile_expression(lambda t, locals: t["a"] + locals["b"])
        assert accessor({"a": 1}, {"b": 2}) == 3


class TestEvaluation:
    def test_reads(self):
        target = {"a": 2, "user": {"name": "Ann", "tags": ["x", "y"]}}
        assert compile_expression("a * 3")(target) == 6
        assert compile_expression("user.name")(target) == "Ann"
        assert compile_expression("user['tags'][1]")(target) == "y"
        assert compile_expression("user.tags[0:1]")(target) == ["x"]

    def test_forgiving_reads(self):
        assert compile_expression("missing.deeper.still")({}) is None
        assert compile_expression("missing()")({}) is None
        assert compile_expression("items[5]")({"items": []}) is None
        assert compile_expression("a + 1")({}) is None

    def test_locals_shadow_target(self):
        assert compile_expression("a + b")({"a": 1, "b": 1}, {"b": 10}) == 11

    def test_this(self):
        target = {"a": 1}
        assert compile_expression("this")(target) is target
        assert compile_expression("this.a")(target) == 1

    def test_operators(self):
        target = {"a": 3, "b": 0, "s": "hi"}
        assert compile_expression("a > 2 and not b")(target) is True
        assert compile_expression("b or 'fallback'")(target) == "fallback"
        assert compile_expression("'yes' if a == 3 else 'no'")(target) == "yes"
        assert compile_expression("-a")(target) == -3
        assert compile_expression("'h' in s")(target) is True
        assert compile_expression("1 < a < 5")(target) is True
        assert compile_expression("missing > 1")(target) is False

    def test_calls(self):
        target = {"add": lambda x, y=0: x + y, "s": "abc"}
        assert compile_expression("add(1, y=2)")(target) == 3
        assert compile_expression("s.upper()")(target) == "ABC"

    def test_displays(self):
        assert compile_expression("{'a': 1, 'b': [2, (3,)]}")({}) == {"a": 1, "b": [2, (3,)]}
        assert compile_expression("{1, 2}")({}) == {1, 2}


class TestAssignment:
    def test_assign(self):
        target = {}
        assert compile_expression("b = 4")(target) == 4
        assert target == {"b": 4}

    def test_chained_assign(self):
        target = {}
        compile_expression("a = b = 4")(target)
        assert target == {"a": 4, "b": 4}

    def test_augmented_assign(self):
        target = {"n": 1}
        compile_expression("n += 2")(target)
        assert target["n"] == 3
        compile_expression("m += 5")(target)
        assert target["m"] == 5

    def test_assign_creates_intermediates(self):
        target = {}
        compile_expression("a.b.c = 1")(target)
        assert target == {"a": {"b": {"c": 1}}}

    def test_subscript_assign(self):
        target = {"items": [0, 0]}
        compile_expression("items[1] = 7")(target)
        assert target["items"] == [0, 7]

    def test_multiple_statements(self):
        target = {}
        assert compile_expression("a = 1; b = a + 1; b")(target) == 2
        assert target == {"a": 1, "b": 2}

    def test_attribute_assign_on_object(self):
        class Box:
            value = None

        box = Box()
        compile_expression("box.value = 3")({"box": box})
        assert box.value == 3


class TestRejected:
    @pytest.mark.parametrize(
        "source",
        [
            "",
            "::",
            "lambda: 1",
            "[x for x in y]",
            "a.__class__",
            "_private",
            "f(*args)",
            "f(**kw)",
            "{**a}",
            "import os",
            "a = ",
            "(x := 1)",
        ],
    )
    def test_raises_expression_error(self, source):
        with pytest.raises(ExpressionError):
            compile_expression(source)

    def test_rejects_non_callables(self):
        with pytest.raises(ExpressionError):
            compile_expression(42)

    def test_expression_error_is_value_error(self):
        with pytest.raises(ValueError):
            compile_expression("lambda: 1")
