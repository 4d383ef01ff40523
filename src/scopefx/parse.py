"""Expression accessors: compiled, watchable views of scope data.

compile_expression() turns a string (or a plain function) into an Accessor:
a callable `(target, locals=None) -> value` that also carries the static
facts a watcher needs:

- constant: the expression references no names, so it can never change.
- one_time: the source started with the "::" marker.
- syntax: a classified descriptor naming the property key to watch.

Strings use Python expression syntax, parsed with `ast` and evaluated by a
small tree walker. Reads are forgiving: a missing name, or a member of None,
evaluates to None instead of raising.
"""

from __future__ import annotations

import ast
import enum
import functools
import operator
from typing import Any, Callable

from scopefx.errors import ExpressionError

ONE_TIME_MARKER = "::"


class SyntaxKind(enum.Enum):
    IDENTIFIER = "identifier"
    MEMBER = "member"
    CALL = "call"
    BINARY = "binary"
    LITERAL = "literal"
    ASSIGNMENT = "assignment"
    UNSUPPORTED = "unsupported"


class Syntax:
    """Classified shape of an expression's first statement.

    key is the single property name listeners are filed under. path is the
    dotted member chain leading to it (None when the chain passes through a
    call or a computed subscript), object_path the same chain without its
    leaf.
    """

    __slots__ = ("kind", "key", "path", "object_path")

    def __init__(
        self,
        kind: SyntaxKind,
        key: str | None = None,
        path: str | None = None,
        object_path: str | None = None,
    ) -> None:
        self.kind = kind
        self.key = key
        self.path = path
        self.object_path = object_path

    def __repr__(self) -> str:
        return f"Syntax({self.kind.name}, key={self.key!r}, path={self.path!r})"


class Accessor:
    """A compiled expression. Call it with a target and optional locals."""

    __slots__ = ("source", "constant", "one_time", "syntax", "_fn")

    def __init__(
        self,
        source: Any,
        fn: Callable[[Any, dict | None], Any],
        *,
        constant: bool = False,
        one_time: bool = False,
        syntax: Syntax | None = None,
    ) -> None:
        self.source = source
        self.constant = constant
        self.one_time = one_time
        self.syntax = syntax
        self._fn = fn

    def __call__(self, target: Any, locals: dict | None = None) -> Any:
        return self._fn(target, locals)

    def __repr__(self) -> str:
        return f"Accessor({self.source!r})"


def compile_expression(source: Any) -> Accessor:
    """Compile source into an Accessor.

    Accepts an expression string, a callable taking (target) or
    (target, locals), an existing Accessor (returned unchanged), or None.
    Function accessors have no syntax descriptor; the scope finds their key
    by tracing reads.
    """
    if isinstance(source, Accessor):
        return source
    if source is None:
        return _compile("None")
    if isinstance(source, str):
        return _compile(source)
    if callable(source):
        fn = source

        def _call(target, locals=None):
            if locals is None:
                return fn(target)
            return fn(target, locals)

        return Accessor(source, _call)
    raise ExpressionError(f"Cannot compile {type(source).__name__} into an expression")


@functools.lru_cache(maxsize=512)
def _compile(source: str) -> Accessor:
    text = source.strip()
    one_time = text.startswith(ONE_TIME_MARKER)
    if one_time:
        text = text[len(ONE_TIME_MARKER):].strip()
    if not text:
        raise ExpressionError(f"Empty expression {source!r}")

    statements = _parse(text, source)
    for statement in statements:
        _validate(statement, source)

    constant = not any(
        isinstance(node, ast.Name) for statement in statements for node in ast.walk(statement)
    )
    syntax = _classify(statements[0])

    def _evaluate(target, locals=None):
        return _Evaluation(target, locals).run(statements)

    return Accessor(source, _evaluate, constant=constant, one_time=one_time, syntax=syntax)


def _parse(text: str, source: str) -> list[ast.AST]:
    try:
        return [ast.parse(text, mode="eval").body]
    except SyntaxError:
        pass
    # Assignments and ";"-separated statements only parse as a module.
    try:
        module = ast.parse(text, mode="exec")
    except SyntaxError as exc:
        raise ExpressionError(f"Cannot parse {source!r}: {exc.msg}") from None
    statements: list[ast.AST] = []
    for statement in module.body:
        if isinstance(statement, ast.Expr):
            statements.append(statement.value)
        elif isinstance(statement, (ast.Assign, ast.AugAssign)):
            statements.append(statement)
        else:
            raise ExpressionError(f"Unsupported statement {type(statement).__name__} in {source!r}")
    if not statements:
        raise ExpressionError(f"Empty expression {source!r}")
    return statements


# ─── Validation ──────────────────────────────────────────────────────────────

_ALLOWED = (
    ast.Name, ast.Attribute, ast.Subscript, ast.Call, ast.keyword,
    ast.BinOp, ast.Compare, ast.BoolOp, ast.UnaryOp, ast.IfExp,
    ast.Dict, ast.List, ast.Tuple, ast.Set, ast.Slice, ast.Constant,
    ast.Assign, ast.AugAssign,
    ast.expr_context, ast.operator, ast.cmpop, ast.boolop, ast.unaryop,
)


def _validate(node: ast.AST, source: str) -> None:
    for child in ast.walk(node):
        if not isinstance(child, _ALLOWED):
            raise ExpressionError(f"Unsupported syntax {type(child).__name__} in {source!r}")
        if isinstance(child, ast.Name) and child.id.startswith("_"):
            raise ExpressionError(f"Private name {child.id!r} in {source!r}")
        if isinstance(child, ast.Attribute) and child.attr.startswith("_"):
            raise ExpressionError(f"Private member {child.attr!r} in {source!r}")
        if isinstance(child, ast.keyword) and child.arg is None:
            raise ExpressionError(f"Keyword unpacking in {source!r}")
        if isinstance(child, ast.Dict) and None in child.keys:
            raise ExpressionError(f"Dict unpacking in {source!r}")


# ─── Classification ──────────────────────────────────────────────────────────

def _leaf(node: ast.AST) -> str | None:
    """Property name a member chain ends in."""
    if isinstance(node, ast.Name):
        return None if node.id == "this" else node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    if isinstance(node, ast.Subscript):
        if isinstance(node.slice, ast.Constant) and isinstance(node.slice.value, str):
            return node.slice.value
        # a computed subscript is keyed on its container
        return _leaf(node.value)
    if isinstance(node, ast.Call):
        return _leaf(node.func)
    return None


def _dotted(node: ast.AST) -> str | None:
    """Dotted path of a pure member chain; "" for a bare `this`."""
    if isinstance(node, ast.Name):
        return "" if node.id == "this" else node.id
    if isinstance(node, ast.Attribute):
        name = node.attr
    elif (
        isinstance(node, ast.Subscript)
        and isinstance(node.slice, ast.Constant)
        and isinstance(node.slice.value, str)
    ):
        name = node.slice.value
    elif isinstance(node, ast.Subscript):
        return _dotted(node.value)
    else:
        return None
    base = _dotted(node.value)
    if base is None:
        return None
    return f"{base}.{name}" if base else name


def _parent_path(path: str | None) -> str | None:
    if not path or "." not in path:
        return None
    return path.rsplit(".", 1)[0]


def _first_reference(node: ast.AST) -> ast.AST | None:
    if isinstance(node, ast.Name):
        return None if node.id == "this" else node
    if isinstance(node, (ast.Attribute, ast.Subscript)):
        return node
    for child in ast.iter_child_nodes(node):
        found = _first_reference(child)
        if found is not None:
            return found
    return None


def _member_syntax(kind: SyntaxKind, node: ast.AST) -> Syntax:
    path = _dotted(node)
    return Syntax(kind, _leaf(node), path, _parent_path(path))


def _classify(node: ast.AST) -> Syntax:
    if isinstance(node, ast.Name):
        if node.id == "this":
            return Syntax(SyntaxKind.UNSUPPORTED)
        return Syntax(SyntaxKind.IDENTIFIER, node.id, node.id)
    if isinstance(node, (ast.Attribute, ast.Subscript)):
        return _member_syntax(SyntaxKind.MEMBER, node)
    if isinstance(node, ast.Call):
        return _member_syntax(SyntaxKind.CALL, node.func)
    if isinstance(node, ast.Assign):
        return _member_syntax(SyntaxKind.ASSIGNMENT, node.targets[0])
    if isinstance(node, ast.AugAssign):
        return _member_syntax(SyntaxKind.ASSIGNMENT, node.target)
    if isinstance(node, (ast.BinOp, ast.Compare)):
        kind = SyntaxKind.BINARY
    elif isinstance(node, (ast.Dict, ast.List, ast.Tuple, ast.Set)):
        kind = SyntaxKind.LITERAL
    else:
        return Syntax(SyntaxKind.UNSUPPORTED)
    reference = _first_reference(node)
    if reference is None:
        return Syntax(kind)
    path = _dotted(reference)
    return Syntax(kind, _leaf(reference), path, _parent_path(path))


# ─── Evaluation ──────────────────────────────────────────────────────────────

_BINARY = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.MatMult: operator.matmul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.LShift: operator.lshift,
    ast.RShift: operator.rshift,
    ast.BitOr: operator.or_,
    ast.BitXor: operator.xor,
    ast.BitAnd: operator.and_,
}

_COMPARE = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_UNARY = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Invert: operator.invert,
}


def _member(obj: Any, name: str) -> Any:
    """Data key first, then attribute; None when neither exists."""
    if hasattr(obj, "keys"):
        try:
            if name in obj:
                return obj[name]
        except TypeError:
            pass
    return getattr(obj, name, None)


def _store(obj: Any, name: Any, value: Any) -> None:
    if hasattr(obj, "keys") and hasattr(obj, "__setitem__"):
        obj[name] = value
    else:
        setattr(obj, name, value)


class _Evaluation(ast.NodeVisitor):
    """One evaluation of a compiled statement list against a target."""

    def __init__(self, target: Any, locals: dict | None) -> None:
        self.target = target
        self.locals = locals or {}

    def run(self, statements: list[ast.AST]) -> Any:
        value = None
        for statement in statements:
            value = self.visit(statement)
        return value

    def generic_visit(self, node: ast.AST) -> Any:
        raise ExpressionError(f"Unsupported syntax {type(node).__name__}")

    # --- Reads ---

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.locals:
            return self.locals[node.id]
        if node.id == "this":
            return self.target
        return _member(self.target, node.id)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        obj = self.visit(node.value)
        if obj is None:
            return None
        return _member(obj, node.attr)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        obj = self.visit(node.value)
        if obj is None:
            return None
        key = self.visit(node.slice)
        try:
            return obj[key]
        except (KeyError, IndexError, TypeError):
            return None

    def visit_Slice(self, node: ast.Slice) -> slice:
        parts = (node.lower, node.upper, node.step)
        return slice(*(None if part is None else self.visit(part) for part in parts))

    def visit_Call(self, node: ast.Call) -> Any:
        fn = self.visit(node.func)
        if fn is None:
            return None
        args = [self.visit(arg) for arg in node.args]
        kwargs = {kw.arg: self.visit(kw.value) for kw in node.keywords}
        return fn(*args, **kwargs)

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if left is None or right is None:
            return None
        return _BINARY[type(node.op)](left, right)

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            try:
                result = _COMPARE[type(op)](left, right)
            except TypeError:
                if left is not None and right is not None:
                    raise
                result = False
            if not result:
                return False
            left = right
        return True

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        value = None
        for operand in node.values:
            value = self.visit(operand)
            if isinstance(node.op, ast.And) and not value:
                return value
            if isinstance(node.op, ast.Or) and value:
                return value
        return value

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if operand is None:
            return None
        return _UNARY[type(node.op)](operand)

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)

    def visit_Dict(self, node: ast.Dict) -> dict:
        return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values)}

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_Set(self, node: ast.Set) -> set:
        return {self.visit(elt) for elt in node.elts}

    # --- Writes ---

    def visit_Assign(self, node: ast.Assign) -> Any:
        value = self.visit(node.value)
        for target in node.targets:
            self._assign(target, value)
        return value

    def visit_AugAssign(self, node: ast.AugAssign) -> Any:
        current = self.visit(node.target)
        operand = self.visit(node.value)
        value = operand if current is None else _BINARY[type(node.op)](current, operand)
        self._assign(node.target, value)
        return value

    def _assign(self, node: ast.AST, value: Any) -> None:
        if isinstance(node, ast.Name):
            if node.id == "this":
                raise ExpressionError("Cannot assign to this")
            _store(self.target, node.id, value)
        elif isinstance(node, ast.Attribute):
            _store(self._container(node.value), node.attr, value)
        elif isinstance(node, ast.Subscript):
            self._container(node.value)[self.visit(node.slice)] = value
        elif isinstance(node, (ast.Tuple, ast.List)):
            for element, item in zip(node.elts, value):
                self._assign(element, item)
        else:
            raise ExpressionError(f"Cannot assign to {type(node).__name__}")

    def _container(self, node: ast.AST) -> Any:
        obj = self.visit(node)
        if obj is None and isinstance(node, (ast.Name, ast.Attribute)):
            self._assign(node, {})
            obj = self.visit(node)
        if obj is None:
            raise ExpressionError("Cannot assign into None")
        return obj
