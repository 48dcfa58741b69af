"""Safe evaluation of widget conditions and text templates.

Widget definitions carry small JavaScript-flavoured expressions such as
``power == true`` or ``${value * 1.8 + 32}``. They are parsed here with a
constrained Pratt parser that only understands literals, dotted state paths,
arithmetic, comparison, logical and ternary operators. Nothing is ever handed
to ``eval``.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from .const import COLOR_COMPONENTS_KEY
from .errors import ExpressionError

_LOGGER = logging.getLogger(__name__)


class _Undefined:
    """Marker for JavaScript's ``undefined`` value."""

    _instance: _Undefined | None = None

    def __new__(cls) -> _Undefined:
        """Return the shared singleton."""

        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        """Render the marker like its JavaScript counterpart."""

        return "undefined"

    def __bool__(self) -> bool:
        """Treat undefined as falsy."""

        return False


UNDEFINED: Any = _Undefined()
_MISSING = object()

_KEYWORDS: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": UNDEFINED,
}

_TOKEN_RE = re.compile(
    r"""
    (?P<space>\s+)
    |(?P<number>(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)
    |(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<name>[A-Za-z_]\w*(?:\.\w+)*)
    |(?P<op>===|!==|==|!=|<=|>=|&&|\|\||[-+*/%<>!?:()])
    """,
    re.VERBOSE,
)
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "0": "\0"}
_TEMPLATE_RE = re.compile(r"\$\{([^}]*)\}")
_OPERATOR_RE = re.compile(r"[-+*/%<>=!&|?:()]")

# Binding powers, JavaScript precedence order.
_BINARY_POWER = {
    "||": 20,
    "&&": 30,
    "==": 40,
    "!=": 40,
    "===": 40,
    "!==": 40,
    "<": 50,
    "<=": 50,
    ">": 50,
    ">=": 50,
    "+": 60,
    "-": 60,
    "*": 70,
    "/": 70,
    "%": 70,
}
_TERNARY_POWER = 10
_UNARY_POWER = 80


@dataclass(frozen=True, slots=True)
class _Token:
    """A lexical token; ``value`` is set for literals."""

    kind: str
    text: str
    value: Any = None


@dataclass(frozen=True, slots=True)
class Literal:
    """A constant value."""

    value: Any


@dataclass(frozen=True, slots=True)
class Name:
    """A dotted state path such as ``colorComponents.red``."""

    path: str


@dataclass(frozen=True, slots=True)
class Unary:
    """A prefix operator applied to one operand."""

    op: str
    operand: Node


@dataclass(frozen=True, slots=True)
class Binary:
    """An infix operator applied to two operands."""

    op: str
    left: Node
    right: Node


@dataclass(frozen=True, slots=True)
class Conditional:
    """The ``test ? then : otherwise`` operator."""

    test: Node
    then: Node
    otherwise: Node


Node = Literal | Name | Unary | Binary | Conditional
Lookup = Callable[[str], Any]


def _tokenize(text: str) -> list[_Token]:
    """Split ``text`` into tokens, rejecting anything outside the grammar."""

    tokens: list[_Token] = []
    position = 0
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if match is None:
            msg = f"Unexpected character {text[position]!r} at {position}"
            raise ExpressionError(msg)
        position = match.end()
        kind = match.lastgroup or ""
        raw = match.group(kind)
        if kind == "space":
            continue
        if kind == "number":
            number = float(raw)
            tokens.append(
                _Token("literal", raw, int(number) if number.is_integer() else number)
            )
        elif kind == "string":
            tokens.append(_Token("literal", raw, _unescape(raw[1:-1])))
        elif kind == "name" and raw in _KEYWORDS:
            tokens.append(_Token("literal", raw, _KEYWORDS[raw]))
        else:
            tokens.append(_Token(kind, raw))
    tokens.append(_Token("end", ""))
    return tokens


def _unescape(body: str) -> str:
    """Resolve backslash escapes inside a quoted string literal."""

    chars: list[str] = []
    iterator = iter(body)
    for char in iterator:
        if char != "\\":
            chars.append(char)
            continue
        escaped = next(iterator, "")
        chars.append(_ESCAPES.get(escaped, escaped))
    return "".join(chars)


class _Parser:
    """Pratt parser producing an expression tree from tokens."""

    def __init__(self, tokens: list[_Token]) -> None:
        """Start parsing at the first token."""

        self._tokens = tokens
        self._index = 0

    def parse(self) -> Node:
        """Parse a full expression and require all input to be consumed."""

        node = self._expression(0)
        if self._peek().kind != "end":
            msg = f"Unexpected token {self._peek().text!r}"
            raise ExpressionError(msg)
        return node

    def _peek(self) -> _Token:
        return self._tokens[self._index]

    def _advance(self) -> _Token:
        token = self._tokens[self._index]
        if token.kind != "end":
            self._index += 1
        return token

    def _expect(self, text: str) -> None:
        token = self._advance()
        if token.kind != "op" or token.text != text:
            msg = f"Expected {text!r} but found {token.text or 'end of input'!r}"
            raise ExpressionError(msg)

    def _expression(self, min_power: int) -> Node:
        left = self._prefix()
        while True:
            token = self._peek()
            if token.kind != "op":
                break
            if token.text == "?":
                if _TERNARY_POWER < min_power:
                    break
                self._advance()
                then = self._expression(0)
                self._expect(":")
                otherwise = self._expression(_TERNARY_POWER)
                left = Conditional(left, then, otherwise)
                continue
            power = _BINARY_POWER.get(token.text)
            if power is None or power <= min_power:
                break
            self._advance()
            left = Binary(token.text, left, self._expression(power))
        return left

    def _prefix(self) -> Node:
        token = self._advance()
        if token.kind == "literal":
            return Literal(token.value)
        if token.kind == "name":
            return Name(token.text)
        if token.kind == "op" and token.text in ("!", "-", "+"):
            return Unary(token.text, self._expression(_UNARY_POWER))
        if token.kind == "op" and token.text == "(":
            node = self._expression(0)
            self._expect(")")
            return node
        msg = f"Unexpected token {token.text or 'end of input'!r}"
        raise ExpressionError(msg)


@lru_cache(maxsize=512)
def parse_expression(text: str) -> Node:
    """Parse ``text`` into an expression tree."""

    return _Parser(_tokenize(text)).parse()


def expression_names(node: Node) -> set[str]:
    """Return every state path referenced by ``node``."""

    if isinstance(node, Name):
        return {node.path}
    if isinstance(node, Unary):
        return expression_names(node.operand)
    if isinstance(node, Binary):
        return expression_names(node.left) | expression_names(node.right)
    if isinstance(node, Conditional):
        return (
            expression_names(node.test)
            | expression_names(node.then)
            | expression_names(node.otherwise)
        )
    return set()


def evaluate(node: Node, lookup: Lookup) -> Any:
    """Evaluate ``node`` resolving names through ``lookup``."""

    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Name):
        return lookup(node.path)
    if isinstance(node, Unary):
        operand = evaluate(node.operand, lookup)
        if node.op == "!":
            return not is_truthy(operand)
        number = to_number(operand)
        return -number if node.op == "-" else number
    if isinstance(node, Conditional):
        branch = node.then if is_truthy(evaluate(node.test, lookup)) else node.otherwise
        return evaluate(branch, lookup)
    left = evaluate(node.left, lookup)
    if node.op == "&&":
        return evaluate(node.right, lookup) if is_truthy(left) else left
    if node.op == "||":
        return left if is_truthy(left) else evaluate(node.right, lookup)
    return _apply_binary(node.op, left, evaluate(node.right, lookup))


def _apply_binary(op: str, left: Any, right: Any) -> Any:
    """Apply an arithmetic or comparison operator with JavaScript coercion."""

    if op == "+":
        if isinstance(left, str) or isinstance(right, str):
            return to_js_string(left) + to_js_string(right)
        return to_number(left) + to_number(right)
    if op == "-":
        return to_number(left) - to_number(right)
    if op == "*":
        return to_number(left) * to_number(right)
    if op in ("/", "%"):
        divisor = to_number(right)
        if divisor == 0:
            msg = "Division by zero"
            raise ExpressionError(msg)
        dividend = to_number(left)
        return dividend / divisor if op == "/" else math.fmod(dividend, divisor)
    if op == "==":
        return loose_equals(left, right)
    if op == "!=":
        return not loose_equals(left, right)
    if op == "===":
        return strict_equals(left, right)
    if op == "!==":
        return not strict_equals(left, right)
    return _compare(op, left, right)


def _compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a: Any = left
        b: Any = right
    else:
        a = to_number(left)
        b = to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


def _js_type(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return "object"


def strict_equals(left: Any, right: Any) -> bool:
    """Compare like JavaScript's ``===``."""

    kind = _js_type(left)
    if kind != _js_type(right):
        return False
    if kind == "object":
        return left is right
    return left == right


def loose_equals(left: Any, right: Any) -> bool:
    """Compare like JavaScript's ``==``."""

    left_kind = _js_type(left)
    right_kind = _js_type(right)
    if left_kind == right_kind:
        return strict_equals(left, right)
    nullish = {"null", "undefined"}
    if left_kind in nullish or right_kind in nullish:
        return left_kind in nullish and right_kind in nullish
    if "object" in (left_kind, right_kind):
        return False
    return to_number(left) == to_number(right)


def is_truthy(value: Any) -> bool:
    """Return JavaScript truthiness of ``value``."""

    if value is None or value is UNDEFINED or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def to_number(value: Any) -> float | int:
    """Coerce ``value`` to a number the way JavaScript's ``Number()`` does."""

    if value is None:
        return 0
    if value is UNDEFINED:
        return math.nan
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return 0
        try:
            return float(stripped)
        except ValueError:
            return math.nan
    return math.nan


def format_number(value: float | int) -> str:
    """Render a number like JavaScript's ``String(number)``."""

    if isinstance(value, int):
        return str(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


def to_js_string(value: Any) -> str:
    """Render ``value`` like JavaScript's ``String(value)``."""

    if value is None:
        return "null"
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return format_number(value)
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return ",".join("" if item is None else to_js_string(item) for item in value)
    return "[object Object]"


def _lookup_path(state: Mapping[str, Any], path: str) -> Any:
    """Walk ``path`` through ``state`` returning ``_MISSING`` on any gap."""

    current: Any = state
    for segment in path.split("."):
        if isinstance(current, Mapping) and segment in current:
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _is_scalar(value: Any) -> bool:
    return not isinstance(value, (Mapping, list, tuple))


def _resolves(state: Mapping[str, Any], path: str) -> bool:
    """Return whether ``path`` names a scalar value inside ``state``."""

    value = _lookup_path(state, path)
    return value is not _MISSING and _is_scalar(value)


def evaluate_condition(state: Mapping[str, Any], expression: str) -> bool:
    """Evaluate a widget condition such as ``power == true`` against ``state``.

    Names resolve to scalar state values only; record and list values are
    never substituted. An empty state, or an expression in which no state
    value was substituted, is treated as false so that a stale default
    expression cannot render as true. Syntax errors and unresolved names
    also yield false.
    """

    if not state:
        _LOGGER.debug("Cannot evaluate %r: state is empty", expression)
        return False

    def _lookup(path: str) -> Any:
        value = _lookup_path(state, path)
        if value is _MISSING or not _is_scalar(value):
            msg = f"Unresolved name {path!r}"
            raise ExpressionError(msg)
        return value

    try:
        node = parse_expression(expression)
        if not any(_resolves(state, name) for name in expression_names(node)):
            _LOGGER.debug(
                "Cannot evaluate %r: no state value substituted from %s",
                expression,
                sorted(state),
            )
            return False
        result = evaluate(node, _lookup)
    except ExpressionError as err:
        _LOGGER.debug("Condition %r evaluated to false: %s", expression, err)
        return False
    return is_truthy(result)


def interpolate(template: str, state: Mapping[str, Any]) -> str:
    """Replace every ``${...}`` span of ``template`` with a value from ``state``.

    A span holding an operator is evaluated as an expression whose dotted
    paths are resolved against ``state``. Any other span is a single path
    whose value is rendered as text. Unresolved color component paths render
    as ``0``. Every other unresolved span is left in place verbatim.
    """

    def _replace(match: re.Match[str]) -> str:
        inner = match.group(1).strip()
        if _OPERATOR_RE.search(inner):
            return _interpolate_expression(match.group(0), inner, state)
        value = _lookup_path(state, inner)
        if value is _MISSING or not _is_scalar(value):
            return _unresolved(match.group(0), inner)
        return to_js_string(value)

    return _TEMPLATE_RE.sub(_replace, template)


def _interpolate_expression(span: str, inner: str, state: Mapping[str, Any]) -> str:
    def _lookup(path: str) -> Any:
        value = _lookup_path(state, path)
        if value is not _MISSING and _is_scalar(value):
            return value
        if _in_color_namespace(path):
            return 0
        msg = f"Unresolved path {path!r}"
        raise ExpressionError(msg)

    try:
        return to_js_string(evaluate(parse_expression(inner), _lookup))
    except ExpressionError as err:
        _LOGGER.debug("Leaving template span %s unresolved: %s", span, err)
        return span


def _unresolved(span: str, path: str) -> str:
    if _in_color_namespace(path):
        return "0"
    _LOGGER.debug("Leaving template span %s unresolved", span)
    return span


def _in_color_namespace(path: str) -> bool:
    return path.split(".", 1)[0] == COLOR_COMPONENTS_KEY
