"""Template expression engine for workflow documents.

Resolves ``{{ expression }}`` fragments against an execution context. The
language is deliberately small: dotted paths with integer indexing, string
and number literals, ``true``/``false``/``null``/``undefined``, the ``||``
fallback and ``+`` concatenation operators. Conditions additionally accept
``!``, ``&&``, comparisons and parentheses. There are no function calls and
no arithmetic beyond concatenation.

Grammar (lowest precedence first)::

    or_expr     := and_expr ('||' and_expr)*
    and_expr    := not_expr ('&&' not_expr)*
    not_expr    := '!' not_expr | comparison
    comparison  := concat (cmp_op concat)?
    concat      := primary ('+' primary)*
    primary     := literal | path | '(' or_expr ')'
    path        := identifier ('.' identifier | '[' integer ']')*
"""
from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from functools import lru_cache
from typing import Any, Iterator, List, NamedTuple, Optional, Tuple

from stepflow.service.errors import ExpressionSyntaxError


class _Undefined:
    """Marker for a value that does not exist (missing key, bad index)."""

    _instance: Optional["_Undefined"] = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "undefined"

    def __copy__(self) -> "_Undefined":
        return self

    def __deepcopy__(self, memo: dict) -> "_Undefined":
        return self


UNDEFINED = _Undefined()

# Matches {{ path.to.value }} including {{ path[0].field }}
TEMPLATE_RE = re.compile(r"\{\{\s*(.+?)\s*\}\}")

# A string that is exactly one template expression with no surrounding text.
# [^}] prevents matching across multiple {{ }} pairs.
SOLE_TEMPLATE_RE = re.compile(r"^\{\{\s*([^}]+?)\s*\}\}$")

_LITERAL_NAMES = {"true": True, "false": False, "null": None, "undefined": UNDEFINED}

_TOKEN_RE = re.compile(
    r"""
    (?P<WS>\s+)
  | (?P<STRING>'[^']*'|"[^"]*")
  | (?P<NUMBER>\d+(?:\.\d+)?)
  | (?P<NAME>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<OP>\|\||&&|===|!==|==|!=|>=|<=|>|<|!|\+|-)
  | (?P<DOT>\.)
  | (?P<LBRACKET>\[)
  | (?P<RBRACKET>\])
  | (?P<LPAREN>\()
  | (?P<RPAREN>\))
    """,
    re.VERBOSE,
)

_COMPARISON_OPS = {"===", "!==", "==", "!=", ">", "<", ">=", "<="}


class Token(NamedTuple):
    kind: str
    value: str
    pos: int


def iter_tokens(expr: str) -> Iterator[Token]:
    """Split an expression body into tokens, skipping whitespace."""
    pos = 0
    length = len(expr)
    while pos < length:
        match = _TOKEN_RE.match(expr, pos)
        if not match:
            raise ExpressionSyntaxError(
                f'Unexpected character "{expr[pos]}" at position {pos} in "{expr}"',
                expr,
            )
        kind = match.lastgroup or ""
        if kind != "WS":
            yield Token(kind, match.group(), pos)
        pos = match.end()


class _Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens: List[Token] = list(iter_tokens(source))
        self.pos = 0

    def _peek(self) -> Optional[Token]:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return None

    def _peek_op(self, *ops: str) -> Optional[str]:
        token = self._peek()
        if token and token.kind == "OP" and token.value in ops:
            return token.value
        return None

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _error(self, message: str) -> ExpressionSyntaxError:
        return ExpressionSyntaxError(f'{message} in "{self.source}"', self.source)

    def parse(self) -> tuple:
        if not self.tokens:
            raise self._error("Empty expression")
        node = self._or_expr()
        token = self._peek()
        if token is not None:
            raise self._error(f'Unexpected "{token.value}" at position {token.pos}')
        return node

    def _or_expr(self) -> tuple:
        operands = [self._and_expr()]
        while self._peek_op("||"):
            self._advance()
            operands.append(self._and_expr())
        return operands[0] if len(operands) == 1 else ("or", tuple(operands))

    def _and_expr(self) -> tuple:
        operands = [self._not_expr()]
        while self._peek_op("&&"):
            self._advance()
            operands.append(self._not_expr())
        return operands[0] if len(operands) == 1 else ("and", tuple(operands))

    def _not_expr(self) -> tuple:
        if self._peek_op("!"):
            self._advance()
            return ("not", self._not_expr())
        return self._comparison()

    def _comparison(self) -> tuple:
        left = self._concat()
        op = self._peek_op(*_COMPARISON_OPS)
        if op:
            self._advance()
            right = self._concat()
            return ("cmp", op, left, right)
        return left

    def _concat(self) -> tuple:
        operands = [self._primary()]
        while self._peek_op("+"):
            self._advance()
            operands.append(self._primary())
        return operands[0] if len(operands) == 1 else ("concat", tuple(operands))

    def _primary(self) -> tuple:
        token = self._peek()
        if token is None:
            raise self._error("Unexpected end of expression")
        if token.kind == "STRING":
            self._advance()
            return ("lit", token.value[1:-1])
        if token.kind == "NUMBER":
            self._advance()
            return ("lit", _parse_number(token.value))
        if token.kind == "OP" and token.value == "-":
            self._advance()
            number = self._peek()
            if number is None or number.kind != "NUMBER":
                raise self._error("Expected a number after \"-\"")
            self._advance()
            return ("lit", -_parse_number(number.value))
        if token.kind == "LPAREN":
            self._advance()
            node = self._or_expr()
            closing = self._peek()
            if closing is None or closing.kind != "RPAREN":
                raise self._error("Missing closing parenthesis")
            self._advance()
            return node
        if token.kind == "NAME":
            return self._path()
        raise self._error(f'Unexpected "{token.value}" at position {token.pos}')

    def _path(self) -> tuple:
        root = self._advance().value
        segments: List[Any] = []
        while True:
            token = self._peek()
            if token is None:
                break
            if token.kind == "DOT":
                self._advance()
                segment = self._peek()
                if segment is None or segment.kind != "NAME":
                    bad = segment.value if segment else ""
                    raise self._error(f'Invalid expression segment "{bad}"')
                segments.append(self._advance().value)
            elif token.kind == "LBRACKET":
                self._advance()
                index = self._peek()
                if index is None or index.kind != "NUMBER" or "." in index.value:
                    bad = index.value if index else ""
                    raise self._error(f'Invalid index "{bad}" (expected an integer)')
                self._advance()
                closing = self._peek()
                if closing is None or closing.kind != "RBRACKET":
                    raise self._error("Missing closing bracket")
                self._advance()
                segments.append(int(index.value))
            else:
                break
        if not segments and root in _LITERAL_NAMES:
            return ("lit", _LITERAL_NAMES[root])
        return ("path", root, tuple(segments))


def _parse_number(text: str) -> Any:
    if "." in text:
        return float(text)
    return int(text)


@lru_cache(maxsize=1024)
def parse_expression(expr: str) -> tuple:
    """Parse an expression body (the text between ``{{`` and ``}}``).

    Raises:
        ExpressionSyntaxError: on any token or segment that does not fit
            the grammar.
    """
    return _Parser(expr.strip()).parse()


def is_template_string(value: Any) -> bool:
    """Check if a value is a string containing template expressions."""
    return isinstance(value, str) and TEMPLATE_RE.search(value) is not None


def iter_fragments(text: str) -> Iterator[str]:
    """Yield the body of every ``{{ }}`` fragment in ``text``."""
    for match in TEMPLATE_RE.finditer(text):
        yield match.group(1)


# ---------------------------------------------------------------------------
# Value semantics
# ---------------------------------------------------------------------------


def is_missing(value: Any) -> bool:
    """True for the values the ``||`` fallback skips over."""
    return (
        value is UNDEFINED
        or value is None
        or value is False
        or (isinstance(value, str) and value == "")
    )


def is_truthy(value: Any) -> bool:
    """Truthiness as workflow authors expect it: empty containers are true."""
    if value is UNDEFINED or value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def _json_text(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def to_text(value: Any) -> str:
    """Canonical textual form used when a value is embedded in a string."""
    if value is UNDEFINED:
        return ""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (Mapping, list, tuple)):
        return _json_text(value)
    return str(value)


def _concat_text(value: Any) -> str:
    if value is UNDEFINED or value is None:
        return ""
    return to_text(value)


def resolve_path(root: Any, segments: Tuple[Any, ...]) -> Any:
    """Walk ``segments`` from ``root``; never raises on missing data."""
    current = root
    for segment in segments:
        if current is UNDEFINED or current is None:
            return UNDEFINED
        if isinstance(segment, int):
            if isinstance(current, (list, tuple)) and 0 <= segment < len(current):
                current = current[segment]
            else:
                return UNDEFINED
        elif isinstance(current, Mapping):
            if segment in current:
                current = current[segment]
            else:
                return UNDEFINED
        elif segment == "length" and isinstance(current, (list, tuple, str)):
            current = len(current)
        else:
            return UNDEFINED
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if _is_number(value):
        return float(value)
    if value is None:
        return 0.0
    if isinstance(value, str):
        try:
            return float(value.strip() or "0")
        except ValueError:
            return None
    return None


def _strict_equal(left: Any, right: Any) -> bool:
    if left is UNDEFINED or right is UNDEFINED:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def _loose_equal(left: Any, right: Any) -> bool:
    left_nullish = left is UNDEFINED or left is None
    right_nullish = right is UNDEFINED or right is None
    if left_nullish or right_nullish:
        return left_nullish and right_nullish
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    scalar = (str, int, float, bool)
    if isinstance(left, scalar) and isinstance(right, scalar):
        lnum, rnum = _to_number(left), _to_number(right)
        return lnum is not None and rnum is not None and lnum == rnum
    return left == right


def _ordered(op: str, left: Any, right: Any) -> bool:
    if left is UNDEFINED or right is UNDEFINED:
        return False
    if isinstance(left, str) and isinstance(right, str):
        a: Any = left
        b: Any = right
    else:
        a, b = _to_number(left), _to_number(right)
        if a is None or b is None:
            return False
    if op == ">":
        return a > b
    if op == "<":
        return a < b
    if op == ">=":
        return a >= b
    return a <= b


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "===":
        return _strict_equal(left, right)
    if op == "!==":
        return not _strict_equal(left, right)
    if op == "==":
        return _loose_equal(left, right)
    if op == "!=":
        return not _loose_equal(left, right)
    return _ordered(op, left, right)


def _evaluate(node: tuple, context: Mapping[str, Any], condition: bool) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "path":
        root = context.get(node[1], UNDEFINED) if isinstance(context, Mapping) else UNDEFINED
        return resolve_path(root, node[2])
    if kind == "or":
        skip = (lambda v: not is_truthy(v)) if condition else is_missing
        value: Any = UNDEFINED
        for operand in node[1]:
            value = _evaluate(operand, context, condition)
            if not skip(value):
                return value
        return value
    if kind == "and":
        value = UNDEFINED
        for operand in node[1]:
            value = _evaluate(operand, context, condition)
            if not is_truthy(value):
                return value
        return value
    if kind == "not":
        return not is_truthy(_evaluate(node[1], context, condition))
    if kind == "cmp":
        left = _evaluate(node[2], context, condition)
        right = _evaluate(node[3], context, condition)
        return _compare(node[1], left, right)
    if kind == "concat":
        return "".join(
            _concat_text(_evaluate(operand, context, condition)) for operand in node[1]
        )
    raise ExpressionSyntaxError(f"Unsupported expression node {kind}")


def evaluate_expression(
    expr: str, context: Mapping[str, Any], *, condition: bool = False
) -> Any:
    """Evaluate one expression body against ``context``.

    With ``condition=True``, ``||`` picks the first truthy operand instead of
    the first non-missing one.
    """
    return _evaluate(parse_expression(expr), context, condition)


# ---------------------------------------------------------------------------
# Template resolution
# ---------------------------------------------------------------------------


def resolve_string(text: str, context: Mapping[str, Any]) -> Any:
    """Resolve the fragments within a single string.

    A string that is exactly one fragment resolves to the typed value
    (sequence, number, mapping, ``UNDEFINED``...). Mixed text resolves to a
    string with every fragment substituted.
    """
    if "{{" not in text:
        return text

    sole = SOLE_TEMPLATE_RE.match(text)
    if sole:
        return evaluate_expression(sole.group(1), context)

    return TEMPLATE_RE.sub(
        lambda match: to_text(evaluate_expression(match.group(1), context)), text
    )


def resolve_template(value: Any, context: Mapping[str, Any]) -> Any:
    """Recursively resolve every string leaf in ``value``.

    ``UNDEFINED`` results become ``None`` so tools receive plain data.
    """
    if isinstance(value, str):
        resolved = resolve_string(value, context)
        return None if resolved is UNDEFINED else resolved
    if isinstance(value, list):
        return [resolve_template(item, context) for item in value]
    if isinstance(value, tuple):
        return [resolve_template(item, context) for item in value]
    if isinstance(value, Mapping):
        return {key: resolve_template(item, context) for key, item in value.items()}
    return value


def evaluate_condition(expr: Any, context: Mapping[str, Any]) -> bool:
    """Evaluate a step condition to a boolean.

    Accepts a sole fragment (``{{ a.output && !b.output }}``), a bare
    expression (``a.output.count > 0``) or text mixing fragments, which is
    substituted first and the resulting text evaluated.
    """
    if not isinstance(expr, str):
        return is_truthy(expr)
    text = expr.strip()
    if not text:
        return False

    sole = SOLE_TEMPLATE_RE.match(text)
    if sole:
        return is_truthy(evaluate_expression(sole.group(1), context, condition=True))

    if is_template_string(text):
        substituted = resolve_string(text, context)
        if not isinstance(substituted, str):
            return is_truthy(substituted)
        try:
            return is_truthy(evaluate_expression(substituted, context, condition=True))
        except ExpressionSyntaxError:
            return False

    return is_truthy(evaluate_expression(text, context, condition=True))


def validate_expression_syntax(expr: str) -> None:
    """Raise ExpressionSyntaxError if an expression body does not parse."""
    parse_expression(expr)


def expression_syntax_errors(value: Any, *, bare: bool = False) -> List[str]:
    """Collect syntax errors for every fragment found in ``value``.

    With ``bare=True`` a string without fragments is checked as a whole
    expression (how conditions are written without braces).
    """
    errors: List[str] = []

    def scan(item: Any) -> None:
        if isinstance(item, str):
            if bare and "{{" not in item:
                if item.strip():
                    _check(item)
                return
            for fragment in iter_fragments(item):
                _check(fragment)
        elif isinstance(item, (list, tuple)):
            for child in item:
                scan(child)
        elif isinstance(item, Mapping):
            for child in item.values():
                scan(child)

    def _check(fragment: str) -> None:
        try:
            validate_expression_syntax(fragment)
        except ExpressionSyntaxError as exc:
            errors.append(exc.message)

    scan(value)
    return errors


__all__ = [
    "UNDEFINED",
    "TEMPLATE_RE",
    "SOLE_TEMPLATE_RE",
    "Token",
    "iter_tokens",
    "parse_expression",
    "is_template_string",
    "iter_fragments",
    "is_missing",
    "is_truthy",
    "to_text",
    "resolve_path",
    "evaluate_expression",
    "resolve_string",
    "resolve_template",
    "evaluate_condition",
    "validate_expression_syntax",
    "expression_syntax_errors",
]
