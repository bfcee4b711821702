# expressions.py
"""
`${{ ... }}` expression language used by `if:` predicates and templates.

Supported:
  - literals: null, true, false, numbers, 'strings' ('' escapes a quote)
  - context access: github.ref, needs.build.outputs.version, matrix['os']
  - operators: ! < <= > >= == != && || and parentheses
  - functions: contains, startsWith, endsWith, format, join, toJSON,
    fromJSON, success, failure, always, cancelled

Comparisons follow the loose rules of CI expression languages: strings
compare case-insensitively and mismatched types are coerced to numbers.
"""
from __future__ import annotations

import json
import math
import re
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import ExpressionError

TEMPLATE_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)

# Status functions that let a job/step run after an upstream failure.
TOLERANT_FUNCTIONS = frozenset({"always", "failure", "cancelled"})
STATUS_FUNCTIONS = TOLERANT_FUNCTIONS | {"success"}

_OPERATORS = ("==", "!=", "<=", ">=", "&&", "||", "<", ">", "!", "(", ")", "[", "]", ".", ",")


# ----------------------------------------------------------------------
# Tokenizer
# ----------------------------------------------------------------------

def _tokenize(text: str) -> List[Tuple[str, Any]]:
    tokens: List[Tuple[str, Any]] = []
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue

        if ch == "'":
            j = i + 1
            buf = []
            while True:
                if j >= n:
                    raise ExpressionError(text, "unterminated string")
                if text[j] == "'":
                    if j + 1 < n and text[j + 1] == "'":
                        buf.append("'")
                        j += 2
                        continue
                    break
                buf.append(text[j])
                j += 1
            tokens.append(("str", "".join(buf)))
            i = j + 1
            continue

        prev_is_value = bool(tokens) and tokens[-1][0] in ("str", "num", "ident") or (
            bool(tokens) and tokens[-1] in (("op", ")"), ("op", "]"))
        )
        if ch.isdigit() or (ch == "-" and i + 1 < n and text[i + 1].isdigit() and not prev_is_value):
            m = re.match(r"-?(0x[0-9a-fA-F]+|\d+(\.\d+)?([eE][+-]?\d+)?)", text[i:])
            raw = m.group(0)
            num = float(int(raw, 16)) if "x" in raw.lower() else float(raw)
            tokens.append(("num", num))
            i += len(raw)
            continue

        if ch.isalpha() or ch == "_":
            m = re.match(r"[A-Za-z_][A-Za-z0-9_\-]*", text[i:])
            tokens.append(("ident", m.group(0)))
            i += len(m.group(0))
            continue

        for op in _OPERATORS:
            if text.startswith(op, i):
                tokens.append(("op", op))
                i += len(op)
                break
        else:
            raise ExpressionError(text, f"unexpected character {ch!r}")

    tokens.append(("eof", None))
    return tokens


# ----------------------------------------------------------------------
# Parser (recursive descent -> tuple AST)
# ----------------------------------------------------------------------

class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def peek(self) -> Tuple[str, Any]:
        return self.tokens[self.pos]

    def next(self) -> Tuple[str, Any]:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def accept(self, op: str) -> bool:
        if self.peek() == ("op", op):
            self.pos += 1
            return True
        return False

    def expect(self, op: str) -> None:
        if not self.accept(op):
            raise ExpressionError(self.text, f"expected {op!r}")

    def parse(self):
        if self.peek()[0] == "eof":
            raise ExpressionError(self.text, "empty expression")
        node = self.parse_or()
        if self.peek()[0] != "eof":
            raise ExpressionError(self.text, f"unexpected token {self.peek()[1]!r}")
        return node

    def parse_or(self):
        node = self.parse_and()
        while self.accept("||"):
            node = ("or", node, self.parse_and())
        return node

    def parse_and(self):
        node = self.parse_equality()
        while self.accept("&&"):
            node = ("and", node, self.parse_equality())
        return node

    def parse_equality(self):
        node = self.parse_relational()
        while self.peek() in (("op", "=="), ("op", "!=")):
            op = self.next()[1]
            node = ("cmp", op, node, self.parse_relational())
        return node

    def parse_relational(self):
        node = self.parse_unary()
        while self.peek() in (("op", "<"), ("op", "<="), ("op", ">"), ("op", ">=")):
            op = self.next()[1]
            node = ("cmp", op, node, self.parse_unary())
        return node

    def parse_unary(self):
        if self.accept("!"):
            return ("not", self.parse_unary())
        return self.parse_postfix()

    def parse_postfix(self):
        node = self.parse_primary()
        while True:
            if self.accept("."):
                kind, value = self.next()
                if kind != "ident":
                    raise ExpressionError(self.text, "expected property name after '.'")
                node = ("prop", node, ("lit", value))
            elif self.accept("["):
                key = self.parse_or()
                self.expect("]")
                node = ("prop", node, key)
            else:
                return node

    def parse_primary(self):
        kind, value = self.next()
        if kind in ("str", "num"):
            return ("lit", value)
        if kind == "op" and value == "(":
            node = self.parse_or()
            self.expect(")")
            return node
        if kind == "ident":
            lowered = value.lower()
            if lowered == "true":
                return ("lit", True)
            if lowered == "false":
                return ("lit", False)
            if lowered == "null":
                return ("lit", None)
            if self.accept("("):
                args = []
                if not self.accept(")"):
                    args.append(self.parse_or())
                    while self.accept(","):
                        args.append(self.parse_or())
                    self.expect(")")
                if value not in _FUNCTIONS and value not in STATUS_FUNCTIONS:
                    raise ExpressionError(self.text, f"unknown function {value}()")
                return ("call", value, tuple(args))
            return ("ctx", value)
        raise ExpressionError(self.text, f"unexpected token {value!r}")


@lru_cache(maxsize=1024)
def parse_expression(text: str):
    """Parse an expression (without the `${{ }}` wrapper) into an AST."""
    return _Parser(text.strip()).parse()


# ----------------------------------------------------------------------
# Value semantics
# ----------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return 0.0
        try:
            return float(int(s, 16)) if s.lower().startswith("0x") else float(s)
        except ValueError:
            return math.nan
    return math.nan


def _loose_equals(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.casefold() == b.casefold()
    if type(a) is type(b) and not isinstance(a, (int, float)):
        return a == b
    if isinstance(a, (dict, list)) or isinstance(b, (dict, list)):
        return a is b
    x, y = _to_number(a), _to_number(b)
    return not (math.isnan(x) or math.isnan(y)) and x == y


def _compare(op: str, a: Any, b: Any) -> bool:
    if op == "==":
        return _loose_equals(a, b)
    if op == "!=":
        return not _loose_equals(a, b)
    if isinstance(a, str) and isinstance(b, str):
        x, y = a.casefold(), b.casefold()
    else:
        x, y = _to_number(a), _to_number(b)
        if math.isnan(x) or math.isnan(y):
            return False
    if op == "<":
        return x < y
    if op == "<=":
        return x <= y
    if op == ">":
        return x > y
    return x >= y


def to_string(value: Any) -> str:
    """Render an expression result the way templates substitute it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _lookup(obj: Any, key: Any) -> Any:
    if isinstance(obj, Mapping):
        if key in obj:
            return obj[key]
        if isinstance(key, str):
            folded = key.casefold()
            for k, v in obj.items():
                if isinstance(k, str) and k.casefold() == folded:
                    return v
        return None
    if isinstance(obj, (list, tuple)):
        idx = _to_number(key)
        if math.isnan(idx) or not float(idx).is_integer():
            return None
        idx = int(idx)
        return obj[idx] if 0 <= idx < len(obj) else None
    return None


def _fn_contains(search: Any, item: Any) -> bool:
    if isinstance(search, (list, tuple)):
        return any(_loose_equals(x, item) for x in search)
    return to_string(item).casefold() in to_string(search).casefold()


def _fn_format(fmt: Any, *args: Any) -> str:
    text = to_string(fmt)

    def repl(m: re.Match) -> str:
        if m.group(0) == "{{":
            return "{"
        if m.group(0) == "}}":
            return "}"
        idx = int(m.group(1))
        if idx >= len(args):
            raise ExpressionError(text, f"format() is missing argument {idx}")
        return to_string(args[idx])

    return re.sub(r"\{\{|\}\}|\{(\d+)\}", repl, text)


def _fn_join(items: Any, sep: Any = ",") -> str:
    if isinstance(items, (list, tuple)):
        return to_string(sep).join(to_string(x) for x in items)
    return to_string(items)


def _fn_from_json(text: Any) -> Any:
    try:
        return json.loads(to_string(text))
    except json.JSONDecodeError as e:
        raise ExpressionError(to_string(text), f"fromJSON: {e}") from e


_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "contains": _fn_contains,
    "startsWith": lambda s, p: to_string(s).casefold().startswith(to_string(p).casefold()),
    "endsWith": lambda s, p: to_string(s).casefold().endswith(to_string(p).casefold()),
    "format": _fn_format,
    "join": _fn_join,
    "toJSON": lambda v: json.dumps(v, indent=2, sort_keys=True),
    "fromJSON": _fn_from_json,
}

DEFAULT_STATUS: Dict[str, bool] = {
    "success": True,
    "failure": False,
    "cancelled": False,
    "always": True,
}


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

def _eval(node, context: Mapping[str, Any], status: Mapping[str, bool]) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "ctx":
        return _lookup(context, node[1])
    if kind == "prop":
        return _lookup(_eval(node[1], context, status), _eval(node[2], context, status))
    if kind == "not":
        return not truthy(_eval(node[1], context, status))
    if kind == "and":
        left = _eval(node[1], context, status)
        return _eval(node[2], context, status) if truthy(left) else left
    if kind == "or":
        left = _eval(node[1], context, status)
        return left if truthy(left) else _eval(node[2], context, status)
    if kind == "cmp":
        return _compare(node[1], _eval(node[2], context, status), _eval(node[3], context, status))
    if kind == "call":
        name, args = node[1], node[2]
        if name in STATUS_FUNCTIONS:
            return bool(status.get(name, DEFAULT_STATUS[name]))
        return _FUNCTIONS[name](*[_eval(a, context, status) for a in args])
    raise ExpressionError(str(node), "bad node")


def _strip_wrapper(text: str) -> str:
    s = text.strip()
    m = TEMPLATE_RE.fullmatch(s)
    return m.group(1) if m else s


def evaluate(
    expression: str,
    context: Mapping[str, Any],
    status: Optional[Mapping[str, bool]] = None,
) -> Any:
    """Evaluate a bare expression (an optional `${{ }}` wrapper is stripped)."""
    return _eval(parse_expression(_strip_wrapper(expression)), context, status or DEFAULT_STATUS)


def evaluate_condition(
    expression: Optional[str],
    context: Mapping[str, Any],
    status: Optional[Mapping[str, bool]] = None,
) -> bool:
    """
    Evaluate an `if:` predicate.

    A predicate that calls no status function behaves as
    `success() && (<predicate>)`. No predicate means `success()`.
    """
    status = status or DEFAULT_STATUS
    if expression is None or not expression.strip():
        return bool(status.get("success", True))
    text = _strip_wrapper(expression)
    if not _calls_status(parse_expression(text)):
        if not status.get("success", True):
            return False
    return truthy(_eval(parse_expression(text), context, status))


def interpolate(
    text: str,
    context: Mapping[str, Any],
    status: Optional[Mapping[str, bool]] = None,
) -> str:
    """Replace every `${{ expr }}` in `text` with its rendered value."""
    if "${{" not in text:
        return text
    return TEMPLATE_RE.sub(lambda m: to_string(evaluate(m.group(1), context, status)), text)


def interpolate_value(value: Any, context: Mapping[str, Any]) -> Any:
    """Interpolate strings nested anywhere inside lists/dicts."""
    if isinstance(value, str):
        return interpolate(value, context)
    if isinstance(value, Mapping):
        return {k: interpolate_value(v, context) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [interpolate_value(v, context) for v in value]
    return value


# ----------------------------------------------------------------------
# Static checks
# ----------------------------------------------------------------------

def _calls(node, names) -> bool:
    kind = node[0]
    if kind == "call":
        return node[1] in names or any(_calls(a, names) for a in node[2])
    if kind == "prop":
        return _calls(node[1], names) or _calls(node[2], names)
    if kind == "not":
        return _calls(node[1], names)
    if kind in ("and", "or"):
        return _calls(node[1], names) or _calls(node[2], names)
    if kind == "cmp":
        return _calls(node[2], names) or _calls(node[3], names)
    return False


def _calls_status(node) -> bool:
    return _calls(node, STATUS_FUNCTIONS)


def uses_status_function(expression: str) -> bool:
    """True if the predicate calls always(), failure() or cancelled()."""
    try:
        return _calls(parse_expression(_strip_wrapper(expression)), TOLERANT_FUNCTIONS)
    except ExpressionError:
        return False


def validate_expression(expression: str) -> None:
    parse_expression(_strip_wrapper(expression))


def validate_template(text: str) -> None:
    if "${{" not in text:
        return
    for m in TEMPLATE_RE.finditer(text):
        parse_expression(m.group(1))
    if text.count("${{") != len(TEMPLATE_RE.findall(text)):
        raise ExpressionError(text, "unterminated '${{'")
