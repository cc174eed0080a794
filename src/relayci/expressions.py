"""
Expression evaluation for `if:` conditions and `${{ }}` interpolation.

Everything here is a pure function of the expression text, an explicit
context mapping and (for conditions) a `StatusView` describing the job's
predecessors. Nothing reads global state.

Supported grammar:

    expr     := or
    or       := and ('||' and)*
    and      := not ('&&' not)*
    not      := '!' not | compare
    compare  := primary (('==' | '!=') primary)?
    primary  := literal | path | call | '(' expr ')'
    path     := IDENT ('.' IDENT)*
    call     := IDENT '(' [expr (',' expr)*] ')'
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from .errors import ExpressionError

_INTERPOLATION = re.compile(r"\$\{\{\s*(.*?)\s*\}\}", re.DOTALL)

_TOKEN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^']|'')*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>==|!=|&&|\|\||!|\(|\)|,|\.)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

STATUS_FUNCTIONS = frozenset({"always", "success", "failure", "cancelled"})


@dataclass(frozen=True)
class StatusView:
    """What the status functions see for one evaluation."""
    succeeded: bool = True
    failed: bool = False
    cancelled: bool = False


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

Token = Tuple[str, str]


def _tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if not m:
            raise ExpressionError(f"unexpected character {text[pos]!r} in expression: {text}")
        pos = m.end()
        kind = m.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, m.group()))
    return tokens


# AST nodes are plain tuples: ("lit", v) ("path", [..]) ("call", name, [args])
# ("not", x) ("and", a, b) ("or", a, b) ("eq", a, b) ("ne", a, b)

class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, value: Optional[str] = None) -> Token:
        tok = self._peek()
        if tok is None or (value is not None and tok[1] != value):
            want = value or "a token"
            raise ExpressionError(f"expected {want} in expression: {self.text}")
        self.pos += 1
        return tok

    def parse(self):
        if not self.tokens:
            raise ExpressionError("empty expression")
        node = self._or()
        if self._peek() is not None:
            raise ExpressionError(f"unexpected {self._peek()[1]!r} in expression: {self.text}")
        return node

    def _or(self):
        node = self._and()
        while self._peek() == ("op", "||"):
            self._take()
            node = ("or", node, self._and())
        return node

    def _and(self):
        node = self._not()
        while self._peek() == ("op", "&&"):
            self._take()
            node = ("and", node, self._not())
        return node

    def _not(self):
        if self._peek() == ("op", "!"):
            self._take()
            return ("not", self._not())
        return self._compare()

    def _compare(self):
        left = self._primary()
        tok = self._peek()
        if tok in (("op", "=="), ("op", "!=")):
            self._take()
            right = self._primary()
            return ("eq" if tok[1] == "==" else "ne", left, right)
        return left

    def _primary(self):
        tok = self._take()
        kind, value = tok
        if kind == "string":
            return ("lit", value[1:-1].replace("''", "'"))
        if kind == "number":
            return ("lit", float(value) if "." in value else int(value))
        if tok == ("op", "("):
            node = self._or()
            self._take(")")
            return node
        if kind != "ident":
            raise ExpressionError(f"unexpected {value!r} in expression: {self.text}")

        lowered = value.lower()
        if lowered in ("true", "false"):
            return ("lit", lowered == "true")
        if lowered == "null":
            return ("lit", None)

        if self._peek() == ("op", "("):
            self._take()
            args = []
            if self._peek() != ("op", ")"):
                args.append(self._or())
                while self._peek() == ("op", ","):
                    self._take()
                    args.append(self._or())
            self._take(")")
            return ("call", value, args)

        parts = [value]
        while self._peek() == ("op", "."):
            self._take()
            parts.append(self._take()[1])
        return ("path", parts)


@lru_cache(maxsize=512)
def parse(expr: str):
    """Parse an expression (with or without a `${{ }}` wrapper) into an AST."""
    return _Parser(_unwrap(expr)).parse()


def _unwrap(expr: str) -> str:
    text = expr.strip()
    m = _INTERPOLATION.fullmatch(text)
    return m.group(1) if m else text


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

def truthy(value: Any) -> bool:
    return value not in (None, False, 0, "")


def _lookup(context: Mapping[str, Any], parts: List[str]) -> Any:
    current: Any = context
    for part in parts:
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return None
    return current


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple, set, frozenset)):
        return any(_text(item).lower() == _text(needle).lower() for item in haystack)
    return _text(needle).lower() in _text(haystack).lower()


_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "contains": _contains,
    "startswith": lambda a, b: _text(a).lower().startswith(_text(b).lower()),
    "endswith": lambda a, b: _text(a).lower().endswith(_text(b).lower()),
}


def _eval(node, context: Mapping[str, Any], status: StatusView) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "path":
        return _lookup(context, node[1])
    if kind == "not":
        return not truthy(_eval(node[1], context, status))
    if kind == "and":
        left = _eval(node[1], context, status)
        return _eval(node[2], context, status) if truthy(left) else left
    if kind == "or":
        left = _eval(node[1], context, status)
        return left if truthy(left) else _eval(node[2], context, status)
    if kind in ("eq", "ne"):
        left = _eval(node[1], context, status)
        right = _eval(node[2], context, status)
        if isinstance(left, str) and isinstance(right, str):
            same = left.lower() == right.lower()
        else:
            same = left == right
        return same if kind == "eq" else not same
    if kind == "call":
        name = node[1].lower()
        if name in STATUS_FUNCTIONS:
            if node[2]:
                raise ExpressionError(f"{node[1]}() takes no arguments")
            return {
                "always": True,
                "success": status.succeeded and not status.cancelled,
                "failure": status.failed,
                "cancelled": status.cancelled,
            }[name]
        fn = _FUNCTIONS.get(name)
        if fn is None:
            raise ExpressionError(f"unknown function {node[1]}()")
        args = [_eval(arg, context, status) for arg in node[2]]
        try:
            return fn(*args)
        except TypeError as e:
            raise ExpressionError(f"bad arguments to {node[1]}(): {e}") from e
    raise ExpressionError(f"unknown node {kind}")


def evaluate(expr: str, context: Mapping[str, Any], status: StatusView = StatusView()) -> Any:
    return _eval(parse(expr), context, status)


def _calls_status_function(node) -> bool:
    kind = node[0]
    if kind == "call":
        return node[1].lower() in STATUS_FUNCTIONS or any(_calls_status_function(a) for a in node[2])
    if kind in ("lit", "path"):
        return False
    return any(_calls_status_function(child) for child in node[1:])


def evaluate_condition(
    expr: Optional[str],
    context: Mapping[str, Any],
    status: StatusView = StatusView(),
) -> bool:
    """
    Evaluate an `if:` condition.

    A missing condition means `success()`. A condition that calls none of
    the status functions is evaluated as `success() && (<expr>)`.
    """
    if expr is None or not expr.strip():
        return status.succeeded and not status.cancelled
    node = parse(expr)
    if not _calls_status_function(node):
        if not (status.succeeded and not status.cancelled):
            return False
    return truthy(_eval(node, context, status))


def interpolate(text: str, context: Mapping[str, Any]) -> str:
    """Replace every `${{ expr }}` in `text` with its evaluated value."""
    if "${{" not in text:
        return text
    return _INTERPOLATION.sub(lambda m: _text(evaluate(m.group(1), context)), text)


def check_interpolations(text: str) -> None:
    """Parse every `${{ }}` in `text`; raises ExpressionError on the first bad one."""
    for m in _INTERPOLATION.finditer(text):
        parse(m.group(1))


def _collect_paths(node, out: List[List[str]]) -> None:
    if node[0] == "path":
        out.append(node[1])
    elif node[0] == "call":
        for arg in node[2]:
            _collect_paths(arg, out)
    elif node[0] != "lit":
        for child in node[1:]:
            _collect_paths(child, out)


def references(text: str, namespace: str) -> Set[str]:
    """Names referenced as `<namespace>.<name>` by every `${{ }}` in `text`."""
    found: Set[str] = set()
    for m in _INTERPOLATION.finditer(text):
        paths: List[List[str]] = []
        _collect_paths(parse(m.group(1)), paths)
        found.update(p[1] for p in paths if len(p) > 1 and p[0] == namespace)
    return found
