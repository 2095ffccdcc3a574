"""
Condition expressions for `if:` clauses.

Conditions are parsed into a small tagged expression tree and evaluated
against an explicit context mapping. The language is closed:
equality, boolean and/or/not, membership, and the status checks
`success()`, `failure()` and `always()`.

    branch == 'main' && event in ['push', 'manual']
    ${{ failure() || needs.build.result == 'skipped' }}
"""

import re
from dataclasses import dataclass
from typing import Any, Iterator, List, Mapping, Optional, Set, Tuple, Union

from controller.src.errors import ConditionEvaluationError, ParseError

CONTEXT_ROOTS = ("event", "branch", "actor", "ref", "environment", "inputs", "needs")
STATUS_FUNCTIONS = ("success", "failure", "always")

_KEYWORDS = {"and", "or", "not", "in", "true", "false", "null"}

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<number>-?\d+)
  | (?P<op>==|!=|&&|\|\||!|\(|\)|\[|\]|,)
  | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*)*)
    """,
    re.VERBOSE,
)

@dataclass(frozen=True)
class Literal:
    value: Any

@dataclass(frozen=True)
class ListExpr:
    items: Tuple["Expr", ...]

@dataclass(frozen=True)
class Var:
    path: Tuple[str, ...]

@dataclass(frozen=True)
class Call:
    name: str

@dataclass(frozen=True)
class Not:
    operand: "Expr"

@dataclass(frozen=True)
class And:
    left: "Expr"
    right: "Expr"

@dataclass(frozen=True)
class Or:
    left: "Expr"
    right: "Expr"

@dataclass(frozen=True)
class Compare:
    op: str
    left: "Expr"
    right: "Expr"

@dataclass(frozen=True)
class Membership:
    item: "Expr"
    container: "Expr"
    negated: bool = False

Expr = Union[Literal, ListExpr, Var, Call, Not, And, Or, Compare, Membership]

class Condition:
    """A parsed condition together with its source text."""

    __slots__ = ("source", "expr")

    def __init__(self, source: str, expr: Expr):
        self.source = source
        self.expr = expr

    def __eq__(self, other):
        return isinstance(other, Condition) and other.expr == self.expr

    def __hash__(self):
        return hash(self.expr)

    def __repr__(self):
        return f"Condition({self.source!r})"

def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise ParseError(f"Unsupported operator or character at position {pos}: {text[pos:pos + 10]!r}")
        pos = match.end()
        kind = match.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, match.group()))
    return tokens

class _Parser:
    """Recursive-descent parser over the token list."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def peek(self, offset: int = 0) -> Optional[Tuple[str, str]]:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else None

    def accept(self, *values: str) -> Optional[str]:
        token = self.peek()
        if token and token[1] in values and token[0] in ("op", "name"):
            self.pos += 1
            return token[1]
        return None

    def expect(self, value: str):
        if not self.accept(value):
            found = self.peek()
            raise ParseError(f"Expected '{value}' in condition {self.text!r}, found {found[1] if found else 'end of input'!r}")

    def parse(self) -> Expr:
        if not self.tokens:
            raise ParseError("Empty condition")
        expr = self.parse_or()
        if self.peek() is not None:
            raise ParseError(f"Unexpected token {self.peek()[1]!r} in condition {self.text!r}")
        return expr

    def parse_or(self) -> Expr:
        left = self.parse_and()
        while self.accept("||", "or"):
            left = Or(left, self.parse_and())
        return left

    def parse_and(self) -> Expr:
        left = self.parse_not()
        while self.accept("&&", "and"):
            left = And(left, self.parse_not())
        return left

    def parse_not(self) -> Expr:
        if self.accept("!", "not"):
            return Not(self.parse_not())
        return self.parse_comparison()

    def parse_comparison(self) -> Expr:
        left = self.parse_primary()
        op = self.accept("==", "!=")
        if op:
            return Compare(op, left, self.parse_primary())
        if self.accept("in"):
            return Membership(left, self.parse_primary())
        token = self.peek()
        if token == ("name", "not") and self.peek(1) == ("name", "in"):
            self.pos += 2
            return Membership(left, self.parse_primary(), negated=True)
        return left

    def parse_primary(self) -> Expr:
        token = self.peek()
        if token is None:
            raise ParseError(f"Unexpected end of condition {self.text!r}")
        kind, value = token
        if kind == "string":
            self.pos += 1
            return Literal(_unquote(value))
        if kind == "number":
            self.pos += 1
            return Literal(int(value))
        if value == "(":
            self.pos += 1
            expr = self.parse_or()
            self.expect(")")
            return expr
        if value == "[":
            self.pos += 1
            items = []
            if not self.accept("]"):
                items.append(self.parse_primary())
                while self.accept(","):
                    items.append(self.parse_primary())
                self.expect("]")
            return ListExpr(tuple(items))
        if kind == "name":
            self.pos += 1
            if value in ("true", "false"):
                return Literal(value == "true")
            if value == "null":
                return Literal(None)
            if value in _KEYWORDS:
                raise ParseError(f"Unexpected keyword '{value}' in condition {self.text!r}")
            if self.accept("("):
                self.expect(")")
                if value not in STATUS_FUNCTIONS:
                    raise ParseError(f"Unsupported function '{value}()' in condition {self.text!r}")
                return Call(value)
            path = tuple(value.split("."))
            if path[0] not in CONTEXT_ROOTS:
                raise ParseError(
                    f"Unknown context variable '{value}' in condition {self.text!r}; "
                    f"expected one of {', '.join(CONTEXT_ROOTS)}"
                )
            return Var(path)
        raise ParseError(f"Unsupported operator '{value}' in condition {self.text!r}")

def _unquote(token: str) -> str:
    body = token[1:-1]
    return re.sub(r"\\(.)", r"\1", body)

def parse_condition(source: Any) -> Condition:
    """Parse an `if:` value into a Condition. Booleans are accepted as literals."""
    if isinstance(source, bool):
        return Condition(str(source).lower(), Literal(source))
    if not isinstance(source, str):
        raise ParseError(f"Condition must be a string, got {type(source).__name__}")
    text = source.strip()
    if text.startswith("${{") and text.endswith("}}"):
        text = text[3:-2].strip()
    return Condition(source, _Parser(text).parse())

def walk(expr: Expr) -> Iterator[Expr]:
    """Yield every node of an expression tree."""
    yield expr
    if isinstance(expr, ListExpr):
        for item in expr.items:
            yield from walk(item)
    elif isinstance(expr, Not):
        yield from walk(expr.operand)
    elif isinstance(expr, (And, Or, Compare)):
        yield from walk(expr.left)
        yield from walk(expr.right)
    elif isinstance(expr, Membership):
        yield from walk(expr.item)
        yield from walk(expr.container)

def uses_status_function(condition: Condition) -> bool:
    return any(isinstance(node, Call) for node in walk(condition.expr))

def needs_references(condition: Condition) -> Set[str]:
    """Job names referenced through `needs.<job>`."""
    return {
        node.path[1]
        for node in walk(condition.expr)
        if isinstance(node, Var) and node.path[0] == "needs" and len(node.path) > 1
    }

def _resolve(path: Tuple[str, ...], context: Mapping[str, Any]) -> Any:
    if path[0] not in context:
        raise ConditionEvaluationError(f"Context variable '{path[0]}' is not available")
    value = context[path[0]]
    for depth, key in enumerate(path[1:], start=1):
        if value is None:
            return None
        if not isinstance(value, Mapping):
            raise ConditionEvaluationError(f"'{'.'.join(path[:depth])}' has no property '{key}'")
        if key not in value:
            if path[0] == "needs" and depth == 1:
                raise ConditionEvaluationError(f"Job '{key}' is not listed in needs")
            return None
        value = value[key]
    return value

def evaluate(expr: Expr, context: Mapping[str, Any], status: Optional[Mapping[str, bool]] = None) -> Any:
    """Evaluate an expression tree. Always terminates; never has side effects."""
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, ListExpr):
        return [evaluate(item, context, status) for item in expr.items]
    if isinstance(expr, Var):
        return _resolve(expr.path, context)
    if isinstance(expr, Call):
        if expr.name == "always":
            return True
        if status is None or expr.name not in status:
            raise ConditionEvaluationError(f"Status function '{expr.name}()' is not available here")
        return bool(status[expr.name])
    if isinstance(expr, Not):
        return not evaluate(expr.operand, context, status)
    if isinstance(expr, And):
        return bool(evaluate(expr.left, context, status)) and bool(evaluate(expr.right, context, status))
    if isinstance(expr, Or):
        return bool(evaluate(expr.left, context, status)) or bool(evaluate(expr.right, context, status))
    if isinstance(expr, Compare):
        left = evaluate(expr.left, context, status)
        right = evaluate(expr.right, context, status)
        return (left == right) if expr.op == "==" else (left != right)
    if isinstance(expr, Membership):
        item = evaluate(expr.item, context, status)
        container = evaluate(expr.container, context, status)
        if isinstance(container, str):
            if not isinstance(item, str):
                raise ConditionEvaluationError("Only strings can be tested for membership in a string")
            found = item in container
        elif isinstance(container, (list, tuple, set, frozenset, Mapping)):
            found = item in container
        else:
            raise ConditionEvaluationError(f"Cannot test membership in {type(container).__name__}")
        return not found if expr.negated else found
    raise ConditionEvaluationError(f"Unknown expression node {type(expr).__name__}")

def evaluate_condition(
    condition: Condition,
    context: Mapping[str, Any],
    status: Optional[Mapping[str, bool]] = None,
    implicit_success: bool = True,
) -> bool:
    """
    Evaluate a condition to a boolean.

    Conditions that do not call a status function are implicitly guarded by
    `success()` when `implicit_success` is set.
    """
    result = bool(evaluate(condition.expr, context, status))
    if implicit_success and not uses_status_function(condition):
        if status is None or "success" not in status:
            raise ConditionEvaluationError("Status function 'success()' is not available here")
        return bool(status["success"]) and result
    return result
