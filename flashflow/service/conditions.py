"""Branch condition mini-language.

Grammar::

    condition  := and_expr ('||' and_expr)*
    and_expr   := atom ('&&' atom)*
    atom       := 'true' | 'false'
                | operand '.' method '(' STRING ')'
                | operand ('===' | '!==') value
                | operand ('>' | '>=' | '<' | '<=') value
    method     := 'includes' | 'startsWith' | 'endsWith'
    operand    := '{{' reference '}}' | reference | literal

A reference is written either inside braces or bare with at least one dot
(``LLM.response``). Anything outside the grammar, such as parentheses,
negation, loose equality or arbitrary calls, raises
``UnsupportedConditionError`` instead of evaluating to a default.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional, Union

from flashflow.service.errors import UnsupportedConditionError
from flashflow.service.variables import UNRESOLVED, to_semantic_string

METHODS = ("includes", "startsWith", "endsWith")
EQUALITY_OPS = ("===", "!==")
ORDERING_OPS = (">", ">=", "<", "<=")

_TOKEN_SPEC = [
    ("REF", r"\{\{[^{}]+\}\}"),
    ("STRING", r"'[^']*'|\"[^\"]*\""),
    ("NUMBER", r"-?\d+(?:\.\d+)?"),
    ("OP", r"===|!==|>=|<=|&&|\|\||>|<"),
    ("IDENT", r"[^\W\d]\w*"),
    ("DOT", r"\."),
    ("LBRACKET", r"\["),
    ("RBRACKET", r"\]"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("WS", r"\s+"),
    ("MISMATCH", r"."),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    pos: int


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Reference:
    ref: str


@dataclass(frozen=True)
class MethodCall:
    target: "Operand"
    method: str
    argument: str


@dataclass(frozen=True)
class Comparison:
    op: str
    left: "Operand"
    right: "Operand"


@dataclass(frozen=True)
class And:
    terms: List["Expr"]


@dataclass(frozen=True)
class Or:
    terms: List["Expr"]


Operand = Union[Literal, Reference]
Expr = Union[Literal, MethodCall, Comparison, And, Or]
Resolver = Callable[[str], Any]


def tokenize(condition: str) -> List[Token]:
    tokens: List[Token] = []
    for match in _TOKEN_RE.finditer(condition):
        kind = match.lastgroup or "MISMATCH"
        text = match.group()
        if kind == "WS":
            continue
        if kind == "MISMATCH":
            if text == "=" or text == "!":
                reason = "loose equality and negation are not supported"
            else:
                reason = f"unexpected character {text!r}"
            raise UnsupportedConditionError(condition, reason)
        tokens.append(Token(kind, text, match.start()))
    return tokens


class _Parser:
    def __init__(self, condition: str) -> None:
        self.condition = condition
        self.tokens = tokenize(condition)
        self.pos = 0

    def fail(self, reason: str) -> UnsupportedConditionError:
        return UnsupportedConditionError(self.condition, reason)

    def peek(self, offset: int = 0) -> Optional[Token]:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else None

    def advance(self) -> Token:
        token = self.peek()
        if token is None:
            raise self.fail("unexpected end of expression")
        self.pos += 1
        return token

    def expect(self, kind: str) -> Token:
        token = self.advance()
        if token.kind != kind:
            raise self.fail(f"expected {kind.lower()} at position {token.pos}")
        return token

    def parse(self) -> Expr:
        if not self.tokens:
            return Literal(True)
        expr = self.parse_or()
        if self.peek() is not None:
            raise self.fail(f"unexpected {self.peek().text!r}")
        return expr

    def parse_or(self) -> Expr:
        terms = [self.parse_and()]
        while self._at_op("||"):
            self.advance()
            terms.append(self.parse_and())
        return terms[0] if len(terms) == 1 else Or(terms)

    def parse_and(self) -> Expr:
        terms = [self.parse_atom()]
        while self._at_op("&&"):
            self.advance()
            terms.append(self.parse_atom())
        return terms[0] if len(terms) == 1 else And(terms)

    def _at_op(self, op: str) -> bool:
        token = self.peek()
        return token is not None and token.kind == "OP" and token.text == op

    def parse_atom(self) -> Expr:
        token = self.peek()
        if token is None:
            raise self.fail("unexpected end of expression")
        if token.kind == "LPAREN":
            raise self.fail("parentheses are not supported")

        bare_word = token.kind == "IDENT" and token.text not in ("true", "false")
        operand, method = self.parse_operand(allow_method=True)
        if method is not None:
            return method

        following = self.peek()
        if following is not None and following.kind == "OP" and following.text not in ("&&", "||"):
            if bare_word and not isinstance(operand, Reference):
                raise self.fail(f"unknown identifier {token.text!r}")
            op = self.advance().text
            right = self.parse_value(op)
            return Comparison(op, operand, right)

        if isinstance(operand, Literal) and isinstance(operand.value, bool):
            return operand
        if isinstance(operand, Reference):
            raise self.fail("a reference needs a comparison or a method call")
        raise self.fail(f"{token.text!r} is not a condition")

    def parse_operand(self, *, allow_method: bool = False):
        token = self.advance()
        if token.kind == "REF":
            operand: Operand = Reference(token.text[2:-2].strip())
        elif token.kind == "STRING":
            operand = Literal(token.text[1:-1])
        elif token.kind == "NUMBER":
            operand = Literal(float(token.text))
        elif token.kind == "IDENT" and token.text in ("true", "false"):
            operand = Literal(token.text == "true")
        elif token.kind == "IDENT":
            operand = self._bare_reference(token)
        else:
            raise self.fail(f"unexpected {token.text!r}")

        if self._at_method_call():
            if not allow_method:
                raise self.fail("method calls are only supported on the left side")
            self.advance()
            name = self.advance().text
            if name not in METHODS:
                raise self.fail(f"function {name!r} is not supported")
            self.expect("LPAREN")
            argument = self.expect("STRING").text[1:-1]
            self.expect("RPAREN")
            if isinstance(operand, Literal) and isinstance(operand.value, bool):
                raise self.fail(f"{name} needs a text operand")
            return operand, MethodCall(operand, name, argument)
        return operand, None

    def _at_method_call(self) -> bool:
        dot, name, paren = self.peek(), self.peek(1), self.peek(2)
        return (
            dot is not None
            and dot.kind == "DOT"
            and name is not None
            and name.kind == "IDENT"
            and paren is not None
            and paren.kind == "LPAREN"
        )

    def _bare_reference(self, first: Token) -> Operand:
        parts = [first.text]
        while True:
            token = self.peek()
            if token is None:
                break
            if token.kind == "DOT" and not self._at_method_call():
                self.advance()
                nxt = self.advance()
                if nxt.kind not in ("IDENT", "NUMBER"):
                    raise self.fail(f"unexpected {nxt.text!r} after '.'")
                parts.append("." + nxt.text)
            elif token.kind == "LBRACKET":
                self.advance()
                index = self.advance()
                if index.kind not in ("NUMBER", "STRING"):
                    raise self.fail("bracket index must be a number or a string")
                self.expect("RBRACKET")
                parts.append(f"[{index.text}]")
            else:
                break
        if len(parts) == 1:
            return Literal(first.text)
        return Reference("".join(parts))

    def parse_value(self, op: str) -> Operand:
        token = self.peek()
        if token is None:
            raise self.fail(f"missing value after {op!r}")
        if token.kind == "LPAREN":
            raise self.fail("parentheses are not supported")
        operand, _ = self.parse_operand()
        if op in ORDERING_OPS and isinstance(operand, Literal) and not isinstance(operand.value, float):
            raise self.fail(f"{op!r} needs a number")
        return operand


def parse_condition(condition: str) -> Expr:
    return _Parser(condition or "").parse()


def validate_condition(condition: str) -> Optional[str]:
    """Return the error message for an unsupported condition, else None."""
    try:
        parse_condition(condition)
    except UnsupportedConditionError as exc:
        return exc.message
    return None


def iter_references(expr: Expr) -> Iterator[str]:
    if isinstance(expr, Reference):
        yield expr.ref
    elif isinstance(expr, MethodCall):
        yield from iter_references(expr.target)
    elif isinstance(expr, Comparison):
        yield from iter_references(expr.left)
        yield from iter_references(expr.right)
    elif isinstance(expr, (And, Or)):
        for term in expr.terms:
            yield from iter_references(term)


def _value(operand: Operand, resolve: Resolver) -> Any:
    if isinstance(operand, Reference):
        return resolve(operand.ref)
    return operand.value


def _as_number(value: Any) -> Optional[float]:
    if value is UNRESOLVED or value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _call_method(call: MethodCall, resolve: Resolver) -> bool:
    value = _value(call.target, resolve)
    if value is UNRESOLVED or value is None:
        return False
    if call.method == "includes" and isinstance(value, (list, tuple)):
        return any(to_semantic_string(item) == call.argument for item in value)
    text = to_semantic_string(value)
    if call.method == "includes":
        return call.argument in text
    if call.method == "startsWith":
        return text.startswith(call.argument)
    return text.endswith(call.argument)


def _compare(comparison: Comparison, resolve: Resolver) -> bool:
    left = _value(comparison.left, resolve)
    right = _value(comparison.right, resolve)
    if comparison.op in EQUALITY_OPS:
        equal = to_semantic_string(left) == to_semantic_string(right)
        return equal if comparison.op == "===" else not equal
    lhs, rhs = _as_number(left), _as_number(right)
    if lhs is None or rhs is None:
        return False
    if comparison.op == ">":
        return lhs > rhs
    if comparison.op == ">=":
        return lhs >= rhs
    if comparison.op == "<":
        return lhs < rhs
    return lhs <= rhs


def evaluate(expr: Expr, resolve: Resolver) -> bool:
    if isinstance(expr, Literal):
        return bool(expr.value)
    if isinstance(expr, MethodCall):
        return _call_method(expr, resolve)
    if isinstance(expr, Comparison):
        return _compare(expr, resolve)
    if isinstance(expr, And):
        return all(evaluate(term, resolve) for term in expr.terms)
    if isinstance(expr, Or):
        return any(evaluate(term, resolve) for term in expr.terms)
    raise TypeError(f"unknown condition node {type(expr).__name__}")


def evaluate_condition(condition: str, resolve: Resolver) -> bool:
    """Parse and evaluate ``condition``; an empty condition is true."""
    if not condition or not condition.strip():
        return True
    return evaluate(parse_condition(condition), resolve)
