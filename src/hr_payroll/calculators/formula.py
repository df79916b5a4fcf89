"""Restricted arithmetic formulas for company payroll templates.

Grammar::

    expr   := term (("+" | "-") term)*
    term   := factor (("*" | "/") factor)*
    factor := ("+" | "-") factor | NUMBER | "{" NAME "}" | "(" expr ")"

Only the placeholders in ``ALLOWED_VARIABLES`` may be referenced. Expressions
are parsed once into a small tree and evaluated with Decimal arithmetic;
nothing is ever handed to ``eval``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, DecimalException
from functools import lru_cache
from typing import Mapping, Union

ALLOWED_VARIABLES = frozenset(
    {"basic_salary", "gross_salary", "annual_salary", "years_of_service"}
)

MAX_EXPRESSION_LENGTH = 500

_TOKEN_RE = re.compile(
    r"\s*(?:(?P<number>\d+(?:\.\d+)?|\.\d+)|\{(?P<var>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<op>[-+*/()]))"
)


class UnsafeFormulaError(Exception):
    """Raised when an expression uses anything outside the whitelist."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Rejected formula {expression!r}: {reason}")


class FormulaEvaluationError(Exception):
    """Raised when a well-formed expression cannot be evaluated."""


@dataclass(frozen=True)
class _Number:
    value: Decimal


@dataclass(frozen=True)
class _Variable:
    name: str


@dataclass(frozen=True)
class _Unary:
    op: str
    operand: _Node


@dataclass(frozen=True)
class _Binary:
    op: str
    left: _Node
    right: _Node


_Node = Union[_Number, _Variable, _Unary, _Binary]


def _tokenize(expression: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    length = len(expression)
    while pos < length:
        if expression[pos:].strip() == "":
            break
        match = _TOKEN_RE.match(expression, pos)
        if match is None:
            fragment = expression[pos:].strip()[:20]
            raise UnsafeFormulaError(expression, f"unexpected input at {fragment!r}")
        if match.group("number") is not None:
            tokens.append(("number", match.group("number")))
        elif match.group("var") is not None:
            name = match.group("var")
            if name not in ALLOWED_VARIABLES:
                raise UnsafeFormulaError(expression, f"unknown placeholder {{{name}}}")
            tokens.append(("var", name))
        else:
            tokens.append(("op", match.group("op")))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, expression: str, tokens: list[tuple[str, str]]):
        self.expression = expression
        self.tokens = tokens
        self.pos = 0

    def _peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> tuple[str, str]:
        token = self._peek()
        if token is None:
            raise UnsafeFormulaError(self.expression, "unexpected end of expression")
        self.pos += 1
        return token

    def parse(self) -> _Node:
        if not self.tokens:
            raise UnsafeFormulaError(self.expression, "empty expression")
        node = self._expr()
        if self._peek() is not None:
            raise UnsafeFormulaError(
                self.expression, f"unexpected token {self._peek()[1]!r}"
            )
        return node

    def _expr(self) -> _Node:
        node = self._term()
        while self._peek() in (("op", "+"), ("op", "-")):
            op = self._take()[1]
            node = _Binary(op, node, self._term())
        return node

    def _term(self) -> _Node:
        node = self._factor()
        while self._peek() in (("op", "*"), ("op", "/")):
            op = self._take()[1]
            node = _Binary(op, node, self._factor())
        return node

    def _factor(self) -> _Node:
        kind, text = self._take()
        if kind == "number":
            return _Number(Decimal(text))
        if kind == "var":
            return _Variable(text)
        if text in ("+", "-"):
            return _Unary(text, self._factor())
        if text == "(":
            node = self._expr()
            if self._take() != ("op", ")"):
                raise UnsafeFormulaError(self.expression, "unbalanced parentheses")
            return node
        raise UnsafeFormulaError(self.expression, f"unexpected token {text!r}")


@dataclass(frozen=True)
class CompiledFormula:
    """A parsed, whitelisted expression ready for evaluation."""

    expression: str
    tree: _Node

    def evaluate(self, variables: Mapping[str, Decimal]) -> Decimal:
        return _evaluate(self.tree, variables)

    def variables(self) -> set[str]:
        """Placeholders referenced by the expression."""
        found: set[str] = set()
        stack: list[_Node] = [self.tree]
        while stack:
            node = stack.pop()
            if isinstance(node, _Variable):
                found.add(node.name)
            elif isinstance(node, _Unary):
                stack.append(node.operand)
            elif isinstance(node, _Binary):
                stack.extend((node.left, node.right))
        return found


def _evaluate(node: _Node, variables: Mapping[str, Decimal]) -> Decimal:
    if isinstance(node, _Number):
        return node.value
    if isinstance(node, _Variable):
        return Decimal(variables.get(node.name, Decimal("0")))
    if isinstance(node, _Unary):
        value = _evaluate(node.operand, variables)
        return -value if node.op == "-" else value

    left = _evaluate(node.left, variables)
    right = _evaluate(node.right, variables)
    if node.op == "/" and right == 0:
        raise FormulaEvaluationError("division by zero")
    try:
        if node.op == "+":
            return left + right
        if node.op == "-":
            return left - right
        if node.op == "*":
            return left * right
        return left / right
    except DecimalException as e:
        raise FormulaEvaluationError(str(e)) from e


@lru_cache(maxsize=512)
def compile_formula(expression: str) -> CompiledFormula:
    """Parse and validate an expression, caching the result per string."""
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise UnsafeFormulaError(expression[:40], "expression too long")
    tokens = _tokenize(expression)
    return CompiledFormula(expression=expression, tree=_Parser(expression, tokens).parse())
