from __future__ import annotations
from typing import Any, Dict, List

import numpy as np

from lexer import ABAPError, Lexer, Token
from typesystem import NUMBER, Value, boolean, number, string, to_value, truthy


class ExpressionError(ABAPError):
    """Raised when an expression cannot be evaluated."""


COMPARISON_PRECEDENCE = 1

BINARY_PRECEDENCE: Dict[str, int] = {
    "=": COMPARISON_PRECEDENCE,
    "<>": COMPARISON_PRECEDENCE,
    ">": COMPARISON_PRECEDENCE,
    "<": COMPARISON_PRECEDENCE,
    "+": 2,
    "-": 2,
    "*": 3,
    "/": 3,
}


class Parser:
    """Evaluates a token stream directly, looking variables up in ``env``.

    ``env`` only needs a ``get_optional(name)`` method returning a slot with
    ``descriptor`` and ``value`` attributes, or ``None``.
    """

    def __init__(self, tokens: List[Token], env: Any) -> None:
        self.tokens = tokens
        self.env = env
        self.index = 0

    def parse(self) -> Value:
        if self._peek().type == "EOF":
            raise ExpressionError("Empty expression")
        result = self._parse_binary(COMPARISON_PRECEDENCE)
        token = self._peek()
        if token.type == "RPAREN":
            raise ExpressionError(f"Unbalanced parenthesis at column {token.column}")
        if token.type != "EOF":
            raise ExpressionError(f"Unexpected token '{token.value}' at column {token.column}")
        return result

    def _parse_binary(self, min_prec: int) -> Value:
        left = self._parse_unary()
        while True:
            token = self._peek()
            prec = BINARY_PRECEDENCE.get(token.value) if token.type == "OP" else None
            if prec is None or prec < min_prec:
                return left
            self.index += 1
            right = self._parse_binary(prec + 1)
            if prec == COMPARISON_PRECEDENCE:
                left = self._compare(token.value, left, right)
                following = self._peek()
                if following.type == "OP" and BINARY_PRECEDENCE.get(following.value) == COMPARISON_PRECEDENCE:
                    raise ExpressionError(
                        f"Comparisons cannot be chained ('{following.value}' at column {following.column})"
                    )
            else:
                left = self._arithmetic(token.value, left, right)

    def _parse_unary(self) -> Value:
        token = self._peek()
        if token.type == "OP" and token.value in ("+", "-"):
            self.index += 1
            operand = self._parse_unary()
            if operand.type != NUMBER:
                raise ExpressionError(f"Unary '{token.value}' expects a numeric operand")
            return operand if token.value == "+" else number(-operand.value)
        return self._parse_primary()

    def _parse_primary(self) -> Value:
        token = self._peek()
        if token.type == "NUMBER":
            self.index += 1
            return number(float(token.value))
        if token.type == "STRING":
            self.index += 1
            return string(token.value)
        if token.type == "IDENT":
            self.index += 1
            return self._lookup(token.value)
        if token.type == "LPAREN":
            self.index += 1
            if self._peek().type == "RPAREN":
                raise ExpressionError(f"Empty parentheses at column {token.column}")
            inner = self._parse_binary(COMPARISON_PRECEDENCE)
            if self._peek().type != "RPAREN":
                raise ExpressionError(f"Unbalanced parenthesis at column {token.column}")
            self.index += 1
            return inner
        if token.type == "EOF":
            raise ExpressionError("Unexpected end of expression")
        raise ExpressionError(f"Unexpected token '{token.value}' at column {token.column}")

    def _lookup(self, name: str) -> Value:
        slot = self.env.get_optional(name)
        if slot is None:
            raise ExpressionError(f'Variable "{name}" is not declared')
        if slot.descriptor.is_table:
            raise ExpressionError(f'Table "{name}" cannot be used in an expression')
        return to_value(slot.descriptor, slot.value)

    def _arithmetic(self, op: str, left: Value, right: Value) -> Value:
        if left.type != NUMBER or right.type != NUMBER:
            raise ExpressionError(f"Operator '{op}' expects numeric operands")
        a = np.float64(left.value)
        b = np.float64(right.value)
        # IEEE semantics: x/0 is +-Infinity, 0/0 is NaN.
        with np.errstate(all="ignore"):
            if op == "+":
                return number(a + b)
            if op == "-":
                return number(a - b)
            if op == "*":
                return number(a * b)
            return number(np.divide(a, b))

    def _compare(self, op: str, left: Value, right: Value) -> Value:
        if op in ("=", "<>"):
            if left.type != right.type:
                raise ExpressionError(
                    f"Cannot compare {left.type.lower()} with {right.type.lower()} using '{op}'"
                )
            equal = left.value == right.value
            return boolean(equal if op == "=" else not equal)
        if left.type != NUMBER or right.type != NUMBER:
            raise ExpressionError(f"Operator '{op}' expects numeric operands")
        if op == ">":
            return boolean(left.value > right.value)
        return boolean(left.value < right.value)

    def _peek(self) -> Token:
        return self.tokens[self.index]


def evaluate(text: str, env: Any) -> Value:
    tokens = Lexer(text).tokenize()
    try:
        return Parser(tokens, env).parse()
    except RecursionError:
        raise ExpressionError("Expression is nested too deeply") from None


def evaluate_condition(text: str, env: Any) -> bool:
    return truthy(evaluate(text, env))
