from __future__ import annotations
import re
from typing import Callable, List, Optional, Tuple, Union

from lexer import SesError


Number = Union[int, float]

NUMBER_RE = re.compile(r"[-+]?\d+(?:\.\d+)?$")
_ARITH_TOKEN_RE = re.compile(r"\s*(?:(\d+(?:\.\d+)?)|([-+*/:%()]))")

MAX_INTERPOLATION_DEPTH = 32


class EvaluationError(SesError):
    """Raised for malformed values; the interpreter attaches the location."""


def is_number(text: str) -> bool:
    return NUMBER_RE.match(text.strip()) is not None


def parse_number(text: str) -> Number:
    stripped = text.strip()
    if not NUMBER_RE.match(stripped):
        raise EvaluationError(f"'{text}' is not a number")
    if "." in stripped:
        value = float(stripped)
        return int(value) if value.is_integer() else value
    return int(stripped)


def format_number(value: Number) -> str:
    """Integral values print without decimals, others with six."""
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return "%f" % value
    return str(value)


class Interpolator:
    """Expands ``$(name)`` references, re-expanding substituted values."""

    def __init__(self, pattern: "re.Pattern[str]", lookup: Callable[[str], Optional[str]]) -> None:
        self.pattern = pattern
        self.lookup = lookup

    def expand(self, text: str) -> str:
        return self._expand(text, 0)

    def references(self, text: str) -> List[str]:
        return [match.group(1) for match in self.pattern.finditer(text)]

    def _expand(self, text: str, depth: int) -> str:
        if depth > MAX_INTERPOLATION_DEPTH:
            raise EvaluationError(f"Variable expansion nested deeper than {MAX_INTERPOLATION_DEPTH} levels")

        def replace(match: "re.Match[str]") -> str:
            name = match.group(1)
            value = self.lookup(name)
            if value is None:
                raise EvaluationError(f"Variable '{name}' used before definition")
            return self._expand(value, depth + 1)

        return self.pattern.sub(replace, text)


class ArithmeticEvaluator:
    """Recursive descent over ``+ - * / : %`` and parentheses.

    ``/`` and ``%`` truncate toward zero on integers, ``:`` divides exactly.
    """

    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = self._tokenize(text)
        self.index = 0

    def evaluate(self) -> Number:
        if not self.tokens:
            raise EvaluationError("Missing arithmetic expression")
        value = self._parse_sum()
        if self.index < len(self.tokens):
            raise EvaluationError(f"Unexpected '{self.tokens[self.index][1]}' in '{self.text}'")
        return value

    def _tokenize(self, text: str) -> List[Tuple[str, str]]:
        tokens: List[Tuple[str, str]] = []
        position = 0
        while position < len(text):
            match = _ARITH_TOKEN_RE.match(text, position)
            if match is None:
                if not text[position:].strip():
                    break
                raise EvaluationError(f"Invalid arithmetic expression '{text}'")
            if match.group(1) is not None:
                tokens.append(("NUMBER", match.group(1)))
            else:
                tokens.append(("OP", match.group(2)))
            position = match.end()
        return tokens

    def _parse_sum(self) -> Number:
        value = self._parse_product()
        while self._peek_op() in ("+", "-"):
            op = self._next()[1]
            right = self._parse_product()
            value = value + right if op == "+" else value - right
        return value

    def _parse_product(self) -> Number:
        value = self._parse_unary()
        while self._peek_op() in ("*", "/", ":", "%"):
            op = self._next()[1]
            right = self._parse_unary()
            value = self._apply(op, value, right)
        return value

    def _parse_unary(self) -> Number:
        op = self._peek_op()
        if op in ("+", "-"):
            self._next()
            value = self._parse_unary()
            return -value if op == "-" else value
        return self._parse_primary()

    def _parse_primary(self) -> Number:
        if self.index >= len(self.tokens):
            raise EvaluationError(f"Unexpected end of expression '{self.text}'")
        kind, value = self._next()
        if kind == "NUMBER":
            return parse_number(value)
        if value == "(":
            inner = self._parse_sum()
            if self._peek_op() != ")":
                raise EvaluationError(f"Missing ')' in '{self.text}'")
            self._next()
            return inner
        raise EvaluationError(f"Unexpected '{value}' in '{self.text}'")

    def _apply(self, op: str, left: Number, right: Number) -> Number:
        if op == "*":
            return left * right
        if right == 0:
            raise EvaluationError(f"Division by zero in '{self.text}'")
        if op == ":":
            result = left / right
            return int(result) if result.is_integer() else result
        dividend, divisor = int(left), int(right)
        if divisor == 0:
            raise EvaluationError(f"Division by zero in '{self.text}'")
        quotient = abs(dividend) // abs(divisor)
        if (dividend < 0) != (divisor < 0):
            quotient = -quotient
        if op == "/":
            return quotient
        return dividend - quotient * divisor

    def _peek_op(self) -> Optional[str]:
        if self.index < len(self.tokens) and self.tokens[self.index][0] == "OP":
            return self.tokens[self.index][1]
        return None

    def _next(self) -> Tuple[str, str]:
        token = self.tokens[self.index]
        self.index += 1
        return token


def evaluate_arithmetic(text: str) -> Number:
    return ArithmeticEvaluator(text).evaluate()


NUMERIC_OPERATORS = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}

STRING_OPERATORS = {
    "-eq": lambda a, b: a == b,
    "-ne": lambda a, b: a != b,
    "-lt": lambda a, b: a < b,
    "-le": lambda a, b: a <= b,
    "-gt": lambda a, b: a > b,
    "-ge": lambda a, b: a >= b,
}


def compare(operator: str, left: str, right: str) -> bool:
    if operator in NUMERIC_OPERATORS:
        if not is_number(left) or not is_number(right):
            raise EvaluationError(f"Operator '{operator}' needs numbers, got '{left}' and '{right}'")
        return NUMERIC_OPERATORS[operator](parse_number(left), parse_number(right))
    if operator in STRING_OPERATORS:
        return STRING_OPERATORS[operator](left, right)
    raise EvaluationError(f"Unknown operator '{operator}'")


def truthy(value: str, *, quoted: bool) -> bool:
    if not quoted and is_number(value):
        return parse_number(value) != 0
    return value != ""
