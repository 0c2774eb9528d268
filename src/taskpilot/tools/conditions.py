"""Value comparison and the small boolean language used by conditional steps."""

from __future__ import annotations

import json
import re
from typing import Any, Callable

OPERATORS = ("==", "!=", ">", "<", ">=", "<=", "contains", "starts_with", "ends_with")

_FALSY_TEXT = {"", "false", "0", "null", "none", "no", "undefined"}

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<template>\{\{[^{}]*\}\})
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<op>===|!==|==|!=|>=|<=|&&|\|\||>|<|!|\(|\))
      | (?P<word>[^\s()!<>=&|"']+)
    )
    """,
    re.VERBOSE,
)

_WORD_OPERATORS = {"contains", "starts_with", "ends_with"}


class ConditionSyntaxError(ValueError):
    """Raised when a condition expression cannot be parsed."""


def to_text(value: Any) -> str:
    """Render a value the way it is stored in context memory."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def parse_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def compare(left: Any, operator: str, right: Any) -> bool:
    """Compare two operands; raises ValueError for unknown operators."""
    op = operator.strip()
    if op == "===":
        op = "=="
    elif op == "!==":
        op = "!="
    if op not in OPERATORS:
        raise ValueError(f"Unknown operator: {operator}")

    left_num = parse_number(left)
    right_num = parse_number(right)
    if left_num is not None and right_num is not None and op not in _WORD_OPERATORS:
        return _ordered(left_num, op, right_num)

    left_text = to_text(left)
    right_text = to_text(right)
    if op == "contains":
        return right_text in left_text
    if op == "starts_with":
        return left_text.startswith(right_text)
    if op == "ends_with":
        return left_text.endswith(right_text)
    return _ordered(left_text, op, right_text)


def _ordered(left: Any, op: str, right: Any) -> bool:
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    if op == ">":
        return left > right
    if op == "<":
        return left < right
    if op == ">=":
        return left >= right
    return left <= right


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    text = to_text(value).strip()
    if text.startswith("{{") and text.endswith("}}"):
        # Unresolved template: the referenced value does not exist yet.
        return False
    return text.lower() not in _FALSY_TEXT


def evaluate_expression(
    expression: str,
    *,
    resolve: Callable[[str], str] | None = None,
) -> bool:
    """Evaluate expressions such as ``12 >= 10 and not false``.

    Supports ``and``/``&&``, ``or``/``||``, ``not``/``!``, parentheses, the
    comparison operators of :func:`compare` and bare values tested for truthiness.

    ``resolve`` expands ``{{...}}`` references after tokenizing, so a resolved
    value is always a single operand and never expression syntax.
    """
    parser = _ExpressionParser(_tokenize(expression, resolve))
    result = parser.parse_or()
    if not parser.at_end():
        raise ConditionSyntaxError(f"Unexpected token in condition: {parser.peek()!r}")
    return result


def _tokenize(
    expression: str,
    resolve: Callable[[str], str] | None = None,
) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    position = 0
    text = expression.strip()
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if match is None or match.end() == position:
            raise ConditionSyntaxError(f"Cannot parse condition near: {text[position:]!r}")
        position = match.end()
        if match.group("template") is not None:
            raw = match.group("template")
            tokens.append(("value", resolve(raw) if resolve is not None else raw))
        elif match.group("string") is not None:
            raw = match.group("string")
            literal = raw[1:-1].replace("\\" + raw[0], raw[0])
            tokens.append(("value", resolve(literal) if resolve is not None else literal))
        elif match.group("op") is not None:
            tokens.append(("op", match.group("op")))
        elif match.group("word") is not None:
            word = match.group("word")
            lowered = word.lower()
            if lowered in {"and", "or", "not"} | _WORD_OPERATORS:
                tokens.append(("op", lowered))
            else:
                tokens.append(("value", word))
    return tokens


class _ExpressionParser:
    def __init__(self, tokens: list[tuple[str, str]]) -> None:
        self.tokens = tokens
        self.index = 0

    def at_end(self) -> bool:
        return self.index >= len(self.tokens)

    def peek(self) -> tuple[str, str] | None:
        return None if self.at_end() else self.tokens[self.index]

    def _accept(self, *ops: str) -> str | None:
        token = self.peek()
        if token is not None and token[0] == "op" and token[1] in ops:
            self.index += 1
            return token[1]
        return None

    def parse_or(self) -> bool:
        result = self.parse_and()
        while self._accept("or", "||"):
            right = self.parse_and()
            result = result or right
        return result

    def parse_and(self) -> bool:
        result = self.parse_not()
        while self._accept("and", "&&"):
            right = self.parse_not()
            result = result and right
        return result

    def parse_not(self) -> bool:
        if self._accept("not", "!"):
            return not self.parse_not()
        return self.parse_atom()

    def parse_atom(self) -> bool:
        if self._accept("("):
            result = self.parse_or()
            if not self._accept(")"):
                raise ConditionSyntaxError("Missing closing parenthesis in condition")
            return result

        left = self._operand()
        operator = self._accept(*OPERATORS, "===", "!==")
        if operator is None:
            return is_truthy(left)
        right = self._operand()
        return compare(left, operator, right)

    def _operand(self) -> str:
        words: list[str] = []
        while True:
            token = self.peek()
            if token is None or token[0] != "value":
                break
            words.append(token[1])
            self.index += 1
        if not words:
            raise ConditionSyntaxError(f"Expected a value in condition, found {self.peek()!r}")
        return " ".join(words)
