"""
Validation helpers for caller-supplied identifiers, operators and ordering.

Everything that ends up spliced into SQL text (column names, comparison
operators, ORDER BY fragments) passes through these checks first.
"""
from __future__ import annotations

import re
from typing import Tuple

_IDENTIFIER_PART = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

ALLOWED_OPERATORS = frozenset(
    {
        "=",
        "!=",
        "<>",
        ">",
        ">=",
        "<",
        "<=",
        "LIKE",
        "ILIKE",
        "NOT LIKE",
        "NOT ILIKE",
        "IS",
        "IS NOT",
        "IS DISTINCT FROM",
        "IS NOT DISTINCT FROM",
    }
)

ORDER_DIRECTIONS = frozenset({"ASC", "DESC"})
NULLS_CLAUSES = frozenset({"NULLS FIRST", "NULLS LAST"})


def is_valid_identifier(name: str) -> bool:
    """Accept ``column`` or dotted ``table.column`` names made of plain identifier parts."""
    if not name:
        return False
    return all(_IDENTIFIER_PART.match(part) for part in name.split("."))


def validate_identifier(name: str) -> str:
    candidate = (name or "").strip()
    if not is_valid_identifier(candidate):
        raise ValueError(f"invalid SQL identifier: {name!r}")
    return candidate


def normalize_operator(operator: str) -> str:
    normalized = " ".join((operator or "").split()).upper()
    if normalized not in ALLOWED_OPERATORS:
        raise ValueError(f"unsupported comparison operator: {operator!r}")
    return normalized


def normalize_direction(direction: str) -> str:
    normalized = (direction or "").strip().upper()
    if normalized not in ORDER_DIRECTIONS:
        raise ValueError(f"invalid order direction: {direction!r}")
    return normalized


def parse_order_expression(expression: str) -> Tuple[str, str, str]:
    """Split ``"name desc nulls last"`` into ``(column, direction, nulls)``.

    Direction defaults to ``ASC``; ``nulls`` is empty when not given.
    """
    tokens = (expression or "").split()
    if not tokens:
        raise ValueError("empty order expression")
    column = validate_identifier(tokens[0])
    rest = [t.upper() for t in tokens[1:]]
    direction = "ASC"
    if rest and rest[0] in ORDER_DIRECTIONS:
        direction = rest.pop(0)
    nulls = ""
    if rest:
        nulls = " ".join(rest)
        if nulls not in NULLS_CLAUSES:
            raise ValueError(f"invalid order expression: {expression!r}")
    return column, direction, nulls


def normalize_order_expression(expression: str) -> str:
    column, direction, nulls = parse_order_expression(expression)
    return " ".join(part for part in (column, direction, nulls) if part)
