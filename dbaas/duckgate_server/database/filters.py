"""
Filter and sort translation to parameterized SQL fragments.

Caller values never appear in SQL text; they are returned as a positional
parameter list for ``?`` placeholders. Identifiers are written into SQL
directly (the engine cannot bind identifiers), so callers validate them
with ``validate_identifier`` before they reach this module.

Invariants:
    - Fragments and parameters are produced in filter order
    - Every operator binds its value(s); ``in`` binds one parameter per element
    - Translation is pure: no shared state, safe from any thread
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import ValidationError

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]+$")


class FilterOperator(Enum):
    """Supported filter operators."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    LIKE = "like"
    IN = "in"


class SortDirection(Enum):
    """Sort order."""

    ASC = "asc"
    DESC = "desc"


_COMPARISONS = {
    FilterOperator.EQ: "=",
    FilterOperator.NE: "!=",
    FilterOperator.GT: ">",
    FilterOperator.GTE: ">=",
    FilterOperator.LT: "<",
    FilterOperator.LTE: "<=",
    FilterOperator.LIKE: "LIKE",
}


def validate_identifier(name: str, kind: str = "identifier") -> str:
    """Check a table or column name against the allow-list.

    Args:
        name: Identifier to check
        kind: What the identifier names, for the error message

    Returns:
        The identifier, unchanged

    Raises:
        ValidationError: If the name is empty or has characters outside [A-Za-z0-9_]
    """
    if not name:
        raise ValidationError(f"{kind} name cannot be empty", field_name=kind)
    if not _IDENTIFIER_RE.match(name):
        raise ValidationError(
            f"invalid {kind} name '{name}': must contain only alphanumeric characters and underscores",
            field_name=kind,
        )
    return name


@dataclass(frozen=True)
class Filter:
    """A single ``column operator value`` condition.

    Attributes:
        column: Pre-validated column name
        operator: Comparison operator (string values are coerced)
        value: Scalar, or a sequence for ``in``
    """

    column: str
    operator: FilterOperator
    value: Any = None

    def __post_init__(self) -> None:
        if not isinstance(self.operator, FilterOperator):
            try:
                operator = FilterOperator(str(self.operator).lower())
            except ValueError:
                valid = ", ".join(op.value for op in FilterOperator)
                raise ValidationError(
                    f"invalid operator: {self.operator} (supported: {valid})",
                    field_name="operator",
                )
            object.__setattr__(self, "operator", operator)
        if self.operator is FilterOperator.IN:
            if isinstance(self.value, (str, bytes)) or not isinstance(self.value, Iterable):
                raise ValidationError(
                    f"operator 'in' on '{self.column}' requires a list value",
                    field_name=self.column,
                )
            object.__setattr__(self, "value", tuple(self.value))

    def to_sql(self) -> tuple[str, list[Any]]:
        """Translate to a predicate fragment and its bound values."""
        if self.operator is FilterOperator.IN:
            if not self.value:
                # Membership in an empty set never matches.
                return "FALSE", []
            placeholders = ", ".join("?" for _ in self.value)
            return f"{self.column} IN ({placeholders})", list(self.value)
        return f"{self.column} {_COMPARISONS[self.operator]} ?", [self.value]


@dataclass(frozen=True)
class Sort:
    """A single ORDER BY term."""

    column: str
    direction: SortDirection = SortDirection.ASC

    def __post_init__(self) -> None:
        if not isinstance(self.direction, SortDirection):
            direction = str(self.direction or "").strip().lower()
            normalized = SortDirection.DESC if direction == "desc" else SortDirection.ASC
            object.__setattr__(self, "direction", normalized)

    def to_sql(self) -> str:
        return f"{self.column} {self.direction.value.upper()}"


def build_where(filters: Sequence[Filter]) -> tuple[str, list[Any]]:
    """Join filters into a WHERE body (without the keyword).

    Returns:
        ``("", [])`` when there are no filters
    """
    clauses: list[str] = []
    params: list[Any] = []
    for f in filters:
        clause, values = f.to_sql()
        clauses.append(clause)
        params.extend(values)
    return " AND ".join(clauses), params


def build_order_by(sorts: Sequence[Sort]) -> str:
    """Join sorts into an ORDER BY body (without the keyword)."""
    return ", ".join(s.to_sql() for s in sorts)


def parse_filters(text: str | None) -> list[Filter]:
    """Parse ``column:operator:value,...`` into filters.

    ``in`` values are split on ``|``. Column names are validated.

    Example:
        >>> [f.value for f in parse_filters("age:gt:18,status:in:active|pending")]
        ['18', ('active', 'pending')]
    """
    if not text:
        return []

    filters = []
    for part in text.split(","):
        components = part.split(":", 2)
        if len(components) != 3:
            raise ValidationError(
                f"invalid filter format: {part} (expected column:operator:value)"
            )
        column = validate_identifier(components[0].strip(), "column")
        operator = components[1].strip().lower()
        value: Any = components[2]
        if operator == FilterOperator.IN.value:
            value = value.split("|")
        filters.append(Filter(column, operator, value))  # type: ignore[arg-type]
    return filters


def parse_sorts(text: str | None) -> list[Sort]:
    """Parse ``column:direction,...`` into sorts; direction defaults to asc."""
    if not text:
        return []

    sorts = []
    for part in text.split(","):
        components = part.split(":", 1)
        column = validate_identifier(components[0].strip(), "column")
        direction = SortDirection.ASC
        if len(components) == 2:
            raw = components[1].strip().lower()
            try:
                direction = SortDirection(raw)
            except ValueError:
                raise ValidationError(
                    f"invalid sort direction: {components[1]} (must be 'asc' or 'desc')"
                )
        sorts.append(Sort(column, direction))
    return sorts
