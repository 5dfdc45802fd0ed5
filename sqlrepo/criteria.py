"""
Reusable statement criteria.

A criterion is either a SQLAlchemy boolean clause (ANDed into the statement
with ``.where``) or a callable taking a statement and returning the rewritten
statement. Column names are resolved against the statement's target table so
bound parameters pick up the column type.
"""
from __future__ import annotations

from typing import Any, Callable, Iterable, Optional, Sequence, Union

from sqlalchemy import false, literal_column, text
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import defer, load_only
from sqlalchemy.sql import ColumnElement
from sqlalchemy.sql.dml import UpdateBase

from .query_safety import normalize_operator, parse_order_expression, validate_identifier

Criterion = Union[ColumnElement, Callable[[Any], Any]]

SOFT_DELETE_OPTION = "sqlrepo_soft_delete"
SOFT_DELETE_EXCLUDE = "exclude"
SOFT_DELETE_INCLUDE = "include"
SOFT_DELETE_ONLY = "only"

UPDATE_COLUMNS_OPTION = "sqlrepo_update_columns"
SET_COLUMNS_OPTION = "sqlrepo_set_columns"


def apply_criteria(stmt: Any, criteria: Optional[Iterable[Optional[Criterion]]]) -> Any:
    """Apply criteria in order, skipping ``None`` entries."""
    for criterion in criteria or ():
        if criterion is None:
            continue
        if isinstance(criterion, ColumnElement):
            stmt = stmt.where(criterion)
            continue
        if not callable(criterion):
            raise TypeError(f"unsupported criterion: {criterion!r}")
        result = criterion(stmt)
        if result is None:
            raise TypeError(f"criterion {criterion!r} returned None instead of a statement")
        stmt = result
    return stmt


def target_table(stmt: Any):
    if isinstance(stmt, UpdateBase):
        return stmt.table
    froms = stmt.get_final_froms()
    if not froms:
        raise ValueError("statement has no FROM target")
    return froms[0]


def resolve_column(stmt: Any, name: str):
    """Return the typed column for ``name`` on the statement's target table."""
    name = validate_identifier(name)
    table = target_table(stmt)
    if "." in name:
        table_name, column_name = name.rsplit(".", 1)
        if table_name == getattr(table, "name", None) and column_name in table.c:
            return table.c[column_name]
        return literal_column(name)
    if name not in table.c:
        raise ValueError(f"unknown column {name!r} for {getattr(table, 'name', table)!r}")
    return table.c[name]


def compare(col, operator: str, value: Any):
    op = normalize_operator(operator)
    if op == "=":
        return col == value
    if op in ("!=", "<>"):
        return col != value
    if op == ">":
        return col > value
    if op == ">=":
        return col >= value
    if op == "<":
        return col < value
    if op == "<=":
        return col <= value
    if op == "LIKE":
        return col.like(value)
    if op == "ILIKE":
        return col.ilike(value)
    if op == "NOT LIKE":
        return col.not_like(value)
    if op == "NOT ILIKE":
        return col.not_ilike(value)
    if op == "IS":
        return col.is_(value)
    if op == "IS NOT":
        return col.is_not(value)
    if op == "IS DISTINCT FROM":
        return col.is_distinct_from(value)
    return col.is_not_distinct_from(value)


def _option(stmt: Any, key: str, default: Any = None) -> Any:
    return stmt.get_execution_options().get(key, default)


# ---------------------------------------------------------------------------
# Predicates (select / update / delete)
# ---------------------------------------------------------------------------

def where(*clauses: ColumnElement) -> Criterion:
    return lambda stmt: stmt.where(*clauses)


def never() -> Criterion:
    """Predicate that matches no row."""
    return lambda stmt: stmt.where(false())


def raw(sql: str, **params: Any) -> Criterion:
    """Raw SQL predicate with named bind parameters (``:name``)."""
    clause = text(sql).bindparams(**params) if params else text(sql)
    return lambda stmt: stmt.where(clause)


def select_by(column: str, operator: str, value: Any) -> Criterion:
    normalize_operator(operator)
    return lambda stmt: stmt.where(compare(resolve_column(stmt, column), operator, value))


def select_by_id(value: Any) -> Criterion:
    def _apply(stmt):
        pk_cols = list(target_table(stmt).primary_key.columns)
        if len(pk_cols) != 1:
            raise ValueError("select_by_id requires a single-column primary key")
        return stmt.where(pk_cols[0] == value)

    return _apply


def select_is_null(column: str) -> Criterion:
    return lambda stmt: stmt.where(resolve_column(stmt, column).is_(None))


def select_not_null(column: str) -> Criterion:
    return lambda stmt: stmt.where(resolve_column(stmt, column).is_not(None))


def select_column_in(column: str, values: Sequence[Any]) -> Criterion:
    values = list(values)
    return lambda stmt: stmt.where(resolve_column(stmt, column).in_(values))


def select_column_not_in(column: str, values: Sequence[Any]) -> Criterion:
    values = list(values)
    return lambda stmt: stmt.where(resolve_column(stmt, column).not_in(values))


def select_between(column: str, start: Any, end: Any) -> Criterion:
    return lambda stmt: stmt.where(resolve_column(stmt, column).between(start, end))


def select_time_range(column: str, start: Any = None, end: Any = None) -> Criterion:
    """Half-open range: ``start <= column < end``; either bound may be omitted."""

    def _apply(stmt):
        col = resolve_column(stmt, column)
        if start is not None:
            stmt = stmt.where(col >= start)
        if end is not None:
            stmt = stmt.where(col < end)
        return stmt

    return _apply


def select_ilike(column: str, pattern: str) -> Criterion:
    return lambda stmt: stmt.where(resolve_column(stmt, column).ilike(pattern))


update_by = select_by
delete_by = select_by
delete_by_id = select_by_id


# ---------------------------------------------------------------------------
# Select shaping
# ---------------------------------------------------------------------------

def order_by(*expressions: str) -> Criterion:
    parsed = [parse_order_expression(expr) for expr in expressions]

    def _apply(stmt):
        clauses = []
        for column, direction, nulls in parsed:
            col = resolve_column(stmt, column)
            clause = col.desc() if direction == "DESC" else col.asc()
            if nulls == "NULLS FIRST":
                clause = clause.nulls_first()
            elif nulls == "NULLS LAST":
                clause = clause.nulls_last()
            clauses.append(clause)
        return stmt.order_by(*clauses)

    return _apply


def order_asc(column: str) -> Criterion:
    return order_by(f"{column} ASC")


def order_desc(column: str) -> Criterion:
    return order_by(f"{column} DESC")


def paginate(limit: Optional[int], offset: int = 0) -> Criterion:
    """A non-positive limit removes the limit; negative offsets clamp to zero."""
    effective_limit = limit if limit is not None and limit > 0 else None
    effective_offset = max(offset or 0, 0)
    return lambda stmt: stmt.limit(effective_limit).offset(effective_offset)


def select_distinct() -> Criterion:
    return lambda stmt: stmt.distinct()


def _entity_attributes(stmt: Any, names: Sequence[str]):
    descriptions = stmt.column_descriptions
    entity = descriptions[0].get("entity") if descriptions else None
    if entity is None:
        raise ValueError("column projection requires an ORM entity select")
    table = target_table(stmt)
    mapper = sa_inspect(entity)
    attrs = []
    for name in names:
        col = resolve_column(stmt, name)
        if col.table is not table:
            raise ValueError(f"cannot project foreign column {name!r}")
        attrs.append(getattr(entity, mapper.get_property_by_column(col).key))
    return attrs


def select_columns(*names: str) -> Criterion:
    """Load only the named columns (plus the primary key)."""
    return lambda stmt: stmt.options(load_only(*_entity_attributes(stmt, names)))


def exclude_columns(*names: str) -> Criterion:
    return lambda stmt: stmt.options(*(defer(attr) for attr in _entity_attributes(stmt, names)))


# ---------------------------------------------------------------------------
# Soft delete visibility
# ---------------------------------------------------------------------------

def with_deleted() -> Criterion:
    """Include soft-deleted rows."""
    return lambda stmt: stmt.execution_options(**{SOFT_DELETE_OPTION: SOFT_DELETE_INCLUDE})


def deleted_only() -> Criterion:
    return lambda stmt: stmt.execution_options(**{SOFT_DELETE_OPTION: SOFT_DELETE_ONLY})


def soft_delete_mode(stmt: Any) -> str:
    return _option(stmt, SOFT_DELETE_OPTION, SOFT_DELETE_EXCLUDE)


# ---------------------------------------------------------------------------
# Update shaping
# ---------------------------------------------------------------------------

def update_columns(*names: str) -> Criterion:
    """Restrict the columns written from the record to ``names``."""
    columns = tuple(validate_identifier(name) for name in names)

    def _apply(stmt):
        existing = tuple(_option(stmt, UPDATE_COLUMNS_OPTION, ()) or ())
        merged = existing + tuple(c for c in columns if c not in existing)
        return stmt.execution_options(**{UPDATE_COLUMNS_OPTION: merged})

    return _apply


def update_set_column(column: str, value: Any) -> Criterion:
    """Set ``column`` to an explicit value, overriding the record's value."""

    def _apply(stmt):
        col = resolve_column(stmt, column)
        existing = tuple(_option(stmt, SET_COLUMNS_OPTION, ()) or ())
        stmt = stmt.values({col.key: value})
        if col.key not in existing:
            existing = existing + (col.key,)
        return stmt.execution_options(**{SET_COLUMNS_OPTION: existing})

    return _apply


def selected_update_columns(stmt: Any) -> Optional[tuple]:
    columns = _option(stmt, UPDATE_COLUMNS_OPTION)
    return tuple(columns) if columns else None


def explicitly_set_columns(stmt: Any) -> tuple:
    return tuple(_option(stmt, SET_COLUMNS_OPTION, ()) or ())
