"""
Generic scoped repository over one mapped model.

Every operation takes the call context first and an optional ``session``.
Without a session each primitive runs in its own short transaction on the
repository's engine; with a session the statements join the caller's
transaction, which is never committed or rolled back here.
"""
from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Dict, Generic, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar

from sqlalchemy import Column, delete, func, insert, select, text, update
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.engine import Engine, RowMapping
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from .config import RepositoryConfig, get_default_config
from .context import CallContext
from .criteria import (
    SOFT_DELETE_INCLUDE,
    SOFT_DELETE_ONLY,
    Criterion,
    apply_criteria,
    explicitly_set_columns,
    selected_update_columns,
    soft_delete_mode,
    update_columns,
)
from .database import detect_driver, session_scope
from .descriptors import get_descriptor
from .errors import (
    ExpectedCountViolationError,
    FieldError,
    RecordNotFoundError,
    RepositoryError,
    ValidationError,
    is_duplicated_key,
    map_database_error,
)
from .handlers import IdentifierOption, ModelHandlers, is_nil_id
from .hooks import register_query_hooks
from .identity import IdentityResolver
from .mapping import MapPatchError, PatchOptions, apply_map_patch, coerce_value
from .meta import ModelField, get_model_fields
from .query_safety import validate_identifier
from .scopes import ScopeDefaults, ScopeDefinition, ScopeOperation, ScopeRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

SOFT_DELETE_ATTRIBUTE = "__soft_delete_column__"

_NO_MATCH = object()


def now_utc() -> datetime:
    return datetime.now(UTC)


class Repository(Generic[T]):
    def __init__(
        self,
        model: Type[T],
        engine: Engine,
        handlers: Optional[ModelHandlers[T]] = None,
        *,
        config: Optional[RepositoryConfig] = None,
        scopes: Optional[ScopeRegistry] = None,
        query_hooks: Sequence[Any] = (),
    ) -> None:
        if handlers is None and model is not None:
            handlers = ModelHandlers.for_model(model)
        self._model = model
        self._engine = engine
        self._handlers = handlers
        self.validate()

        self._config = config or get_default_config()
        self._pagination_lock = threading.Lock()
        self._default_limit = self._config.default_list_limit
        self._default_offset = self._config.default_list_offset
        self._scopes = scopes or ScopeRegistry()
        self._fields_lock = threading.Lock()
        self._fields: Optional[List[ModelField]] = None

        mapper = sa_inspect(model)
        self._table = mapper.local_table
        self._columns: List[Tuple[str, Column]] = [
            (prop.key, prop.columns[0])
            for prop in mapper.column_attrs
            if isinstance(prop.columns[0], Column) and prop.columns[0].table is self._table
        ]
        self._composite_keys = [prop.key for prop in mapper.composites]
        pk_columns = list(self._table.primary_key.columns)
        if len(pk_columns) != 1:
            raise ValidationError(
                f"{model.__name__} is not supported",
                [FieldError(field="primary_key", message="exactly one primary key column is supported")],
            )
        self._pk = pk_columns[0]
        self._generates_ids = _python_type(self._pk) is uuid.UUID
        self._soft_delete = self._soft_delete_column(model)
        self._driver = detect_driver(engine)
        self._identity: IdentityResolver[T] = IdentityResolver(self)
        if query_hooks:
            register_query_hooks(engine, *query_hooks)

    # ------------------------------------------------------------------
    # Configuration / introspection
    # ------------------------------------------------------------------

    def validate(self) -> None:
        errors: List[FieldError] = []
        if self._engine is None:
            errors.append(FieldError(field="engine", message="database engine is required"))
        if self._model is None:
            errors.append(FieldError(field="model", message="mapped model is required"))
        if self._handlers is None:
            errors.append(FieldError(field="handlers", message="model handlers are required"))
        else:
            errors.extend(self._handlers.validate())
        if errors:
            raise ValidationError("invalid repository configuration", errors)

    @property
    def model(self) -> Type[T]:
        return self._model

    @property
    def handlers(self) -> ModelHandlers[T]:
        return self._handlers

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def config(self) -> RepositoryConfig:
        return self._config

    @property
    def driver(self) -> str:
        return self._driver

    @property
    def table_name(self) -> str:
        return self._table.name

    @property
    def scopes(self) -> ScopeRegistry:
        return self._scopes

    def register_scope(self, name: str, definition: ScopeDefinition) -> None:
        self._scopes.register(name, definition)

    def set_scope_defaults(self, defaults: ScopeDefaults | Mapping[str, Sequence[str]]) -> None:
        if not isinstance(defaults, ScopeDefaults):
            defaults = ScopeDefaults(**defaults)
        self._scopes.set_defaults(defaults)

    def get_scope_defaults(self) -> ScopeDefaults:
        return self._scopes.get_defaults()

    def set_default_list_pagination(self, limit: Optional[int], offset: int = 0) -> None:
        """Change the pagination ``list`` applies before caller criteria.

        Not meant to be flipped while the repository is serving traffic.
        A limit of ``None`` or below one disables the default.
        """
        with self._pagination_lock:
            self._default_limit = limit if limit is not None and limit > 0 else None
            self._default_offset = max(offset or 0, 0)

    def default_list_pagination(self) -> Tuple[Optional[int], int]:
        with self._pagination_lock:
            return self._default_limit, self._default_offset

    def get_model_fields(self) -> List[ModelField]:
        with self._fields_lock:
            if self._fields is None:
                self._fields = get_model_fields(self._model)
            return list(self._fields)

    def reset_model_fields(self) -> None:
        with self._fields_lock:
            self._fields = None

    def find_existing(self, ctx: Optional[CallContext], record: T, *, session: Optional[Session] = None) -> Optional[T]:
        return self._identity.find_existing(ctx, record, session=session)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def raw(self, ctx: Optional[CallContext], sql: str, params: Optional[Mapping[str, Any]] = None, *, session: Optional[Session] = None) -> List[T]:
        """Run textual SQL and map the rows onto the model. Scopes are not applied."""
        with self._session(session) as s:
            stmt = select(self._model).from_statement(text(sql))
            return list(s.scalars(stmt, dict(params or {})).all())

    def get(self, ctx: Optional[CallContext], *criteria: Criterion, session: Optional[Session] = None) -> T:
        with self._session(session) as s:
            return self._get(ctx, s, criteria)

    def get_by_id(self, ctx: Optional[CallContext], record_id: Any, *criteria: Criterion, session: Optional[Session] = None) -> T:
        with self._session(session) as s:
            return self._get_by_id(ctx, s, record_id, criteria)

    def list(self, ctx: Optional[CallContext], *criteria: Criterion, session: Optional[Session] = None) -> Tuple[List[T], int]:
        """Return a page of records and the total number of matching rows.

        Default pagination is applied first so criteria can override it.
        """
        limit, offset = self.default_list_pagination()
        stmt = select(self._model)
        if limit is not None:
            stmt = stmt.limit(limit).offset(offset)
        with self._session(session) as s:
            stmt = self._prepare(ctx, stmt, ScopeOperation.SELECT, criteria)
            records = list(s.scalars(stmt.execution_options(populate_existing=True)).all())
            total = s.scalar(self._count_statement(stmt))
        return records, int(total or 0)

    def count(self, ctx: Optional[CallContext], *criteria: Criterion, session: Optional[Session] = None) -> int:
        with self._session(session) as s:
            stmt = self._prepare(ctx, select(self._model), ScopeOperation.SELECT, criteria)
            return int(s.scalar(self._count_statement(stmt)) or 0)

    def get_by_identifier(self, ctx: Optional[CallContext], identifier: str, *criteria: Criterion, session: Optional[Session] = None) -> T:
        """Try each identifier option in order and return the first match."""
        last_error: Optional[RecordNotFoundError] = None
        with self._session(session) as s:
            for option in self._identifier_options(identifier):
                column = self._lookup_column(option.column)
                value = self._coerce_lookup(column, option.value or identifier)
                if value is _NO_MATCH:
                    last_error = self._not_found(column=column.name, value=option.value or identifier)
                    continue
                try:
                    return self._get(ctx, s, [*criteria, column == value])
                except RecordNotFoundError as exc:
                    last_error = exc
        if last_error is not None:
            raise last_error
        raise self._not_found(identifier=identifier)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, ctx: Optional[CallContext], record: T, *criteria: Criterion, session: Optional[Session] = None) -> T:
        with self._session(session) as s:
            return self._create(ctx, s, record, criteria)

    def create_many(
        self,
        ctx: Optional[CallContext],
        records: Iterable[T],
        *criteria: Criterion,
        preserve_order: bool = False,
        session: Optional[Session] = None,
    ) -> List[T]:
        """Insert records with one multi-row INSERT.

        Rows only split into one statement per column shape when a column
        that relies on a server default is set on some records and not others.
        Returned rows are matched back to the input records by primary key.
        When that is impossible (missing or repeated keys) fresh records are
        built from the rows in store order.
        """
        records = list(records)
        if not records:
            return []
        for record in records:
            self._ensure_id(record)

        batches = self._insert_batches([self._insert_row(record) for record in records])

        returned: List[RowMapping] = []
        with self._session(session) as s:
            for rows in batches:
                stmt = insert(self._table).values(rows)
                stmt = self._prepare(ctx, stmt, ScopeOperation.INSERT, criteria).returning(*self._table.c)
                with s.no_autoflush:
                    returned.extend(s.execute(stmt).mappings().all())

        by_id = self._index_by_id(records)
        if by_id is None or len(returned) != len(records):
            if preserve_order:
                logger.warning(
                    f"Cannot preserve input order for {self.table_name} batch insert; returning store order"
                )
            return [self._from_row(row) for row in returned]

        rows_by_id = {row[self._pk.key]: row for row in returned}
        if set(rows_by_id) != set(by_id):
            if preserve_order:
                logger.warning(
                    f"Returned keys do not match input keys for {self.table_name}; returning store order"
                )
            return [self._from_row(row) for row in returned]

        if preserve_order:
            ordered = records
        else:
            ordered = [by_id[row[self._pk.key]] for row in returned]
        for record in ordered:
            self._populate(record, rows_by_id[self._handlers.get_id(record)])
        return list(ordered)

    def update(self, ctx: Optional[CallContext], record: T, *criteria: Criterion, session: Optional[Session] = None) -> T:
        """Update the row identified by the record's primary key; exactly one row must match."""
        with self._session(session) as s:
            return self._update(ctx, s, record, criteria)

    def update_many(self, ctx: Optional[CallContext], records: Iterable[T], *criteria: Criterion, session: Optional[Session] = None) -> List[T]:
        records = list(records)
        with self._session(session) as s:
            return [self._update(ctx, s, record, criteria) for record in records]

    def patch_by_id(
        self,
        ctx: Optional[CallContext],
        record_id: Any,
        payload: Mapping[str, Any],
        *criteria: Criterion,
        options: Optional[PatchOptions] = None,
        session: Optional[Session] = None,
    ) -> T:
        """Load, patch (primary key protected) and update only the touched columns."""
        opts = (options or PatchOptions()).model_copy(update={"deny_primary_key": True})
        with self._session(session) as s:
            record = self._get_by_id(ctx, s, record_id, ())
            record, touched = apply_map_patch(record, payload, opts)
            if not touched:
                return record
            return self._update(ctx, s, record, [update_columns(*touched), *criteria])

    def upsert(self, ctx: Optional[CallContext], record: T, *criteria: Criterion, session: Optional[Session] = None) -> T:
        """Update the matching row or create a new one; criteria apply to the update."""
        existing = self._identity.find_existing(ctx, record, session=session)
        if existing is not None:
            self._handlers.set_id(record, self._handlers.get_id(existing))
            return self.update(ctx, record, *criteria, session=session)
        return self._create_or_recover(ctx, record, session)

    def upsert_many(self, ctx: Optional[CallContext], records: Iterable[T], *criteria: Criterion, session: Optional[Session] = None) -> List[T]:
        return [self.upsert(ctx, record, *criteria, session=session) for record in records]

    def get_or_create(self, ctx: Optional[CallContext], record: T, *, session: Optional[Session] = None) -> T:
        """Return the existing match without modifying it, or create the record."""
        existing = self._identity.find_existing(ctx, record, session=session)
        if existing is not None:
            return existing
        return self._create_or_recover(ctx, record, session)

    def delete(self, ctx: Optional[CallContext], record: T, *, session: Optional[Session] = None) -> None:
        """Delete by primary key; models with a soft-delete column are only marked deleted.

        Exactly one row must be affected. A row hidden by delete scopes or
        already soft-deleted raises ``ExpectedCountViolationError`` and the
        record is left unchanged.
        """
        record_id = self._handlers.get_id(record)
        deleted_at = now_utc()
        if self._soft_delete is None:
            stmt = delete(self._table).where(self._pk == record_id)
        else:
            stmt = (
                update(self._table)
                .where(self._pk == record_id, self._soft_delete[1].is_(None))
                .values({self._soft_delete[1].key: deleted_at})
            )
        with self._session(session) as s:
            result = s.execute(self._prepare(ctx, stmt, ScopeOperation.DELETE, ()))
            self._expect_one(int(result.rowcount or 0), record_id)
        if self._soft_delete is not None:
            set_committed_value(record, self._soft_delete[0], deleted_at)

    def force_delete(self, ctx: Optional[CallContext], record: T, *, session: Optional[Session] = None) -> None:
        stmt = delete(self._table).where(self._pk == self._handlers.get_id(record))
        with self._session(session) as s:
            s.execute(self._prepare(ctx, stmt, ScopeOperation.DELETE, ()))

    def delete_many(self, ctx: Optional[CallContext], *criteria: Criterion, session: Optional[Session] = None) -> int:
        """Delete every row matching ``criteria``; returns the affected row count.

        Refuses to run without criteria unless full-table deletes are allowed.
        """
        if not criteria and not self._config.allow_full_table_delete:
            raise ValidationError(
                "refusing to delete every row",
                [FieldError(field="criteria", message="at least one criterion is required")],
            )
        if self._soft_delete is None:
            stmt = delete(self._table)
        else:
            stmt = (
                update(self._table)
                .where(self._soft_delete[1].is_(None))
                .values({self._soft_delete[1].key: now_utc()})
            )
        with self._session(session) as s:
            result = s.execute(self._prepare(ctx, stmt, ScopeOperation.DELETE, criteria))
            return int(result.rowcount or 0)

    delete_where = delete_many

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _session(self, session: Optional[Session]) -> Iterator[Session]:
        try:
            with session_scope(self._engine, session) as s:
                yield s
        except SQLAlchemyError as exc:
            raise map_database_error(exc, self._driver) from exc

    @staticmethod
    def _soft_delete_column(model: type) -> Optional[Tuple[str, Column]]:
        name = getattr(model, SOFT_DELETE_ATTRIBUTE, None)
        if not name:
            return None
        mapper = sa_inspect(model)
        table = mapper.local_table
        if name not in table.c:
            raise ValidationError(
                f"{model.__name__} soft delete column is missing",
                [FieldError(field=SOFT_DELETE_ATTRIBUTE, message=f"unknown column {name!r}")],
            )
        column = table.c[name]
        return mapper.get_property_by_column(column).key, column

    def _not_found(self, **metadata: Any) -> RecordNotFoundError:
        return RecordNotFoundError(
            f"{self._model.__name__} not found",
            metadata={"table": self.table_name, **metadata},
        )

    def _prepare(self, ctx: Optional[CallContext], stmt: Any, operation: ScopeOperation, criteria: Sequence[Criterion]) -> Any:
        stmt = apply_criteria(stmt, self._scopes.resolve(ctx, operation))
        stmt = apply_criteria(stmt, criteria)
        if operation in (ScopeOperation.SELECT, ScopeOperation.UPDATE):
            stmt = self._filter_soft_deleted(stmt)
        return stmt

    def _filter_soft_deleted(self, stmt: Any) -> Any:
        if self._soft_delete is None:
            return stmt
        mode = soft_delete_mode(stmt)
        column = self._soft_delete[1]
        if mode == SOFT_DELETE_INCLUDE:
            return stmt
        if mode == SOFT_DELETE_ONLY:
            return stmt.where(column.is_not(None))
        return stmt.where(column.is_(None))

    @staticmethod
    def _count_statement(stmt: Any) -> Any:
        inner = stmt.limit(None).offset(None).order_by(None).subquery()
        return select(func.count()).select_from(inner)

    def _get(self, ctx: Optional[CallContext], s: Session, criteria: Sequence[Criterion]) -> T:
        stmt = self._prepare(ctx, select(self._model), ScopeOperation.SELECT, criteria).limit(1)
        record = s.scalars(stmt.execution_options(populate_existing=True)).first()
        if record is None:
            raise self._not_found()
        return record

    def _get_by_id(self, ctx: Optional[CallContext], s: Session, record_id: Any, criteria: Sequence[Criterion]) -> T:
        value = self._coerce_lookup(self._pk, record_id)
        if value is _NO_MATCH:
            raise self._not_found(id=str(record_id))
        return self._get(ctx, s, [*criteria, self._pk == value])

    def _lookup_column(self, name: str) -> Column:
        name = validate_identifier(name)
        if name not in self._table.c:
            raise ValueError(f"unknown column {name!r} for {self.table_name!r}")
        return self._table.c[name]

    def _coerce_lookup(self, column: Column, value: Any) -> Any:
        if value is None:
            return _NO_MATCH
        binding = get_descriptor(self._model).lookup(column.name)
        if binding is None:
            return value
        try:
            return coerce_value(binding, value)
        except MapPatchError:
            return _NO_MATCH

    def _identifier_options(self, identifier: str) -> List[IdentifierOption]:
        handlers = self._handlers
        if handlers.resolve_identifier is not None:
            options = [opt for opt in (handlers.resolve_identifier(identifier) or ()) if (opt.column or "").strip()]
            if options:
                return options
        if handlers.get_identifier is not None:
            return [IdentifierOption(column=handlers.get_identifier(), value=identifier)]
        return [IdentifierOption(column=self._pk.name, value=identifier)]

    def _ensure_id(self, record: T) -> None:
        if self._generates_ids and is_nil_id(self._handlers.get_id(record)):
            self._handlers.set_id(record, uuid.uuid4())

    def _assigned(self, record: T) -> Dict[str, Any]:
        """Column attributes present in the instance state; never triggers a load."""
        state = sa_inspect(record).dict
        return {attribute: state[attribute] for attribute, _ in self._columns if attribute in state}

    def _insert_row(self, record: T) -> Dict[str, Any]:
        assigned = self._assigned(record)
        return {
            column.key: assigned[attribute]
            for attribute, column in self._columns
            if assigned.get(attribute) is not None
        }

    def _insert_batches(self, rows: List[Dict[str, Any]]) -> List[List[Dict[str, Any]]]:
        """Align rows on one column set so they fit a single multi-row INSERT.

        Missing values are left to Python-side column defaults or written as
        NULL. Server defaults cannot be expressed per row, so rows that disagree
        on such a column are grouped by shape instead.
        """
        keys: Dict[str, None] = {}
        for row in rows:
            keys.update(dict.fromkeys(row))
        fill: List[str] = []
        for key in keys:
            if all(key in row for row in rows):
                continue
            column = self._table.c[key]
            if column.default is not None:
                continue
            if column.server_default is not None:
                groups: Dict[Tuple[str, ...], List[Dict[str, Any]]] = {}
                for row in rows:
                    groups.setdefault(tuple(row), []).append(row)
                return list(groups.values())
            fill.append(key)
        return [[{**dict.fromkeys(fill), **row} for row in rows]]

    def _update_row(self, record: T, stmt: Any) -> Dict[str, Any]:
        selected = selected_update_columns(stmt)
        explicit = set(explicitly_set_columns(stmt))
        if selected is not None:
            known = {column.name for _, column in self._columns} | {column.key for _, column in self._columns}
            unknown = sorted(set(selected) - known)
            if unknown:
                raise ValueError(f"unknown update columns for {self.table_name!r}: {', '.join(unknown)}")
        assigned = self._assigned(record)
        row: Dict[str, Any] = {}
        for attribute, column in self._columns:
            if column.primary_key or column.key in explicit or attribute not in assigned:
                continue
            if selected is not None and column.name not in selected and column.key not in selected:
                continue
            row[column.key] = assigned[attribute]
        return row

    def _populate(self, record: T, row: Mapping[str, Any]) -> None:
        for attribute, column in self._columns:
            if column.key in row:
                set_committed_value(record, attribute, row[column.key])
        state = sa_inspect(record)
        for key in self._composite_keys:
            state.dict.pop(key, None)

    def _from_row(self, row: Mapping[str, Any]) -> T:
        record = self._handlers.new_record()
        self._populate(record, row)
        return record

    def _index_by_id(self, records: List[T]) -> Optional[Dict[Any, T]]:
        by_id: Dict[Any, T] = {}
        for record in records:
            record_id = self._handlers.get_id(record)
            if is_nil_id(record_id) or record_id in by_id:
                return None
            by_id[record_id] = record
        return by_id

    def _create(self, ctx: Optional[CallContext], s: Session, record: T, criteria: Sequence[Criterion]) -> T:
        self._ensure_id(record)
        stmt = insert(self._table).values(self._insert_row(record))
        stmt = self._prepare(ctx, stmt, ScopeOperation.INSERT, criteria).returning(*self._table.c)
        with s.no_autoflush:
            row = s.execute(stmt).mappings().one()
        self._populate(record, row)
        return record

    def _update(self, ctx: Optional[CallContext], s: Session, record: T, criteria: Sequence[Criterion]) -> T:
        record_id = self._handlers.get_id(record)
        stmt = update(self._table).where(self._pk == record_id)
        stmt = self._prepare(ctx, stmt, ScopeOperation.UPDATE, criteria)
        row = self._update_row(record, stmt)
        if row:
            stmt = stmt.values(row)
        elif not explicitly_set_columns(stmt):
            stmt = stmt.values({self._pk.key: self._pk})
        stmt = stmt.returning(*self._table.c)
        with s.no_autoflush:
            rows = s.execute(stmt).mappings().all()
        self._expect_one(len(rows), record_id)
        self._populate(record, rows[0])
        return record

    def _expect_one(self, affected: int, record_id: Any) -> None:
        if affected != 1:
            raise ExpectedCountViolationError(
                expected=1,
                actual=affected,
                metadata={"table": self.table_name, "id": str(record_id)},
            )

    def _create_or_recover(self, ctx: Optional[CallContext], record: T, session: Optional[Session]) -> T:
        try:
            return self.create(ctx, record, session=session)
        except RepositoryError as exc:
            if not is_duplicated_key(exc):
                raise
            winner = self._identity.find_existing(ctx, record, session=session)
            if winner is None:
                raise
            logger.info(f"Concurrent insert detected on {self.table_name}; returning existing row")
            return winner


def _python_type(column: Column) -> Optional[type]:
    try:
        return column.type.python_type
    except NotImplementedError:
        return None
