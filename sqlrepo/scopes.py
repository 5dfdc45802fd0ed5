"""
Named scope registry and resolution.

A scope is a named bundle of criteria producers, one per operation kind.
Which scopes apply to a call is decided by the registry defaults plus the
overrides carried on the ``CallContext``; resolution is deterministic and
drops duplicates after their first occurrence.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from .context import CallContext, ensure_context, get_scope_data, has_scope_data, scope_data_snapshot
from .criteria import Criterion, never, resolve_column
from .errors import FieldError, ValidationError

logger = logging.getLogger(__name__)


class ScopeOperation(str, Enum):
    SELECT = "select"
    UPDATE = "update"
    INSERT = "insert"
    DELETE = "delete"


ScopeFunc = Callable[[CallContext], Sequence[Criterion]]


@dataclass(frozen=True)
class ScopeDefinition:
    select: Optional[ScopeFunc] = None
    update: Optional[ScopeFunc] = None
    insert: Optional[ScopeFunc] = None
    delete: Optional[ScopeFunc] = None

    def producer(self, operation: ScopeOperation) -> Optional[ScopeFunc]:
        return getattr(self, ScopeOperation(operation).value)


class ScopeDefaults(BaseModel):
    all: List[str] = Field(default_factory=list)
    select: List[str] = Field(default_factory=list)
    update: List[str] = Field(default_factory=list)
    insert: List[str] = Field(default_factory=list)
    delete: List[str] = Field(default_factory=list)

    def names_for(self, operation: ScopeOperation) -> List[str]:
        return list(getattr(self, ScopeOperation(operation).value))

    def all_names(self) -> List[str]:
        return [*self.all, *self.select, *self.update, *self.insert, *self.delete]


class ScopeState(BaseModel):
    operation: ScopeOperation
    use_defaults: bool = True
    names: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)


def _dedupe(names: Sequence[str]) -> List[str]:
    seen = set()
    ordered: List[str] = []
    for name in names:
        cleaned = (name or "").strip()
        if not cleaned or cleaned in seen:
            continue
        seen.add(cleaned)
        ordered.append(cleaned)
    return ordered


def resolve_scope_state(
    ctx: Optional[CallContext],
    defaults: Optional[ScopeDefaults],
    operation: ScopeOperation,
) -> ScopeState:
    """Compute the ordered scope names for ``operation``.

    Order: defaults (all, then per-operation) unless disabled on the context,
    followed by the context's names (all, then per-operation).
    """
    ctx = ensure_context(ctx)
    operation = ScopeOperation(operation)
    names: List[str] = []
    if ctx.use_defaults and defaults is not None:
        names.extend(defaults.all)
        names.extend(defaults.names_for(operation))
    names.extend(ctx.all)
    names.extend(ctx.names_for(operation.value))
    return ScopeState(
        operation=operation,
        use_defaults=ctx.use_defaults,
        names=_dedupe(names),
        data=scope_data_snapshot(ctx),
    )


class ScopeRegistry:
    """Thread-safe store of scope definitions and default scope names."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._definitions: Dict[str, ScopeDefinition] = {}
        self._defaults = ScopeDefaults()

    def register(self, name: str, definition: ScopeDefinition) -> None:
        cleaned = (name or "").strip()
        if not cleaned:
            return
        with self._lock:
            self._definitions[cleaned] = definition

    def is_registered(self, name: str) -> bool:
        with self._lock:
            return name in self._definitions

    def set_defaults(self, defaults: ScopeDefaults) -> None:
        with self._lock:
            unknown = sorted({n.strip() for n in defaults.all_names() if n.strip() and n.strip() not in self._definitions})
            if unknown:
                raise ValidationError(
                    "unknown default scopes",
                    [FieldError(field=name, message="scope is not registered") for name in unknown],
                )
            self._defaults = defaults.model_copy(deep=True)

    def get_defaults(self) -> ScopeDefaults:
        with self._lock:
            return self._defaults.model_copy(deep=True)

    def reset(self) -> None:
        with self._lock:
            self._definitions.clear()
            self._defaults = ScopeDefaults()

    def state(self, ctx: Optional[CallContext], operation: ScopeOperation) -> ScopeState:
        return resolve_scope_state(ctx, self.get_defaults(), operation)

    def resolve(self, ctx: Optional[CallContext], operation: ScopeOperation) -> List[Criterion]:
        """Return the concatenated criteria of every applicable scope."""
        ctx = ensure_context(ctx)
        operation = ScopeOperation(operation)
        with self._lock:
            defaults = self._defaults.model_copy(deep=True)
            definitions = dict(self._definitions)
        state = resolve_scope_state(ctx, defaults, operation)
        criteria: List[Criterion] = []
        for name in state.names:
            definition = definitions.get(name)
            if definition is None:
                logger.debug(f"Skipping unregistered scope '{name}' for {operation.value}")
                continue
            producer = definition.producer(operation)
            if producer is None:
                continue
            criteria.extend(producer(ctx) or ())
        return criteria


def scope_by_field(scope_name: str, column: str) -> ScopeDefinition:
    """Tenant-style scope filtering ``column`` by the scope data stored under ``scope_name``.

    Fails closed: without scope data the statement matches no rows.
    """

    def _produce(ctx: CallContext) -> List[Criterion]:
        if not has_scope_data(ctx, scope_name):
            return [never()]
        value = get_scope_data(ctx, scope_name)
        return [lambda stmt: stmt.where(resolve_column(stmt, column) == value)]

    return ScopeDefinition(select=_produce, update=_produce, delete=_produce)
