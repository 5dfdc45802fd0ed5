"""
Per-call context carrying scope overrides and scope data.

A ``CallContext`` is immutable; every ``with_*`` helper returns a derived
copy so contexts can be shared freely between threads and nested calls.
``None`` is accepted anywhere a context is expected and behaves like
``CallContext()``.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


def _frozen(data: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True)
class CallContext:
    use_defaults: bool = True
    all: Tuple[str, ...] = ()
    select: Tuple[str, ...] = ()
    update: Tuple[str, ...] = ()
    insert: Tuple[str, ...] = ()
    delete: Tuple[str, ...] = ()
    data: Mapping[str, Any] = field(default_factory=_frozen)

    def names_for(self, operation: str) -> Tuple[str, ...]:
        return getattr(self, operation, ())


def ensure_context(ctx: Optional[CallContext]) -> CallContext:
    return ctx if ctx is not None else CallContext()


def _extend(current: Tuple[str, ...], names: Iterable[str]) -> Tuple[str, ...]:
    return current + tuple(names)


def with_scopes(ctx: Optional[CallContext], *names: str) -> CallContext:
    """Enable scopes for every operation kind."""
    ctx = ensure_context(ctx)
    return replace(ctx, all=_extend(ctx.all, names))


def with_select_scopes(ctx: Optional[CallContext], *names: str) -> CallContext:
    ctx = ensure_context(ctx)
    return replace(ctx, select=_extend(ctx.select, names))


def with_update_scopes(ctx: Optional[CallContext], *names: str) -> CallContext:
    ctx = ensure_context(ctx)
    return replace(ctx, update=_extend(ctx.update, names))


def with_insert_scopes(ctx: Optional[CallContext], *names: str) -> CallContext:
    ctx = ensure_context(ctx)
    return replace(ctx, insert=_extend(ctx.insert, names))


def with_delete_scopes(ctx: Optional[CallContext], *names: str) -> CallContext:
    ctx = ensure_context(ctx)
    return replace(ctx, delete=_extend(ctx.delete, names))


def without_default_scopes(ctx: Optional[CallContext]) -> CallContext:
    return replace(ensure_context(ctx), use_defaults=False)


def with_scope_data(ctx: Optional[CallContext], name: str, value: Any) -> CallContext:
    ctx = ensure_context(ctx)
    data: Dict[str, Any] = dict(ctx.data)
    data[name] = value
    return replace(ctx, data=_frozen(data))


def get_scope_data(ctx: Optional[CallContext], name: str, default: Any = None) -> Any:
    if ctx is None:
        return default
    return ctx.data.get(name, default)


def has_scope_data(ctx: Optional[CallContext], name: str) -> bool:
    return ctx is not None and name in ctx.data


def scope_data_snapshot(ctx: Optional[CallContext]) -> Dict[str, Any]:
    if ctx is None:
        return {}
    return dict(ctx.data)
