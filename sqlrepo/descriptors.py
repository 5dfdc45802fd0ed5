"""
Field descriptors for mapped classes.

Each mapped class is inspected once and described as an ordered list of
persisted fields carrying the three names a field can be addressed by:
storage (column name), external (payload name) and declared (attribute
name). Members of ``composite()`` attributes are inlined one level deep.
Descriptors are cached for the life of the process.
"""
from __future__ import annotations

import dataclasses
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import Column
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import NoInspectionAvailable

from .errors import FieldError, ValidationError

EXTERNAL_INFO_KEY = "external"


class NamingStrategy(str, Enum):
    STORAGE = "storage"
    EXTERNAL = "external"
    DECLARED = "declared"


class DescriptorError(ValidationError):
    """Raised when a mapped class cannot be described unambiguously."""


@dataclass(frozen=True)
class FieldBinding:
    declared_name: str
    storage_name: str
    external_name: Optional[str]
    column_attribute: str
    column: Column
    primary_key: bool
    nullable: bool
    composite: Optional[str] = None
    member_index: int = 0

    @property
    def path(self) -> Tuple[str, ...]:
        if self.composite is None:
            return (self.column_attribute,)
        return (self.composite, self.declared_name)

    def name_for(self, strategy: NamingStrategy) -> Optional[str]:
        strategy = NamingStrategy(strategy)
        if strategy is NamingStrategy.STORAGE:
            return self.storage_name
        if strategy is NamingStrategy.DECLARED:
            return self.declared_name
        return self.external_name


@dataclass(frozen=True)
class CompositeInfo:
    key: str
    composite_class: type
    members: Tuple[str, ...]


@dataclass(frozen=True)
class ModelDescriptor:
    model: type
    fields: Tuple[FieldBinding, ...]
    composites: Dict[str, CompositeInfo] = field(default_factory=dict)
    _indexes: Dict[NamingStrategy, Dict[str, FieldBinding]] = field(default_factory=dict, repr=False)

    def lookup(self, name: str, strategy: NamingStrategy = NamingStrategy.STORAGE) -> Optional[FieldBinding]:
        return self._indexes[NamingStrategy(strategy)].get(name)

    def names(self, strategy: NamingStrategy = NamingStrategy.STORAGE) -> List[str]:
        return list(self._indexes[NamingStrategy(strategy)].keys())

    @property
    def primary_key_fields(self) -> Tuple[FieldBinding, ...]:
        return tuple(f for f in self.fields if f.primary_key)


_cache: Dict[type, ModelDescriptor] = {}
_cache_lock = threading.Lock()


def _composite_members(prop) -> Tuple[str, ...]:
    cls = prop.composite_class
    if dataclasses.is_dataclass(cls):
        return tuple(f.name for f in dataclasses.fields(cls) if f.init)
    return tuple(col.key for col in prop.columns)


def _external_name(column: Column, declared: str) -> Optional[str]:
    if EXTERNAL_INFO_KEY in column.info:
        external = column.info[EXTERNAL_INFO_KEY]
        return external or None
    return declared


def _binding(declared: str, column: Column, column_attribute: str, **extra: Any) -> FieldBinding:
    return FieldBinding(
        declared_name=declared,
        storage_name=column.name,
        external_name=_external_name(column, declared),
        column_attribute=column_attribute,
        column=column,
        primary_key=bool(column.primary_key),
        nullable=bool(column.nullable) and not column.primary_key,
        **extra,
    )


def _build_descriptor(model: type) -> ModelDescriptor:
    try:
        mapper = sa_inspect(model)
    except NoInspectionAvailable as exc:
        raise DescriptorError(f"{model!r} is not a mapped class") from exc
    table = mapper.local_table

    composite_by_column: Dict[str, Any] = {}
    composites: Dict[str, CompositeInfo] = {}
    for prop in mapper.composites:
        members = _composite_members(prop)
        composites[prop.key] = CompositeInfo(prop.key, prop.composite_class, members)
        for col in prop.columns:
            composite_by_column[col.name] = prop

    fields: List[FieldBinding] = []
    emitted = set()
    for prop in mapper.column_attrs:
        column = prop.columns[0]
        if not isinstance(column, Column) or column.table is not table:
            continue
        owner = composite_by_column.get(column.name)
        if owner is None:
            fields.append(_binding(prop.key, column, prop.key))
            continue
        if owner.key in emitted:
            continue
        emitted.add(owner.key)
        info = composites[owner.key]
        for index, (member, member_column) in enumerate(zip(info.members, owner.columns)):
            attr_key = mapper.get_property_by_column(member_column).key
            fields.append(_binding(member, member_column, attr_key, composite=owner.key, member_index=index))

    indexes: Dict[NamingStrategy, Dict[str, FieldBinding]] = {}
    problems: List[FieldError] = []
    for strategy in NamingStrategy:
        index: Dict[str, FieldBinding] = {}
        for binding in fields:
            name = binding.name_for(strategy)
            if name is None:
                continue
            if name in index:
                problems.append(
                    FieldError(
                        field=name,
                        message=f"{strategy.value} name used by both {index[name].path} and {binding.path}",
                    )
                )
                continue
            index[name] = binding
        indexes[strategy] = index
    if problems:
        raise DescriptorError(f"ambiguous field names on {model.__name__}", problems)

    return ModelDescriptor(model=model, fields=tuple(fields), composites=composites, _indexes=indexes)


def get_descriptor(model_or_record: Any) -> ModelDescriptor:
    """Return the cached descriptor for a mapped class or instance."""
    model = model_or_record if isinstance(model_or_record, type) else type(model_or_record)
    with _cache_lock:
        cached = _cache.get(model)
        if cached is not None:
            return cached
        descriptor = _build_descriptor(model)
        _cache[model] = descriptor
        return descriptor


def clear_descriptor_cache() -> None:
    with _cache_lock:
        _cache.clear()


def is_unloaded(record: Any, attribute: str) -> bool:
    state = sa_inspect(record)
    return state.key is not None and attribute in state.unloaded


def read_field(record: Any, binding: FieldBinding) -> Any:
    """Read a field without triggering lazy loads; unloaded attributes read as ``None``."""
    if binding.composite is None:
        if is_unloaded(record, binding.column_attribute):
            return None
        return getattr(record, binding.column_attribute)
    if is_unloaded(record, binding.column_attribute):
        return None
    value = getattr(record, binding.composite)
    if value is None:
        return None
    if hasattr(value, "__composite_values__"):
        return value.__composite_values__()[binding.member_index]
    return getattr(value, binding.declared_name)


def write_fields(record: Any, values: List[Tuple[FieldBinding, Any]]) -> None:
    """Assign coerced values; composite members are regrouped into a new composite value."""
    descriptor = get_descriptor(record)
    pending: Dict[str, Dict[int, Any]] = {}
    for binding, value in values:
        if binding.composite is None:
            setattr(record, binding.column_attribute, value)
        else:
            pending.setdefault(binding.composite, {})[binding.member_index] = value
    for key, changes in pending.items():
        info = descriptor.composites[key]
        members = [b for b in descriptor.fields if b.composite == key]
        current = [read_field(record, b) for b in members]
        for index, value in changes.items():
            current[index] = value
        setattr(record, key, info.composite_class(*current))
