"""
Capability bundle telling a repository how to build and identify records.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Optional, Sequence, TypeVar

from sqlalchemy import inspect as sa_inspect

from .criteria import Criterion
from .errors import FieldError, ValidationError

T = TypeVar("T")


@dataclass(frozen=True)
class IdentifierOption:
    """One lookup attempt for ``get_by_identifier``; a blank value means the raw identifier."""

    column: str
    value: str = ""


def is_nil_id(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, uuid.UUID):
        return value.int == 0
    if isinstance(value, str):
        return not value.strip()
    return False


@dataclass
class ModelHandlers(Generic[T]):
    new_record: Optional[Callable[[], T]] = None
    get_id: Optional[Callable[[T], Any]] = None
    set_id: Optional[Callable[[T, Any], None]] = None
    get_identifier: Optional[Callable[[], str]] = None
    get_identifier_value: Optional[Callable[[T], Any]] = None
    resolve_identifier: Optional[Callable[[str], Sequence[IdentifierOption]]] = None
    resolve_lookup: Optional[Callable[[T], Sequence[Criterion]]] = None

    @classmethod
    def for_model(cls, model: type, identifier: Optional[str] = None, **overrides: Any) -> "ModelHandlers":
        """Derive handlers from the mapper: primary key accessors and an optional identifier column."""
        mapper = sa_inspect(model)
        primary_key = mapper.primary_key
        if len(primary_key) != 1:
            raise ValidationError(
                f"{model.__name__} needs explicit handlers",
                [FieldError(field="primary_key", message="exactly one primary key column is supported")],
            )
        pk_attr = mapper.get_property_by_column(primary_key[0]).key

        def get_id(record: T) -> Any:
            return getattr(record, pk_attr)

        def set_id(record: T, value: Any) -> None:
            setattr(record, pk_attr, value)

        handlers = cls(new_record=model, get_id=get_id, set_id=set_id)
        if identifier:
            table = mapper.local_table
            if identifier not in table.c:
                raise ValidationError(
                    f"{model.__name__} has no identifier column",
                    [FieldError(field="identifier", message=f"unknown column {identifier!r}")],
                )
            identifier_attr = mapper.get_property_by_column(table.c[identifier]).key
            handlers.get_identifier = lambda: identifier
            handlers.get_identifier_value = lambda record: getattr(record, identifier_attr)
        for name, value in overrides.items():
            if not hasattr(handlers, name):
                raise TypeError(f"unknown handler {name!r}")
            setattr(handlers, name, value)
        return handlers

    def validate(self) -> List[FieldError]:
        errors: List[FieldError] = []
        if self.new_record is None:
            errors.append(FieldError(field="new_record", message="record factory is required"))
        if self.get_id is None:
            errors.append(FieldError(field="get_id", message="id getter is required"))
        if self.set_id is None:
            errors.append(FieldError(field="set_id", message="id setter is required"))
        if (self.get_identifier is None) != (self.get_identifier_value is None):
            errors.append(
                FieldError(
                    field="get_identifier",
                    message="identifier and identifier value getters must be provided together",
                )
            )
        elif self.get_identifier is not None and not (self.get_identifier() or "").strip():
            errors.append(FieldError(field="get_identifier", message="identifier column must not be empty"))
        return errors
