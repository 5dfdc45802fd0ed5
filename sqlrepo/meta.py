"""Field metadata for mapped models, suitable for schema/UI generation."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import CompileError

from .descriptors import FieldBinding, get_descriptor


class ModelField(BaseModel):
    name: str
    column: str
    external_name: Optional[str] = None
    type: str
    python_type: Optional[str] = None
    nullable: bool = True
    primary_key: bool = False
    unique: bool = False
    has_default: bool = False
    description: Optional[str] = None


class ModelMeta(BaseModel):
    model: str
    table: str
    primary_key: List[str]
    fields: List[ModelField]


def _python_type_name(binding: FieldBinding) -> Optional[str]:
    try:
        return binding.column.type.python_type.__name__
    except NotImplementedError:
        return None


def _type_name(binding: FieldBinding) -> str:
    try:
        return str(binding.column.type)
    except CompileError:
        return type(binding.column.type).__name__


def _field(binding: FieldBinding) -> ModelField:
    column = binding.column
    return ModelField(
        name=binding.declared_name,
        column=binding.storage_name,
        external_name=binding.external_name,
        type=_type_name(binding),
        python_type=_python_type_name(binding),
        nullable=binding.nullable,
        primary_key=binding.primary_key,
        unique=bool(column.unique),
        has_default=column.default is not None or column.server_default is not None,
        description=column.doc or column.comment,
    )


def get_model_fields(model: type) -> List[ModelField]:
    return [_field(binding) for binding in get_descriptor(model).fields]


def generate_model_meta(model: type) -> ModelMeta:
    descriptor = get_descriptor(model)
    table = getattr(model, "__table__", None)
    return ModelMeta(
        model=model.__name__,
        table=table.name if table is not None else model.__name__.lower(),
        primary_key=[b.storage_name for b in descriptor.primary_key_fields],
        fields=[_field(binding) for binding in descriptor.fields],
    )
