"""
Projection of mapped records to dictionaries and policy-checked patching back.

``record_to_map`` walks the cached field descriptor and emits one entry per
persisted field under the requested naming strategy. ``apply_map_patch``
resolves every payload key, enforces the write policy and coerces every
value before assigning anything, so a rejected key never leaves a record
half-updated.
"""
from __future__ import annotations

import enum
import logging
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, FrozenSet, Generic, List, Mapping, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict
from sqlalchemy import JSON, BigInteger, SmallInteger
from sqlalchemy import inspect as sa_inspect

from .criteria import Criterion, update_columns, update_set_column
from .descriptors import FieldBinding, NamingStrategy, get_descriptor, read_field, write_fields
from .query_safety import validate_identifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

DATETIME_FORMATS: Tuple[str, ...] = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)

_TRUE_TEXT = frozenset({"1", "t", "true"})
_FALSE_TEXT = frozenset({"0", "f", "false"})


class MapPatchError(ValueError):
    def __init__(self, key: str, message: str) -> None:
        super().__init__(f"{key}: {message}")
        self.key = key


class UnknownPatchFieldError(MapPatchError):
    pass


class PatchFieldNotAllowedError(MapPatchError):
    pass


class PatchPrimaryKeyNotAllowedError(MapPatchError):
    pass


class UnsupportedPatchValueError(MapPatchError):
    pass


class MalformedPatchValueError(MapPatchError):
    pass


class NumericRangeError(MapPatchError):
    def __init__(self, key: str, value: Any, direction: str, bounds: Tuple[int, int]) -> None:
        super().__init__(key, f"value {value} {direction} the range [{bounds[0]}, {bounds[1]}]")
        self.value = value
        self.direction = direction


class ProjectionOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    key_mode: NamingStrategy = NamingStrategy.STORAGE
    include_none: bool = True


class PatchOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    key_mode: NamingStrategy = NamingStrategy.STORAGE
    allowed_fields: FrozenSet[str] = frozenset()
    ignore_unknown: bool = False
    ignore_none: bool = False
    deny_primary_key: bool = False


def _merge(options: Optional[BaseModel], cls: Type[BaseModel], overrides: Dict[str, Any]):
    base = options if options is not None else cls()
    if not overrides:
        return base
    return cls(**{**base.model_dump(), **overrides})


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------

def _python_type(binding: FieldBinding) -> Optional[type]:
    if isinstance(binding.column.type, JSON):
        return None
    try:
        return binding.column.type.python_type
    except NotImplementedError:
        return None


def integer_bounds(binding: FieldBinding) -> Tuple[int, int]:
    column_type = binding.column.type
    unsigned = bool(binding.column.info.get("unsigned") or getattr(column_type, "unsigned", False))
    if isinstance(column_type, BigInteger):
        bits = 64
    elif isinstance(column_type, SmallInteger):
        bits = 16
    else:
        bits = 32
    if unsigned:
        return 0, 2**bits - 1
    return -(2 ** (bits - 1)), 2 ** (bits - 1) - 1


_ZERO_VALUES: Dict[type, Callable[[], Any]] = {
    bool: lambda: False,
    int: lambda: 0,
    float: lambda: 0.0,
    Decimal: lambda: Decimal(0),
    str: lambda: "",
    bytes: lambda: b"",
    uuid.UUID: lambda: uuid.UUID(int=0),
    datetime: lambda: datetime.min,
    date: lambda: date.min,
    dict: dict,
    list: list,
}


def zero_value(binding: FieldBinding) -> Any:
    target = _python_type(binding)
    factory = _ZERO_VALUES.get(target) if target is not None else None
    return factory() if factory is not None else None


def _unsupported(key: str, value: Any, target: type) -> UnsupportedPatchValueError:
    return UnsupportedPatchValueError(key, f"cannot assign {type(value).__name__} to {target.__name__}")


def _to_int(key: str, binding: FieldBinding, value: Any) -> int:
    if isinstance(value, bool):
        raise _unsupported(key, value, int)
    if isinstance(value, int):
        number = value
    elif isinstance(value, float):
        if not value.is_integer():
            raise MalformedPatchValueError(key, f"{value!r} is not an integral number")
        number = int(value)
    elif isinstance(value, Decimal):
        if not value.is_finite() or value != value.to_integral_value():
            raise MalformedPatchValueError(key, f"{value!r} is not an integral number")
        number = int(value)
    elif isinstance(value, str):
        try:
            number = int(value.strip(), 10)
        except ValueError as exc:
            raise MalformedPatchValueError(key, f"invalid integer {value!r}") from exc
    else:
        raise _unsupported(key, value, int)
    low, high = integer_bounds(binding)
    if number > high:
        raise NumericRangeError(key, number, "overflows", (low, high))
    if number < low:
        raise NumericRangeError(key, number, "underflows", (low, high))
    return number


def _to_float(key: str, binding: FieldBinding, value: Any) -> float:
    if isinstance(value, bool):
        raise _unsupported(key, value, float)
    if isinstance(value, (int, float, Decimal)):
        try:
            return float(value)
        except OverflowError as exc:
            raise NumericRangeError(key, value, "overflows", (-1, 1)) from exc
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError as exc:
            raise MalformedPatchValueError(key, f"invalid number {value!r}") from exc
    raise _unsupported(key, value, float)


def _to_decimal(key: str, binding: FieldBinding, value: Any) -> Decimal:
    if isinstance(value, bool):
        raise _unsupported(key, value, Decimal)
    if isinstance(value, (int, Decimal)):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation as exc:
            raise MalformedPatchValueError(key, f"invalid decimal {value!r}") from exc
    raise _unsupported(key, value, Decimal)


def _to_bool(key: str, binding: FieldBinding, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_TEXT:
            return True
        if lowered in _FALSE_TEXT:
            return False
        raise MalformedPatchValueError(key, f"invalid boolean {value!r}")
    raise _unsupported(key, value, bool)


def _to_uuid(key: str, binding: FieldBinding, value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str):
        try:
            return uuid.UUID(value.strip())
        except ValueError as exc:
            raise MalformedPatchValueError(key, f"invalid UUID {value!r}") from exc
    raise _unsupported(key, value, uuid.UUID)


def parse_datetime(text: str) -> Optional[datetime]:
    """Parse ``text`` against ``DATETIME_FORMATS``; first match wins.

    Layouts without an offset are read as UTC.
    """
    candidate = text.strip()
    for fmt in DATETIME_FORMATS:
        try:
            parsed = datetime.strptime(candidate, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
    return None


def _to_datetime(key: str, binding: FieldBinding, value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        parsed = parse_datetime(value)
        if parsed is None:
            raise MalformedPatchValueError(key, f"invalid timestamp {value!r}")
        return parsed
    raise _unsupported(key, value, datetime)


def _to_date(key: str, binding: FieldBinding, value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        parsed = parse_datetime(value)
        if parsed is None:
            raise MalformedPatchValueError(key, f"invalid date {value!r}")
        return parsed.date()
    raise _unsupported(key, value, date)


def _to_str(key: str, binding: FieldBinding, value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, enum.Enum) and isinstance(value.value, str):
        return value.value
    if isinstance(value, (int, float, Decimal, uuid.UUID)) and not isinstance(value, bool):
        return str(value)
    raise _unsupported(key, value, str)


def _to_enum(key: str, target: Type[enum.Enum], value: Any) -> enum.Enum:
    if isinstance(value, target):
        return value
    if isinstance(value, str):
        try:
            return target(value)
        except ValueError:
            pass
        try:
            return target[value]
        except KeyError as exc:
            raise MalformedPatchValueError(key, f"invalid {target.__name__} value {value!r}") from exc
    raise _unsupported(key, value, target)


_CONVERTERS: Dict[type, Callable[[str, FieldBinding, Any], Any]] = {
    bool: _to_bool,
    int: _to_int,
    float: _to_float,
    Decimal: _to_decimal,
    uuid.UUID: _to_uuid,
    datetime: _to_datetime,
    date: _to_date,
    str: _to_str,
}


def coerce_value(binding: FieldBinding, value: Any, key: Optional[str] = None) -> Any:
    """Convert ``value`` to the Python type of the bound column."""
    key = key or binding.storage_name
    if value is None:
        return None if binding.nullable else zero_value(binding)
    target = _python_type(binding)
    if target is None:
        return value
    converter = _CONVERTERS.get(target)
    if converter is not None:
        return converter(key, binding, value)
    if isinstance(target, type) and issubclass(target, enum.Enum):
        return _to_enum(key, target, value)
    if isinstance(value, target):
        return value
    raise _unsupported(key, value, target)


# ---------------------------------------------------------------------------
# Projection and patching
# ---------------------------------------------------------------------------

def record_to_map(record: Any, options: Optional[ProjectionOptions] = None, **overrides: Any) -> Dict[str, Any]:
    if record is None:
        raise TypeError("record must not be None")
    opts: ProjectionOptions = _merge(options, ProjectionOptions, overrides)
    payload: Dict[str, Any] = {}
    for binding in get_descriptor(record).fields:
        key = binding.name_for(opts.key_mode)
        if key is None:
            continue
        value = read_field(record, binding)
        if value is None and not opts.include_none:
            continue
        payload[key] = value
    return payload


entity_to_map = record_to_map


def clone_record(record: T) -> T:
    """Shallow copy of the loaded column state into a new transient instance."""
    mapper = sa_inspect(type(record))
    state = sa_inspect(record)
    clone = mapper.class_manager.new_instance()
    for prop in mapper.column_attrs:
        if prop.key in state.dict:
            setattr(clone, prop.key, state.dict[prop.key])
    return clone


def _allowed(binding: FieldBinding, key: str, allowed: FrozenSet[str]) -> bool:
    if not allowed:
        return True
    return key in allowed or any(
        name in allowed for name in (binding.storage_name, binding.declared_name, binding.external_name) if name
    )


def plan_map_patch(record_or_model: Any, payload: Mapping[str, Any], options: PatchOptions) -> List[Tuple[FieldBinding, Any]]:
    """Resolve and coerce every payload entry without touching the record."""
    descriptor = get_descriptor(record_or_model)
    planned: List[Tuple[FieldBinding, Any]] = []
    for key in sorted(payload):
        value = payload[key]
        if value is None and options.ignore_none:
            continue
        binding = descriptor.lookup(key, options.key_mode)
        if binding is None:
            if options.ignore_unknown:
                continue
            raise UnknownPatchFieldError(key, f"unknown field for {descriptor.model.__name__}")
        if options.deny_primary_key and binding.primary_key:
            raise PatchPrimaryKeyNotAllowedError(key, "primary key cannot be patched")
        if not _allowed(binding, key, options.allowed_fields):
            raise PatchFieldNotAllowedError(key, "field is not in the allow-list")
        planned.append((binding, coerce_value(binding, value, key)))
    return planned


def apply_map_patch(
    record: T,
    payload: Optional[Mapping[str, Any]],
    options: Optional[PatchOptions] = None,
    *,
    copy: bool = False,
    **overrides: Any,
) -> Tuple[T, List[str]]:
    """Apply ``payload`` to ``record`` and return it with the touched storage columns.

    With ``copy=True`` the input record is left untouched and a patched clone
    is returned.
    """
    if record is None:
        raise TypeError("record must not be None")
    opts: PatchOptions = _merge(options, PatchOptions, overrides)
    if not payload:
        return record, []
    planned = plan_map_patch(record, payload, opts)
    target = clone_record(record) if copy else record
    write_fields(target, planned)
    touched: List[str] = []
    for binding, _ in planned:
        if binding.storage_name not in touched:
            touched.append(binding.storage_name)
    return target, touched


def map_to_record(
    model: Union[Type[T], Callable[[], T]],
    payload: Mapping[str, Any],
    options: Optional[PatchOptions] = None,
    **overrides: Any,
) -> T:
    record = model()
    patched, _ = apply_map_patch(record, payload, options, **overrides)
    return patched


def update_criteria_for_map_patch(
    payload: Optional[Mapping[str, Any]],
    options: Optional[PatchOptions] = None,
    *,
    model: Optional[type] = None,
    **overrides: Any,
) -> List[Criterion]:
    """Translate a storage-keyed payload into update criteria.

    When ``model`` is given, keys and values are checked and coerced through
    its descriptor; otherwise keys are validated as plain identifiers.
    """
    opts: PatchOptions = _merge(options, PatchOptions, overrides)
    if NamingStrategy(opts.key_mode) is not NamingStrategy.STORAGE:
        raise ValueError("update criteria require storage key mode")
    if not payload:
        return []

    assignments: List[Tuple[str, Any]] = []
    if model is not None:
        for binding, value in plan_map_patch(model, payload, opts):
            assignments.append((binding.storage_name, value))
    else:
        for key in sorted(payload):
            value = payload[key]
            if value is None and opts.ignore_none:
                continue
            column = validate_identifier(key)
            if opts.deny_primary_key and column.lower() == "id":
                raise PatchPrimaryKeyNotAllowedError(key, "primary key cannot be patched")
            if opts.allowed_fields and column not in opts.allowed_fields:
                raise PatchFieldNotAllowedError(key, "field is not in the allow-list")
            assignments.append((column, value))

    if not assignments:
        return []
    criteria: List[Criterion] = [update_columns(*(column for column, _ in assignments))]
    criteria.extend(update_set_column(column, value) for column, value in assignments)
    return criteria


class MapRecordMapper(Generic[T]):
    """Bundles projection and patch policy for one mapped model."""

    def __init__(
        self,
        model: Type[T],
        *,
        projection: Optional[ProjectionOptions] = None,
        patch: Optional[PatchOptions] = None,
    ) -> None:
        get_descriptor(model)
        self.model = model
        self.projection = projection or ProjectionOptions()
        self.patch = patch or PatchOptions()

    def to_map(self, record: T) -> Dict[str, Any]:
        return record_to_map(record, self.projection)

    def to_record(self, payload: Mapping[str, Any]) -> T:
        return map_to_record(self.model, payload, self.patch)

    def apply(self, record: T, payload: Mapping[str, Any], *, copy: bool = False) -> Tuple[T, List[str]]:
        return apply_map_patch(record, payload, self.patch, copy=copy)
