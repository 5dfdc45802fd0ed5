"""
Error taxonomy for repository operations.

Every failure raised by the driver is mapped exactly once into a
``RepositoryError`` subclass carrying a category, a retryable flag and an
optional retry hint. Callers branch on the category through the ``is_*``
predicates rather than on message text.
"""
from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    DATABASE = "database"
    NOT_FOUND = "database_not_found"
    DUPLICATE = "database_duplicate"
    CONSTRAINT = "database_constraint"
    CONNECTION = "database_connection"
    TIMEOUT = "database_timeout"
    LOCK = "database_lock"
    PERMISSION = "database_permission"
    SYNTAX = "database_syntax"
    EXPECTED_COUNT = "database_expected_count"
    VALIDATION = "validation"


class FieldError(BaseModel):
    field: str
    message: str


class RepositoryError(Exception):
    """Base error for everything raised by the repository layer."""

    category: ErrorCategory = ErrorCategory.DATABASE
    default_code: int = 500
    default_text_code: str = "DATABASE_ERROR"
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        retryable: Optional[bool] = None,
        retry_after_ms: Optional[int] = None,
        code: Optional[int] = None,
        text_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = self.default_retryable if retryable is None else retryable
        self.retry_after_ms = retry_after_ms
        self.code = self.default_code if code is None else code
        self.text_code = text_code or self.default_text_code
        self.metadata: Dict[str, Any] = dict(metadata or {})

    def __repr__(self) -> str:
        return f"{type(self).__name__}(category={self.category.value!r}, message={self.message!r})"


class DatabaseError(RepositoryError):
    """Unclassified driver failure; treated as transient."""

    default_retryable = True


class RecordNotFoundError(RepositoryError):
    category = ErrorCategory.NOT_FOUND
    default_code = 404
    default_text_code = "RECORD_NOT_FOUND"


class ConstraintViolationError(RepositoryError):
    category = ErrorCategory.CONSTRAINT
    default_code = 409
    default_text_code = "CONSTRAINT_VIOLATION"


class DuplicateKeyError(ConstraintViolationError):
    category = ErrorCategory.DUPLICATE
    default_text_code = "DUPLICATE_KEY"


class DatabaseConnectionError(RepositoryError):
    category = ErrorCategory.CONNECTION
    default_code = 503
    default_text_code = "DATABASE_CONNECTION"
    default_retryable = True


class DatabaseTimeoutError(RepositoryError):
    category = ErrorCategory.TIMEOUT
    default_code = 504
    default_text_code = "DATABASE_TIMEOUT"
    default_retryable = True


class DatabaseLockError(RepositoryError):
    category = ErrorCategory.LOCK
    default_code = 409
    default_text_code = "DATABASE_LOCK"
    default_retryable = True


class DatabasePermissionError(RepositoryError):
    category = ErrorCategory.PERMISSION
    default_code = 403
    default_text_code = "DATABASE_PERMISSION"


class SQLSyntaxError(RepositoryError):
    category = ErrorCategory.SYNTAX
    default_code = 500
    default_text_code = "SQL_SYNTAX"


class ExpectedCountViolationError(RepositoryError):
    """Raised when a statement affected a different number of rows than required."""

    category = ErrorCategory.EXPECTED_COUNT
    default_code = 409
    default_text_code = "EXPECTED_COUNT_VIOLATION"

    def __init__(self, expected: int, actual: int, **kwargs: Any) -> None:
        metadata = {"expected": expected, "actual": actual, **kwargs.pop("metadata", {})}
        super().__init__(
            f"expected {expected} affected row(s), got {actual}",
            metadata=metadata,
            **kwargs,
        )
        self.expected = expected
        self.actual = actual


class ValidationError(RepositoryError):
    """Configuration or argument validation failure listing every offending field."""

    category = ErrorCategory.VALIDATION
    default_code = 400
    default_text_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field_errors: Optional[List[FieldError]] = None, **kwargs: Any) -> None:
        self.field_errors: List[FieldError] = list(field_errors or [])
        metadata = kwargs.pop("metadata", {})
        if self.field_errors:
            metadata = {**metadata, "fields": [fe.model_dump() for fe in self.field_errors]}
        super().__init__(message, metadata=metadata, **kwargs)

    def __str__(self) -> str:
        if not self.field_errors:
            return self.message
        details = "; ".join(f"{fe.field}: {fe.message}" for fe in self.field_errors)
        return f"{self.message} ({details})"


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

def _category_of(err: Optional[BaseException]) -> Optional[ErrorCategory]:
    while err is not None:
        if isinstance(err, RepositoryError):
            return err.category
        err = err.__cause__
    return None


def is_record_not_found(err: Optional[BaseException]) -> bool:
    return _category_of(err) == ErrorCategory.NOT_FOUND


def is_duplicated_key(err: Optional[BaseException]) -> bool:
    return _category_of(err) == ErrorCategory.DUPLICATE


def is_constraint_violation(err: Optional[BaseException]) -> bool:
    """Duplicate keys are constraint violations too."""
    return _category_of(err) in (ErrorCategory.CONSTRAINT, ErrorCategory.DUPLICATE)


def is_connection_error(err: Optional[BaseException]) -> bool:
    return _category_of(err) == ErrorCategory.CONNECTION


def is_expected_count_violation(err: Optional[BaseException]) -> bool:
    return _category_of(err) == ErrorCategory.EXPECTED_COUNT


def is_retryable_database(err: Optional[BaseException]) -> bool:
    while err is not None:
        if isinstance(err, RepositoryError):
            return err.retryable
        err = err.__cause__
    return False


# ---------------------------------------------------------------------------
# Driver error mapping
# ---------------------------------------------------------------------------

DRIVER_POSTGRES = "postgres"
DRIVER_SQLITE = "sqlite"
DRIVER_MSSQL = "mssql"
DRIVER_MYSQL = "mysql"

ErrorMapper = Callable[[BaseException, Optional[BaseException]], Optional[RepositoryError]]

_POSTGRES_CODES: Dict[str, Callable[[str], RepositoryError]] = {
    "23505": lambda msg: DuplicateKeyError(msg, metadata={"sqlstate": "23505"}),
    "23503": lambda msg: ConstraintViolationError(msg, metadata={"sqlstate": "23503", "constraint": "foreign_key"}),
    "23514": lambda msg: ConstraintViolationError(msg, metadata={"sqlstate": "23514", "constraint": "check"}),
    "23502": lambda msg: ConstraintViolationError(msg, metadata={"sqlstate": "23502", "constraint": "not_null"}),
    "40001": lambda msg: DatabaseLockError(msg, retry_after_ms=1000, metadata={"sqlstate": "40001"}),
    "40P01": lambda msg: DatabaseLockError(msg, retry_after_ms=500, metadata={"sqlstate": "40P01"}),
    "55P03": lambda msg: DatabaseLockError(msg, retry_after_ms=500, metadata={"sqlstate": "55P03"}),
    "57014": lambda msg: DatabaseTimeoutError(msg, metadata={"sqlstate": "57014"}),
    "08000": lambda msg: DatabaseConnectionError(msg, metadata={"sqlstate": "08000"}),
    "08003": lambda msg: DatabaseConnectionError(msg, metadata={"sqlstate": "08003"}),
    "08006": lambda msg: DatabaseConnectionError(msg, metadata={"sqlstate": "08006"}),
    "42501": lambda msg: DatabasePermissionError(msg, metadata={"sqlstate": "42501"}),
    "42601": lambda msg: SQLSyntaxError(msg, metadata={"sqlstate": "42601"}),
    "42P01": lambda msg: SQLSyntaxError(msg, metadata={"sqlstate": "42P01"}),
    "42703": lambda msg: SQLSyntaxError(msg, metadata={"sqlstate": "42703"}),
}

_SQLITE_CODES: Dict[str, Callable[[str], RepositoryError]] = {
    "SQLITE_CONSTRAINT_UNIQUE": lambda msg: DuplicateKeyError(msg),
    "SQLITE_CONSTRAINT_PRIMARYKEY": lambda msg: DuplicateKeyError(msg),
    "SQLITE_CONSTRAINT_FOREIGNKEY": lambda msg: ConstraintViolationError(msg, metadata={"constraint": "foreign_key"}),
    "SQLITE_CONSTRAINT_NOTNULL": lambda msg: ConstraintViolationError(msg, metadata={"constraint": "not_null"}),
    "SQLITE_CONSTRAINT_CHECK": lambda msg: ConstraintViolationError(msg, metadata={"constraint": "check"}),
    "SQLITE_CONSTRAINT": lambda msg: ConstraintViolationError(msg),
    "SQLITE_BUSY": lambda msg: DatabaseLockError(msg, retry_after_ms=100),
    "SQLITE_LOCKED": lambda msg: DatabaseLockError(msg, retry_after_ms=100),
    "SQLITE_AUTH": lambda msg: DatabasePermissionError(msg),
    "SQLITE_PERM": lambda msg: DatabasePermissionError(msg),
    "SQLITE_CANTOPEN": lambda msg: DatabaseConnectionError(msg),
}

_MSSQL_PATTERNS = [
    (re.compile(r"(violation of (unique|primary key) (key )?constraint|cannot insert duplicate key)", re.I),
     lambda msg: DuplicateKeyError(msg)),
    (re.compile(r"(foreign key constraint|check constraint|cannot insert the value null)", re.I),
     lambda msg: ConstraintViolationError(msg)),
    (re.compile(r"deadlock", re.I), lambda msg: DatabaseLockError(msg, retry_after_ms=500)),
    (re.compile(r"lock request time out", re.I), lambda msg: DatabaseLockError(msg, retry_after_ms=500)),
    (re.compile(r"permission was denied", re.I), lambda msg: DatabasePermissionError(msg)),
    (re.compile(r"incorrect syntax", re.I), lambda msg: SQLSyntaxError(msg)),
]

_MYSQL_CODES: Dict[int, Callable[[str], RepositoryError]] = {
    1062: lambda msg: DuplicateKeyError(msg),
    1451: lambda msg: ConstraintViolationError(msg, metadata={"constraint": "foreign_key"}),
    1452: lambda msg: ConstraintViolationError(msg, metadata={"constraint": "foreign_key"}),
    1048: lambda msg: ConstraintViolationError(msg, metadata={"constraint": "not_null"}),
    1205: lambda msg: DatabaseLockError(msg, retry_after_ms=500),
    1213: lambda msg: DatabaseLockError(msg, retry_after_ms=500),
    1142: lambda msg: DatabasePermissionError(msg),
    1064: lambda msg: SQLSyntaxError(msg),
}


def _orig_message(err: BaseException, orig: Optional[BaseException]) -> str:
    source = orig if orig is not None else err
    text = str(source).strip()
    return text.splitlines()[0] if text else type(source).__name__


def _map_postgres(err: BaseException, orig: Optional[BaseException]) -> Optional[RepositoryError]:
    if orig is None:
        return None
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if not code:
        return None
    factory = _POSTGRES_CODES.get(str(code))
    if factory is None:
        return None
    return factory(_orig_message(err, orig))


def _map_sqlite(err: BaseException, orig: Optional[BaseException]) -> Optional[RepositoryError]:
    if orig is None:
        return None
    name = getattr(orig, "sqlite_errorname", None)
    if not name:
        return None
    factory = _SQLITE_CODES.get(name)
    if factory is None and name.startswith("SQLITE_CONSTRAINT"):
        factory = _SQLITE_CODES["SQLITE_CONSTRAINT"]
    if factory is None:
        return None
    mapped = factory(_orig_message(err, orig))
    mapped.metadata.setdefault("sqlite_error", name)
    return mapped


def _map_mssql(err: BaseException, orig: Optional[BaseException]) -> Optional[RepositoryError]:
    message = _orig_message(err, orig)
    for pattern, factory in _MSSQL_PATTERNS:
        if pattern.search(message):
            return factory(message)
    return None


def _map_mysql(err: BaseException, orig: Optional[BaseException]) -> Optional[RepositoryError]:
    if orig is None or not getattr(orig, "args", None):
        return None
    code = orig.args[0]
    if not isinstance(code, int):
        return None
    factory = _MYSQL_CODES.get(code)
    return factory(_orig_message(err, orig)) if factory else None


_DRIVER_MAPPERS: Dict[str, ErrorMapper] = {
    DRIVER_POSTGRES: _map_postgres,
    DRIVER_SQLITE: _map_sqlite,
    DRIVER_MSSQL: _map_mssql,
    DRIVER_MYSQL: _map_mysql,
}


def _map_common(err: BaseException, orig: Optional[BaseException]) -> Optional[RepositoryError]:
    message = _orig_message(err, orig)
    if isinstance(err, sa_exc.NoResultFound):
        return RecordNotFoundError(message)
    if isinstance(err, sa_exc.TimeoutError):
        return DatabaseTimeoutError(message, retry_after_ms=1000)
    if isinstance(err, sa_exc.DisconnectionError):
        return DatabaseConnectionError(message)
    if isinstance(err, sa_exc.DBAPIError) and err.connection_invalidated:
        return DatabaseConnectionError(message)
    if isinstance(err, sa_exc.OperationalError):
        lowered = message.lower()
        if "connection refused" in lowered or "could not connect" in lowered or "server closed the connection" in lowered:
            return DatabaseConnectionError(message)
        if "timeout" in lowered or "timed out" in lowered:
            return DatabaseTimeoutError(message)
    if isinstance(err, sa_exc.IntegrityError):
        return ConstraintViolationError(message)
    return None


def map_database_error(err: BaseException, driver: Optional[str] = None) -> RepositoryError:
    """Translate a driver/SQLAlchemy exception into the repository taxonomy.

    Already-categorized errors are returned unchanged. Unrecognised failures
    become a generic retryable ``DatabaseError``.
    """
    if isinstance(err, RepositoryError):
        return err

    orig = getattr(err, "orig", None)
    mapper = _DRIVER_MAPPERS.get(driver or "")
    mapped = mapper(err, orig) if mapper is not None else None
    if mapped is None:
        mapped = _map_common(err, orig)
    if mapped is None:
        mapped = DatabaseError(
            "Database operation failed",
            metadata={"cause": _orig_message(err, orig)},
        )
    if driver:
        mapped.metadata.setdefault("driver", driver)
    logger.debug(f"Mapped {type(err).__name__} to {mapped.category.value}: {mapped.message}")
    return mapped
