"""
Scoped generic repositories for SQLAlchemy models.

This package exposes the public API: the ``Repository`` CRUD engine, the
scope registry and call context helpers, the map projection/patch engine,
reusable criteria and the error taxonomy.
"""

from .config import RepositoryConfig, get_default_config, refresh_default_config
from .context import (
    CallContext,
    get_scope_data,
    has_scope_data,
    scope_data_snapshot,
    with_delete_scopes,
    with_insert_scopes,
    with_scope_data,
    with_scopes,
    with_select_scopes,
    with_update_scopes,
    without_default_scopes,
)
from .database import build_engine, detect_driver, get_database_url, session_scope
from .descriptors import DescriptorError, FieldBinding, ModelDescriptor, NamingStrategy, get_descriptor
from .errors import (
    DatabaseConnectionError,
    DatabaseError,
    DatabaseLockError,
    DatabasePermissionError,
    DatabaseTimeoutError,
    DuplicateKeyError,
    ConstraintViolationError,
    ErrorCategory,
    ExpectedCountViolationError,
    FieldError,
    RecordNotFoundError,
    RepositoryError,
    SQLSyntaxError,
    ValidationError,
    is_connection_error,
    is_constraint_violation,
    is_duplicated_key,
    is_expected_count_violation,
    is_record_not_found,
    is_retryable_database,
    map_database_error,
)
from .handlers import IdentifierOption, ModelHandlers
from .hooks import SQLLoggingHook, register_query_hooks
from .identity import IdentityResolver
from .mapping import (
    MalformedPatchValueError,
    MapPatchError,
    MapRecordMapper,
    NumericRangeError,
    PatchFieldNotAllowedError,
    PatchOptions,
    PatchPrimaryKeyNotAllowedError,
    ProjectionOptions,
    UnknownPatchFieldError,
    UnsupportedPatchValueError,
    apply_map_patch,
    entity_to_map,
    map_to_record,
    record_to_map,
    update_criteria_for_map_patch,
)
from .meta import ModelField, ModelMeta, generate_model_meta, get_model_fields
from .repository import Repository
from .scopes import (
    ScopeDefaults,
    ScopeDefinition,
    ScopeOperation,
    ScopeRegistry,
    ScopeState,
    resolve_scope_state,
    scope_by_field,
)

__all__ = [
    # repository
    "Repository",
    "ModelHandlers",
    "IdentifierOption",
    "IdentityResolver",
    "RepositoryConfig",
    "get_default_config",
    "refresh_default_config",
    # context/scopes
    "CallContext",
    "with_scopes",
    "with_select_scopes",
    "with_update_scopes",
    "with_insert_scopes",
    "with_delete_scopes",
    "with_scope_data",
    "without_default_scopes",
    "get_scope_data",
    "has_scope_data",
    "scope_data_snapshot",
    "ScopeDefaults",
    "ScopeDefinition",
    "ScopeOperation",
    "ScopeRegistry",
    "ScopeState",
    "resolve_scope_state",
    "scope_by_field",
    # mapping
    "NamingStrategy",
    "FieldBinding",
    "ModelDescriptor",
    "DescriptorError",
    "get_descriptor",
    "ProjectionOptions",
    "PatchOptions",
    "MapRecordMapper",
    "record_to_map",
    "entity_to_map",
    "apply_map_patch",
    "map_to_record",
    "update_criteria_for_map_patch",
    "MapPatchError",
    "UnknownPatchFieldError",
    "PatchFieldNotAllowedError",
    "PatchPrimaryKeyNotAllowedError",
    "UnsupportedPatchValueError",
    "NumericRangeError",
    "MalformedPatchValueError",
    # meta
    "ModelField",
    "ModelMeta",
    "get_model_fields",
    "generate_model_meta",
    # database/hooks
    "build_engine",
    "detect_driver",
    "get_database_url",
    "session_scope",
    "register_query_hooks",
    "SQLLoggingHook",
    # errors
    "ErrorCategory",
    "FieldError",
    "RepositoryError",
    "DatabaseError",
    "RecordNotFoundError",
    "DuplicateKeyError",
    "ConstraintViolationError",
    "DatabaseConnectionError",
    "DatabaseTimeoutError",
    "DatabaseLockError",
    "DatabasePermissionError",
    "SQLSyntaxError",
    "ExpectedCountViolationError",
    "ValidationError",
    "map_database_error",
    "is_record_not_found",
    "is_duplicated_key",
    "is_constraint_violation",
    "is_connection_error",
    "is_retryable_database",
    "is_expected_count_violation",
]
