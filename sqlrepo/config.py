"""Repository configuration and environment-backed defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

DEFAULT_LIST_LIMIT_VALUE = 25
DEFAULT_LIST_OFFSET_VALUE = 0


@dataclass(frozen=True)
class SettingDefinition:
    env_var: str
    default: object


DEFAULT_LIST_LIMIT = SettingDefinition("SQLREPO_DEFAULT_LIST_LIMIT", DEFAULT_LIST_LIMIT_VALUE)
DEFAULT_LIST_OFFSET = SettingDefinition("SQLREPO_DEFAULT_LIST_OFFSET", DEFAULT_LIST_OFFSET_VALUE)
ALLOW_FULL_TABLE_DELETE = SettingDefinition("SQLREPO_ALLOW_FULL_TABLE_DELETE", False)


def _normalize_bool(value: str | None, default: bool = False) -> bool:
    """Return normalized boolean from environment-style value."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"", "0", "false", "no", "off"}:
        return False
    if normalized in {"1", "true", "yes", "on"}:
        return True
    return default


def _normalize_int(value: str | None, default: Optional[int]) -> Optional[int]:
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


class RepositoryConfig(BaseModel):
    """Per-repository behaviour switches.

    ``default_list_limit`` of ``None`` (or anything not positive) disables
    default pagination for ``list``; negative offsets clamp to zero.
    """

    model_config = ConfigDict(frozen=True)

    default_list_limit: Optional[int] = DEFAULT_LIST_LIMIT_VALUE
    default_list_offset: int = DEFAULT_LIST_OFFSET_VALUE
    allow_full_table_delete: bool = False

    @field_validator("default_list_limit")
    @classmethod
    def _limit(cls, value: Optional[int]) -> Optional[int]:
        if value is None or value <= 0:
            return None
        return value

    @field_validator("default_list_offset")
    @classmethod
    def _offset(cls, value: int) -> int:
        return max(value or 0, 0)


@lru_cache(maxsize=None)
def get_default_config() -> RepositoryConfig:
    """Return the cached repository defaults sourced from the environment."""
    return RepositoryConfig(
        default_list_limit=_normalize_int(os.getenv(DEFAULT_LIST_LIMIT.env_var), DEFAULT_LIST_LIMIT.default),
        default_list_offset=_normalize_int(os.getenv(DEFAULT_LIST_OFFSET.env_var), DEFAULT_LIST_OFFSET.default) or 0,
        allow_full_table_delete=_normalize_bool(os.getenv(ALLOW_FULL_TABLE_DELETE.env_var), default=ALLOW_FULL_TABLE_DELETE.default),
    )


def refresh_default_config() -> None:
    """Clear cached defaults (useful in tests)."""
    get_default_config.cache_clear()
