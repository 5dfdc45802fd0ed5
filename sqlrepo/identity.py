"""
Identity resolution: find the stored row a candidate record refers to.

Attempts run in a fixed order (primary key, identifier value, custom lookup
criteria) and stop at the first hit. Only not-found outcomes are absorbed;
any other failure propagates to the caller.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Generic, Optional, TypeVar

from sqlalchemy.orm import Session

from .context import CallContext
from .errors import RepositoryError, is_record_not_found
from .handlers import is_nil_id

if TYPE_CHECKING:
    from .repository import Repository

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _absorb_not_found(attempt: Callable[[], T]) -> Optional[T]:
    try:
        return attempt()
    except RepositoryError as exc:
        if is_record_not_found(exc):
            return None
        raise


class IdentityResolver(Generic[T]):
    def __init__(self, repository: "Repository[T]") -> None:
        self._repository = repository

    def find_existing(
        self,
        ctx: Optional[CallContext],
        record: T,
        *,
        session: Optional[Session] = None,
    ) -> Optional[T]:
        repo = self._repository
        handlers = repo.handlers

        record_id = handlers.get_id(record)
        if not is_nil_id(record_id):
            found = _absorb_not_found(lambda: repo.get_by_id(ctx, record_id, session=session))
            if found is not None:
                return found

        if handlers.get_identifier_value is not None:
            value = handlers.get_identifier_value(record)
            if value is not None and str(value).strip():
                found = _absorb_not_found(lambda: repo.get_by_identifier(ctx, str(value), session=session))
                if found is not None:
                    return found

        if handlers.resolve_lookup is not None:
            criteria = list(handlers.resolve_lookup(record) or ())
            if criteria:
                found = _absorb_not_found(lambda: repo.get(ctx, *criteria, session=session))
                if found is not None:
                    return found

        logger.debug(f"No existing {repo.table_name} row matched the candidate record")
        return None
