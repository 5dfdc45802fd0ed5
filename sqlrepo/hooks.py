"""
Query hooks attached to an engine's cursor execution events.

A hook is any object exposing ``before_query`` and/or ``after_query``.
Hooks are registered at most once per engine (by ``query_hook_key()`` when
the hook provides one, otherwise by identity).
"""
from __future__ import annotations

import logging
import threading
import time
import weakref
from typing import Any, Callable, List, Optional, Set

from sqlalchemy import event
from sqlalchemy.engine import Engine

from .errors import ValidationError

logger = logging.getLogger(__name__)

QueryHookErrorHandler = Callable[[Exception], None]

_START_ATTR = "_sqlrepo_query_start"

_registered: "weakref.WeakKeyDictionary[Engine, _EngineHooks]" = weakref.WeakKeyDictionary()
_lock = threading.Lock()


class _EngineHooks:
    """Hooks registered on one engine, dispatched by a single listener pair.

    Start times live on the statement's execution context, so a statement
    that fails before ``after_cursor_execute`` leaves nothing behind.
    """

    def __init__(self) -> None:
        self.keys: Set[Any] = set()
        self.before: List[Callable[..., Any]] = []
        self.after: List[Callable[..., Any]] = []

    def on_before(self, conn, cursor, statement, parameters, context, executemany):
        if context is not None:
            setattr(context, _START_ATTR, time.perf_counter())
        for fn in list(self.before):
            fn(statement, parameters)

    def on_after(self, conn, cursor, statement, parameters, context, executemany):
        started = getattr(context, _START_ATTR, None)
        elapsed_ms = (time.perf_counter() - started) * 1000 if started is not None else None
        for fn in list(self.after):
            fn(statement, parameters, elapsed_ms)


class InvalidQueryHookError(ValidationError):
    pass


def log_query_hook_error(err: Exception) -> None:
    logger.warning(f"Skipping query hook: {err}")


def raise_query_hook_error(err: Exception) -> None:
    raise err


def _hook_key(hook: Any) -> Any:
    key_fn = getattr(hook, "query_hook_key", None)
    if callable(key_fn):
        return key_fn()
    return id(hook)


def register_query_hooks(
    engine: Engine,
    *hooks: Any,
    on_error: Optional[QueryHookErrorHandler] = None,
) -> int:
    """Attach hooks to ``engine``; returns how many were newly registered."""
    handler = on_error or log_query_hook_error
    added = 0
    with _lock:
        hooks_for_engine = _registered.get(engine)
        if hooks_for_engine is None:
            hooks_for_engine = _registered[engine] = _EngineHooks()
            event.listen(engine, "before_cursor_execute", hooks_for_engine.on_before)
            event.listen(engine, "after_cursor_execute", hooks_for_engine.on_after)
        for hook in hooks:
            if hook is None:
                handler(InvalidQueryHookError("query hook is None"))
                continue
            before = getattr(hook, "before_query", None)
            after = getattr(hook, "after_query", None)
            if not callable(before) and not callable(after):
                handler(InvalidQueryHookError(f"query hook {hook!r} defines neither before_query nor after_query"))
                continue
            key = _hook_key(hook)
            if key in hooks_for_engine.keys:
                continue
            hooks_for_engine.keys.add(key)
            if callable(before):
                hooks_for_engine.before.append(before)
            if callable(after):
                hooks_for_engine.after.append(after)
            added += 1
    return added


class SQLLoggingHook:
    """Logs every statement at DEBUG with its duration."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._log = log or logger

    def query_hook_key(self) -> str:
        return f"sql-logging:{self._log.name}"

    def after_query(self, statement: str, parameters: Any, elapsed_ms: Optional[float]) -> None:
        if elapsed_ms is None:
            self._log.debug(f"SQL: {statement}")
        else:
            self._log.debug(f"SQL ({elapsed_ms:.2f} ms): {statement}")


def registered_hook_count(engine: Engine) -> int:
    with _lock:
        hooks_for_engine = _registered.get(engine)
        return len(hooks_for_engine.keys) if hooks_for_engine is not None else 0
