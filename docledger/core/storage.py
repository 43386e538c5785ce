"""Bounded retries for units of work that hit a briefly unavailable database."""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from docledger.core.config import get_settings
from docledger.core.errors import ExternalServiceError
from docledger.utils.backoff import compute_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ACTIVE_KEY = "storage_retry_active"

# SQLite and PostgreSQL wording for locks, busy files and dropped connections.
TRANSIENT_MARKERS = (
    "database is locked",
    "database is busy",
    "database table is locked",
    "could not connect",
    "connection refused",
    "connection reset",
    "server closed the connection",
    "terminating connection",
    "deadlock detected",
    "could not serialize access",
)


def is_transient_storage_error(exc: OperationalError) -> bool:
    if exc.connection_invalidated:
        return True
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


def run_with_storage_retry(db: Session, work: Callable[[], T], *, operation: str) -> T:
    """Run *work* and retry it while the database reports a transient failure.

    *work* must be a whole unit of work (read, write, commit): the session is
    rolled back before each retry. Attempts and backoff come from
    ``EXTERNAL_RETRY_ATTEMPTS`` / ``EXTERNAL_RETRY_BACKOFF_SECONDS``. Exhaustion
    raises ``ExternalServiceError`` (503); a non-transient ``OperationalError``
    propagates unchanged. Nested calls on the same session run *work* once and
    leave retrying to the outermost caller.
    """
    if db.info.get(_ACTIVE_KEY):
        return work()

    settings = get_settings()
    max_attempts = settings.external_retry_attempts
    attempts = 0
    last_error: OperationalError | None = None

    db.info[_ACTIVE_KEY] = True
    try:
        while attempts < max_attempts:
            attempts += 1
            try:
                return work()
            except OperationalError as exc:
                db.rollback()
                if not is_transient_storage_error(exc):
                    raise
                last_error = exc
                logger.warning("%s: storage attempt %d/%d failed: %s", operation, attempts, max_attempts, exc.orig)
                if attempts < max_attempts:
                    time.sleep(compute_backoff(attempts, settings.external_retry_backoff_seconds))
    finally:
        db.info.pop(_ACTIVE_KEY, None)

    logger.error("%s: storage unavailable after %d attempts", operation, attempts)
    raise ExternalServiceError(
        f"Storage is unavailable; {operation} gave up after {attempts} attempts",
        errors=[{"rule": "storage_unavailable", "attempts": attempts}],
        status_code=503,
    ) from last_error


def storage_retry(func: Callable[..., T]) -> Callable[..., T]:
    """Decorator for service functions whose first argument is the session."""

    @functools.wraps(func)
    def wrapper(db: Session, *args, **kwargs) -> T:
        return run_with_storage_retry(db, lambda: func(db, *args, **kwargs), operation=func.__name__)

    return wrapper
