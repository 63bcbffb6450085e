"""
Bounded retry for apply/reverse under concurrent modification.

Responsibility:
    Re-run a unit of work when another transaction won a race on the same
    rows.  ``run_with_retry`` gives each attempt a fresh session and
    transaction; ``retry_in_savepoint`` gives each attempt a fresh
    SAVEPOINT inside the caller's transaction.

Architecture position:
    Services.  ``run_with_retry`` is the outermost helper and owns the
    transaction boundary: each attempt commits or rolls back its own
    session.  ``retry_in_savepoint`` never commits; the executor wraps
    every apply and reverse in it.

Retry contract:
    - Retried: ConcurrentModificationError, and database OperationalError
      reporting a deadlock or serialization failure.  Inside a savepoint a
      StaleDataError (failed version check) is retried too.
    - Not retried: validation problems, conservation violations, locked
      lines, missing rows.  Those are deterministic.
    - After ``max_attempts`` failed attempts the last error is re-raised
      so the caller can surface "please retry".
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from recon_kernel.exceptions import ConcurrentModificationError
from recon_kernel.logging_config import get_logger

logger = get_logger("services.retry")

T = TypeVar("T")

_RETRYABLE_DB_MARKERS = ("deadlock", "could not serialize", "database is locked")


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, ConcurrentModificationError):
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig if exc.orig is not None else exc).lower()
        return any(marker in message for marker in _RETRYABLE_DB_MARKERS)
    return False


def run_with_retry(
    session_factory: sessionmaker[Session] | Callable[[], Session],
    operation: Callable[[Session], T],
    max_attempts: int = 3,
) -> T:
    """
    Call ``operation(session)`` and commit, retrying transient conflicts.

    Each attempt gets a new session so no stale identity-map state leaks
    from a failed attempt into the next one.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 0
    while True:
        attempt += 1
        session = session_factory()
        try:
            result = operation(session)
            session.commit()
            return result
        except Exception as exc:
            session.rollback()
            if not _is_retryable(exc) or attempt >= max_attempts:
                if _is_retryable(exc):
                    logger.error(
                        "concurrent_modification_retries_exhausted",
                        extra={"attempts": attempt, "error": str(exc)},
                    )
                raise
            logger.warning(
                "concurrent_modification_retry",
                extra={
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
        finally:
            session.close()


def retry_in_savepoint(
    session: Session,
    operation: Callable[[], T],
    max_attempts: int = 3,
    *,
    entity_type: str,
    entity_id: str | None = None,
) -> T:
    """
    Call ``operation()`` inside a SAVEPOINT, retrying transient conflicts.

    A failed attempt is rolled back to its savepoint, which releases the
    row locks it took, and the operation runs again against freshly
    locked rows.  A StaleDataError that survives every attempt is raised
    as ConcurrentModificationError(entity_type, entity_id).
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 0
    while True:
        attempt += 1
        try:
            with session.begin_nested():
                return operation()
        except Exception as exc:
            retryable = isinstance(exc, StaleDataError) or _is_retryable(exc)
            if not retryable:
                raise
            if attempt >= max_attempts:
                logger.error(
                    "concurrent_modification_retries_exhausted",
                    extra={
                        "attempts": attempt,
                        "entity_type": entity_type,
                        "entity_id": entity_id,
                        "error": str(exc),
                    },
                )
                if isinstance(exc, StaleDataError):
                    raise ConcurrentModificationError(entity_type, entity_id) from exc
                raise
            logger.warning(
                "concurrent_modification_retry",
                extra={
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "entity_type": entity_type,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
