# Overview: Transaction coordination: row locks, unit of work, and retry on concurrency failures.

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from stockledger.errors import ConcurrencyConflictError
from stockledger.logging import get_logger
from stockledger.policy import DEFAULT_POLICY, LedgerPolicy

logger = get_logger(__name__)

T = TypeVar("T")

# PostgreSQL: serialization_failure, deadlock_detected, lock_not_available
_RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}
_RETRYABLE_MESSAGES = ("database is locked", "deadlock", "could not serialize", "lock timeout")


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The optimistic version_id column on documents still catches races there.
    """
    return query.with_for_update()


def is_concurrency_failure(exc: Exception) -> bool:
    """True for lock/serialization failures that are safe to retry from scratch."""
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, OperationalError):
        sqlstate = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
        if sqlstate in _RETRYABLE_SQLSTATES:
            return True
        message = str(exc.orig).lower()
        return any(fragment in message for fragment in _RETRYABLE_MESSAGES)
    return False


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    """
    Commit everything written inside the block, or nothing.

    Ledger append + product update + document update all flush into the same
    transaction; any exception rolls the whole unit back.
    """
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise


def run_with_retry(
    session: Session,
    func: Callable[[], T],
    *,
    attempts: int = 3,
    backoff_base: float = 0.1,
) -> T:
    """
    Execute a DB operation with retry on concurrency-related failures.

    Each attempt starts from a rolled-back session, so `func` must redo its
    reads (including the idempotency check) rather than reuse stale state.
    Persistent conflicts surface as ConcurrencyConflictError; every other
    exception propagates unchanged.
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            session.rollback()
            if not is_concurrency_failure(exc):
                raise
            logger.warning("concurrency_retry", attempt=attempt + 1, attempts=attempts, error=str(exc))
            if attempt >= attempts - 1:
                raise ConcurrencyConflictError(
                    "Concurrent update detected; retry the command",
                    attempts=attempts,
                ) from exc
            time.sleep(backoff_base * (2 ** attempt))
    raise AssertionError("unreachable")


def run_in_transaction(
    session: Session,
    func: Callable[[], T],
    *,
    policy: LedgerPolicy = DEFAULT_POLICY,
) -> T:
    """Run `func` as one atomic unit, retrying the whole unit on concurrency failures."""

    def _attempt() -> T:
        with unit_of_work(session):
            return func()

    return run_with_retry(
        session,
        _attempt,
        attempts=policy.retry_attempts,
        backoff_base=policy.retry_backoff_base,
    )
