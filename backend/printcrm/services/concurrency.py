from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Deal and Product also carry version_id_col, so a concurrent writer that
    slipped past the lock fails with StaleDataError instead of overwriting.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    func must be a complete unit of work (reads, writes and commit): on
    OperationalError or StaleDataError the session is rolled back and func is
    called again from scratch. Domain errors propagate on the first attempt.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            logger.warning(
                "Concurrency conflict (attempt %d/%d): %s; retrying",
                attempt + 1, attempts, exc.__class__.__name__,
            )
            time.sleep(backoff_base * (2 ** attempt))


def run_in_transaction(func, *, attempts: int = 3):
    """
    Run func as one unit of work: it commits itself on success; on any
    exception the session is rolled back before the error propagates.

    WHY: workflow operations must leave no partial writes (status, ledger
    or audit rows) behind when a rule rejects them halfway through.
    """
    def _op():
        try:
            return func()
        except (OperationalError, StaleDataError):
            raise
        except Exception:
            db.session.rollback()
            raise
    return run_with_retry(_op, attempts=attempts)
