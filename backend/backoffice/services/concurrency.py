# Overview: Row locking and retry helpers for transactional writes.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def locked_row(model, **filters):
    """Load one row with FOR UPDATE, or None."""
    return lock_for_update(db.session.query(model).filter_by(**filters)).first()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a transactional unit of work with retry on concurrency failures.

    func must be safe to re-run from scratch: it is called again after a
    rollback. Retries on OperationalError (deadlocks, lock timeouts) and
    StaleDataError (version_id conflicts). Domain errors propagate
    immediately.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Retrying after concurrency failure (attempt %s/%s): %s",
                attempt + 1, attempts, exc.__class__.__name__,
            )
            time.sleep(backoff_base * (2 ** attempt))
