# Overview: Row locking and retry helpers shared by every mutating service.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


class ConcurrencyConflictError(Exception):
    """Raised when a lock or version conflict survives every retry."""


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The version_id columns on Account / WarehouseStock still catch lost updates there.
    """
    return query.with_for_update()


def _configured_attempts() -> int:
    try:
        return int(current_app.config.get("CONCURRENCY_RETRY_ATTEMPTS", 3))
    except RuntimeError:
        # outside an app context
        return 3


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Execute a DB operation as one unit of work.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts); raises ConcurrencyConflictError once the
    attempts are exhausted. Any other exception rolls the session back before
    propagating so no half-applied change survives.
    """
    if attempts is None:
        attempts = _configured_attempts()

    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise ConcurrencyConflictError(
                    f"concurrent update conflict after {attempts} attempts: {exc}"
                ) from exc
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    raise ConcurrencyConflictError("operation was not attempted")

