# Overview: Service-layer operations for concurrency; row locks, retry, and conflict mapping.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import Conflict, TransientIO
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The order's version counter still catches concurrent writers there.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on lock contention.

    OperationalError (deadlocks, "database is locked") is retried with
    exponential backoff and surfaces as TransientIO once attempts run out.
    StaleDataError means another writer committed first: it is never retried
    and surfaces as Conflict so the caller refetches.
    """
    for attempt in range(attempts):
        try:
            return func()
        except StaleDataError as exc:
            db.session.rollback()
            raise Conflict(
                "Order was modified by another user; refresh and try again",
                code="stale_version",
            ) from exc
        except OperationalError as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                current_app.logger.warning("Giving up after %s attempts: %s", attempts, exc)
                raise TransientIO("Storage temporarily unavailable; retry the request") from exc
            time.sleep(backoff_base * (2 ** attempt))

