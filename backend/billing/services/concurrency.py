# Overview: Row locking and retry helpers shared by every write path.

from __future__ import annotations

import logging
import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import BillingError, ConcurrencyConflict, PersistenceUnavailable


logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; the version_id columns still
    catch lost updates there (StaleDataError at flush time).
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None,
                   retry_on: tuple[type[Exception], ...] = ()):
    """
    Execute one logical operation with retry on concurrency failures.

    The whole operation is re-run from a fresh read each time; nothing is
    partially reapplied.

    - StaleDataError (optimistic lock lost) -> retried, then ConcurrencyConflict
    - OperationalError (locks, deadlocks, dropped connection) -> retried,
      then PersistenceUnavailable
    - retry_on: extra exception types the caller knows are safe to retry
    - BillingError: rolled back and re-raised immediately (validation never
      leaves partial writes behind)
    """
    if attempts is None:
        attempts = current_app.config.get("BILLING_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("BILLING_RETRY_BACKOFF", 0.05)

    for attempt in range(attempts):
        last = attempt >= attempts - 1
        try:
            return func()
        except BillingError:
            db.session.rollback()
            raise
        except StaleDataError as exc:
            db.session.rollback()
            logger.info("Optimistic lock conflict (attempt %s/%s): %s", attempt + 1, attempts, exc)
            if last:
                raise ConcurrencyConflict(
                    "Record was modified concurrently; re-read and retry"
                ) from exc
        except OperationalError as exc:
            db.session.rollback()
            logger.warning("Database operational error (attempt %s/%s): %s", attempt + 1, attempts, exc)
            if last:
                raise PersistenceUnavailable("Storage is temporarily unavailable") from exc
        except retry_on as exc:
            db.session.rollback()
            logger.info("Retrying after %s (attempt %s/%s)", type(exc).__name__, attempt + 1, attempts)
            if last:
                raise
        time.sleep(backoff_base * (2 ** attempt))
