# Overview: Transaction helpers shared by the stock, sale and payment services.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import PersistenceError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Stock and debt changes do not depend on it: they are conditional UPDATEs.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a unit of work with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Every failure rolls the session back, so a
    raised error never leaves half-applied changes in the session.
    Database errors that survive the retries surface as PersistenceError.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                current_app.logger.error("Transaction failed after %d attempts: %s", attempts, exc)
                raise PersistenceError("Could not complete the transaction, please retry") from exc
            time.sleep(backoff_base * (2 ** attempt))
        except IntegrityError as exc:
            db.session.rollback()
            current_app.logger.error("Integrity error, transaction rolled back: %s", exc)
            raise PersistenceError("Transaction rejected by the database") from exc
        except Exception:
            db.session.rollback()
            raise
