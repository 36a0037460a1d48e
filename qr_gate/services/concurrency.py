from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from ..errors import StorageUnavailable


def run_with_retry(session, func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on transient lock failures.

    OperationalError (deadlocks, "database is locked") is retried with
    exponential backoff; once attempts are exhausted, or for any other
    SQLAlchemyError, the session is rolled back and StorageUnavailable raised.
    """
    for attempt in range(attempts):
        try:
            return func()
        except OperationalError as exc:
            session.rollback()
            if attempt >= attempts - 1:
                raise StorageUnavailable(str(exc)) from exc
            time.sleep(backoff_base * (2 ** attempt))
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageUnavailable(str(exc)) from exc
