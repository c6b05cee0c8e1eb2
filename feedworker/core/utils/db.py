# feedworker/core/utils/db.py
"""Classify database exceptions into store error values."""

from __future__ import annotations

from psycopg import InterfaceError, OperationalError
from psycopg.errors import DeadlockDetected, SerializationFailure
from sqlalchemy.exc import DBAPIError, OperationalError as SAOperationalError

from feedworker.core.brokers.result_types import StoreErrorCode, StoreOperationError


def is_dbapi_disconnect(exc: DBAPIError) -> bool:
    """Check whether a SQLAlchemy DBAPIError represents a connection disconnect."""
    connection_invalidated = bool(getattr(exc, 'connection_invalidated', False))
    is_disconnect = bool(getattr(exc, 'is_disconnect', False))
    return connection_invalidated or is_disconnect


def is_retryable_connection_error(exc: BaseException) -> bool:
    """Transient failures: dropped connections and lost transaction races."""
    match exc:
        case OperationalError() | InterfaceError() | SAOperationalError():
            return True
        case DBAPIError(orig=SerializationFailure() | DeadlockDetected()):
            return True
        case DBAPIError() as db_exc if is_dbapi_disconnect(db_exc):
            return True
        case _:
            return False


def store_error_from_exception(
    code: StoreErrorCode, action: str, exc: BaseException,
) -> StoreOperationError:
    """Wrap *exc* raised while performing *action* as a StoreOperationError."""
    return StoreOperationError(
        code=code,
        message=f'{action} failed: {exc}',
        retryable=is_retryable_connection_error(exc),
        exception=exc,
    )
