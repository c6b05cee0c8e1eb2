"""Typed error values for feed store operations.

Result propagation policy
-------------------------
* **Store layer** (``MemoryFeedStore``, ``PostgresFeedStore``) returns
  ``StoreResult[T]``. It never raises for operational failures, only for
  ``asyncio.CancelledError``.

* **Claim protocol** turns an ``Err`` from ``transact`` into a
  ``ClaimFault``; the worker reports it through the ``error`` event and
  applies its store-fault backoff. Nothing is raised.

* **Process boundaries** (``Worker.start``, CLI commands) convert ``Err``
  into the underlying exception and let startup fail. ``run_forever``
  retries those on ``retryable`` errors before giving up.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from result import Result


class StoreErrorCode(str, Enum):
    """Categorized store operation failure codes."""

    SCHEMA_INIT_FAILED = 'SCHEMA_INIT_FAILED'
    PUSH_FAILED = 'PUSH_FAILED'
    TRANSACTION_FAILED = 'TRANSACTION_FAILED'
    QUERY_FAILED = 'QUERY_FAILED'
    SUBSCRIBE_FAILED = 'SUBSCRIBE_FAILED'
    LISTENER_START_FAILED = 'LISTENER_START_FAILED'
    LISTENER_SUBSCRIBE_FAILED = 'LISTENER_SUBSCRIBE_FAILED'
    CLOSE_FAILED = 'CLOSE_FAILED'


@dataclass(slots=True, frozen=True)
class StoreOperationError:
    """Error payload carried inside Err(...) for store operations.

    Fields:
        code: which operation category failed
        message: human-readable description
        retryable: whether the caller can retry this operation
        exception: the original cause (if any)
    """

    code: StoreErrorCode
    message: str
    retryable: bool
    exception: BaseException | None = None


type StoreResult[T] = Result[T, StoreOperationError]
