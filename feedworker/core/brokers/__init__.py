from feedworker.core.brokers.base import (
    ABORT,
    FeedNotification,
    FeedStore,
    ItemRef,
    Subscription,
    TransactionOutcome,
)
from feedworker.core.brokers.memory import MemoryFeedStore
from feedworker.core.brokers.result_types import (
    StoreErrorCode,
    StoreOperationError,
    StoreResult,
)

__all__ = [
    'ABORT',
    'FeedNotification',
    'FeedStore',
    'ItemRef',
    'Subscription',
    'TransactionOutcome',
    'MemoryFeedStore',
    'StoreErrorCode',
    'StoreOperationError',
    'StoreResult',
]
