"""feedworker - single-job-at-a-time workers over a shared, ordered job feed"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.brokers.base import ABORT, FeedNotification, FeedStore, ItemRef, TransactionOutcome
from .core.brokers.memory import MemoryFeedStore
from .core.brokers.postgres import PostgresFeedStore
from .core.brokers.result_types import (
    StoreErrorCode,
    StoreOperationError,
    StoreResult,
)
from .core.models.job import Job, JobFailure, JobResult, JobSuccess
from .core.models.queue import QueueConfig
from .core.models.resilience import WorkerResilienceConfig
from .core.models.store import StoreConfig
from .core.queue import JobQueue, QueueStats
from .core.types.status import WorkerState
from .core.errors import (
    ConfigurationError,
    ErrorCode,
    FeedworkerError,
    HandlerDefinitionError,
    MultipleValidationErrors,
    ValidationReport,
)
from .core.worker.events import NotificationChannel, WorkerEvent
from .core.worker.executor import Completion
from .core.worker.worker import Worker

__all__ = [
    # Core
    'Worker',
    'WorkerState',
    'WorkerEvent',
    'NotificationChannel',
    'Completion',
    'JobQueue',
    'QueueStats',
    'Job',
    'JobSuccess',
    'JobFailure',
    'JobResult',
    # Config
    'StoreConfig',
    'QueueConfig',
    'WorkerResilienceConfig',
    # Stores
    'FeedStore',
    'MemoryFeedStore',
    'PostgresFeedStore',
    'ItemRef',
    'FeedNotification',
    'TransactionOutcome',
    'ABORT',
    # Errors
    'FeedworkerError',
    'ConfigurationError',
    'HandlerDefinitionError',
    'ErrorCode',
    'ValidationReport',
    'MultipleValidationErrors',
    # Store result types
    'StoreErrorCode',
    'StoreOperationError',
    'StoreResult',
]
