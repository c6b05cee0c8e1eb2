# feedworker/core/models/resilience.py
from __future__ import annotations

from typing import Annotated, Self
from pydantic import BaseModel, Field, model_validator
from feedworker.core.errors import ConfigurationError, ErrorCode, ValidationReport, raise_collected


class WorkerResilienceConfig(BaseModel):
    """
    How a worker reacts to store faults.

    A failed claim transaction is reported through the worker's ``error``
    event; the worker stays subscribed but waits an exponential, jittered
    backoff before the next claim attempt. The same backoff paces startup
    retries in ``Worker.run_forever``.
    """

    store_retry_initial_ms: Annotated[int, Field(ge=10, le=60_000)] = Field(
        default=500,
        description='Backoff after the first store fault (10ms-60s)',
    )
    store_retry_max_ms: Annotated[int, Field(ge=10, le=300_000)] = Field(
        default=30_000,
        description='Cap on the store-fault backoff (10ms-5min)',
    )
    start_retry_max_attempts: Annotated[int, Field(ge=0, le=10_000)] = Field(
        default=0,
        description='Startup retries on transient store errors; 0 means infinite',
    )
    max_consecutive_store_faults: Annotated[int, Field(ge=0, le=10_000)] = Field(
        default=0,
        description=(
            'Stop the worker after this many store faults in a row; 0 keeps it running'
        ),
    )
    notify_poll_interval_ms: Annotated[int, Field(ge=100, le=300_000)] = Field(
        default=5_000,
        description='Re-scan interval for subscriptions when NOTIFY is silent (100ms-5min)',
    )

    @model_validator(mode='after')
    def validate_backoff(self) -> Self:
        report = ValidationReport('resilience')
        if self.store_retry_max_ms < self.store_retry_initial_ms:
            report.add(
                ConfigurationError(
                    message='store_retry_max_ms must be >= store_retry_initial_ms',
                    code=ErrorCode.CONFIG_INVALID_RESILIENCE,
                    notes=[
                        f'store_retry_initial_ms={self.store_retry_initial_ms}ms',
                        f'store_retry_max_ms={self.store_retry_max_ms}ms',
                    ],
                    help_text='increase store_retry_max_ms or reduce store_retry_initial_ms',
                )
            )

        raise_collected(report)
        return self
