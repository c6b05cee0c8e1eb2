# feedworker/core/worker/worker.py
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Callable, Optional

from result import is_err

from feedworker.core.brokers.base import FeedNotification, FeedStore, Subscription
from feedworker.core.brokers.result_types import StoreOperationError
from feedworker.core.errors import ConfigurationError, ErrorCode, handler_definition_error
from feedworker.core.logging import get_logger
from feedworker.core.models.job import Job, JobFailure, JobSuccess
from feedworker.core.models.resilience import WorkerResilienceConfig
from feedworker.core.queue import JobQueue
from feedworker.core.types.status import WorkerState
from feedworker.core.utils.db import is_retryable_connection_error
from feedworker.core.worker.buffer import NotificationBuffer
from feedworker.core.worker.claim import ClaimFault, ClaimLost, ClaimWon, attempt_claim
from feedworker.core.worker.events import NotificationChannel, WorkerEvent
from feedworker.core.worker.executor import JobExecutor, JobHandler

logger = get_logger('worker')

_START_TIMEOUT_S = 30.0


@dataclass
class _RetryBackoff:
    initial_ms: int
    max_ms: int
    max_attempts: int
    attempts: int = 0

    def reset(self) -> None:
        self.attempts = 0

    def can_retry(self) -> bool:
        match self.max_attempts:
            case 0:
                return True
            case _:
                return self.attempts < self.max_attempts

    def next_delay_seconds(self) -> float:
        self.attempts += 1
        exponent = max(0, self.attempts - 1)
        base_ms = min(self.max_ms, int(self.initial_ms * (2**exponent)))
        jitter_range = base_ms * 0.25
        delay_ms = base_ms + random.uniform(-jitter_range, jitter_range)
        return max(0.01, delay_ms / 1000.0)


class Worker:
    """
    Performs jobs from one JobQueue, one at a time.

      - Subscribes to the queue's feed and buffers the latest notification
      - Claims the notified item with a single store transaction
      - Runs the handler, reports start/success|failure/finish, then
        immediately looks at the next buffered notification
      - Emits idle once a run of jobs drains, error on store faults

    Any number of workers may share a feed; the store's transaction is the
    only thing keeping two of them from claiming the same item.
    """

    def __init__(
        self,
        queue: JobQueue | FeedStore,
        handler: JobHandler,
        *,
        resilience: WorkerResilienceConfig | None = None,
    ):
        if not callable(handler):
            raise handler_definition_error(
                'job handler must be callable',
                notes=[f'got {type(handler).__name__}: {handler!r}'],
                help_text=(
                    'pass a function taking (job, done), e.g.\n'
                    '  def handle(job, done):\n'
                    '      ...\n'
                    '      done()  # or done(error)'
                ),
            )
        if not isinstance(queue, JobQueue):
            if not isinstance(queue, FeedStore):
                raise ConfigurationError(
                    message='worker queue must be a JobQueue or a FeedStore',
                    code=ErrorCode.WORKER_INVALID_QUEUE,
                    notes=[f'got {type(queue).__name__}: {queue!r}'],
                    help_text='pass JobQueue(store, feed="jobs"), or a store for the default feed',
                )
            queue = JobQueue(queue)

        self.queue = queue
        self._resilience = resilience or WorkerResilienceConfig()
        self._executor = JobExecutor(handler)
        self._events = NotificationChannel()
        self._buffer = NotificationBuffer(lambda: self._busy)

        self._busy = False
        self._accepting = False
        self._subscribing = False
        self._subscription: Optional[Subscription] = None
        self._success_count = 0
        self._failure_count = 0
        self._stopped_callbacks: list[Callable[[], Any]] = []

        # Store-fault handling
        self._fault_backoff = self._make_retry_backoff(max_attempts=0)
        self._consecutive_faults = 0
        self._cooldown: Optional[asyncio.TimerHandle] = None

        self._stop = asyncio.Event()
        self._service_tasks: set[asyncio.Task[Any]] = set()

        queue.register_hooks(self._events)

    def __repr__(self) -> str:
        return f'<Worker:{self.queue.feed}>'

    # ----- read-only surface -----

    @property
    def events(self) -> NotificationChannel:
        return self._events

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def state(self) -> WorkerState:
        if self._busy:
            return WorkerState.BUSY
        if self._accepting:
            return WorkerState.IDLE
        return WorkerState.STOPPED

    # ----- lifecycle -----

    async def start(self) -> None:
        """Subscribe to the feed. No-op while subscribed or subscribing."""
        if self._subscription is not None:
            return
        if self._subscribing:
            # Overrides a stop() issued while the first start() was subscribing.
            self._accepting = True
            return
        self._subscribing = True
        self._accepting = True
        try:
            sub_r = await self.queue.subscribe(self._on_notification)
        except BaseException:
            self._accepting = False
            raise
        finally:
            self._subscribing = False

        if is_err(sub_r):
            self._accepting = False
            err = sub_r.err_value
            raise err.exception or RuntimeError(err.message)

        if not self._accepting:
            # stop() ran while we were subscribing.
            await sub_r.ok_value.cancel()
            return
        self._subscription = sub_r.ok_value
        logger.info(f'{self!r} subscribed to feed {self.queue.feed!r}')

    async def stop(self, on_stopped: Optional[Callable[[], Any]] = None) -> None:
        """
        Stop accepting notifications and unsubscribe.

        A job already in flight runs to completion; `on_stopped` is called
        once it has finished (right away when the worker is not busy).
        """
        # Synchronous part first: nothing new is claimed past this point.
        self._accepting = False
        self._cancel_cooldown()
        self._buffer.clear()

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.cancel()
            logger.info(f'{self!r} unsubscribed from feed {self.queue.feed!r}')

        if on_stopped is None:
            return
        if self._busy:
            self._stopped_callbacks.append(on_stopped)
        else:
            self._invoke_stopped(on_stopped)

    def request_stop(self) -> None:
        """Request worker to stop gracefully."""
        self._stop.set()

    async def run_forever(self) -> None:
        """Start (retrying transient store errors), run until request_stop(), then drain."""
        await self._start_with_resilience_config()
        if self._stop.is_set():
            await self._stop_and_drain()
            return
        logger.info(f'{self!r} started')
        try:
            await self._stop.wait()
        finally:
            await self._stop_and_drain()
            logger.info(
                f'{self!r} stopped (succeeded={self._success_count}, failed={self._failure_count})'
            )

    async def _stop_and_drain(self) -> None:
        stopped = asyncio.Event()
        await self.stop(stopped.set)
        await stopped.wait()
        if self._service_tasks:
            await asyncio.gather(*tuple(self._service_tasks), return_exceptions=True)

    def _make_retry_backoff(self, *, max_attempts: int) -> _RetryBackoff:
        return _RetryBackoff(
            initial_ms=self._resilience.store_retry_initial_ms,
            max_ms=self._resilience.store_retry_max_ms,
            max_attempts=max_attempts,
        )

    async def _sleep_with_stop(self, delay_seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay_seconds)
        except asyncio.TimeoutError:
            return

    async def _handle_retryable_start_error(
        self,
        exc: BaseException,
        backoff: _RetryBackoff,
    ) -> None:
        if not backoff.can_retry():
            logger.error(
                f'Worker start failed after {backoff.attempts} attempts: {exc}'
            )
            raise exc

        delay = backoff.next_delay_seconds()
        logger.error(
            f'Worker start failed: {exc}. Retrying in {delay:.1f}s '
            f'(attempt {backoff.attempts}/{backoff.max_attempts or "inf"})'
        )
        await self._sleep_with_stop(delay)

    async def _start_with_resilience_config(self) -> None:
        backoff = self._make_retry_backoff(
            max_attempts=self._resilience.start_retry_max_attempts
        )
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self.start(), timeout=_START_TIMEOUT_S)
                return
            except asyncio.TimeoutError as exc:
                await self._handle_retryable_start_error(exc, backoff)
                continue
            except Exception as exc:
                if is_retryable_connection_error(exc):
                    await self._handle_retryable_start_error(exc, backoff)
                    continue
                raise

    def _spawn_background(self, coro: Any, *, name: str) -> asyncio.Task[Any]:
        """Create a tracked background task with automatic cleanup."""
        task = asyncio.create_task(coro, name=name)
        self._service_tasks.add(task)

        def _on_done(t: asyncio.Task[Any]) -> None:
            self._service_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(f'Background task {t.get_name()!r} failed: {exc}')

        task.add_done_callback(_on_done)
        return task

    # ----- main cycle -----

    def _on_notification(self, notification: FeedNotification) -> None:
        if not self._accepting:
            logger.debug(f'{self!r} ignoring notification for {notification.location}: stopping')
            return
        dropped = self._buffer.deposit(notification)
        if dropped is not None:
            logger.debug(f'{self!r} coalesced notification for {dropped.location}')
        self._try_to_work()

    def _try_to_work(self) -> None:
        if self._busy or not self._accepting or self._cooldown is not None:
            return
        notification = self._buffer.take_if_idle()
        if notification is None:
            return
        self._busy = True
        task = asyncio.create_task(
            self._work_cycle(notification), name=f'worker-cycle-{self.queue.feed}'
        )
        self._service_tasks.add(task)
        task.add_done_callback(self._on_cycle_done)

    def _on_cycle_done(self, task: asyncio.Task[None]) -> None:
        self._service_tasks.discard(task)
        if task.cancelled():
            logger.warning(f'{self!r} work cycle was cancelled')
        else:
            exc = task.exception()
            if exc is not None:
                logger.error(f'{self!r} work cycle failed: {exc!r}')
        if self._busy:
            # Ended abnormally; release busy so stop() callbacks still fire.
            self._busy = False
            self._settle()
            self._try_to_work()

    async def _work_cycle(self, notification: FeedNotification) -> None:
        previous_job: Job | None = None
        current: FeedNotification | None = notification

        while current is not None:
            if not self._accepting:
                break

            outcome = await attempt_claim(self.queue.store, current.location)
            match outcome:
                case ClaimWon(job=job):
                    self._store_recovered()
                    await self._perform(job)
                    previous_job = job
                case ClaimLost():
                    self._store_recovered()
                case ClaimFault(error=error):
                    self._busy = False
                    self._on_store_fault(current, error)
                    self._settle()
                    return

            self._busy = False
            current = self._buffer.take_if_idle() if self._accepting else None
            if current is not None:
                self._busy = True

        self._busy = False
        if previous_job is not None:
            self._events.emit(WorkerEvent.IDLE)
        self._settle()

    async def _perform(self, job: Job) -> None:
        self._events.emit(WorkerEvent.START, job)
        result = await self._executor.run(job)

        match result:
            case JobFailure(error=error):
                self._failure_count += 1
                self._events.emit(WorkerEvent.FAILURE, job, error)
            case JobSuccess():
                self._success_count += 1
                self._events.emit(WorkerEvent.SUCCESS, job)

        self._events.emit(WorkerEvent.FINISH, job)

    def _settle(self) -> None:
        """Called whenever a cycle ends with the worker no longer busy."""
        callbacks, self._stopped_callbacks = self._stopped_callbacks, []
        for callback in callbacks:
            self._invoke_stopped(callback)

    def _invoke_stopped(self, callback: Callable[[], Any]) -> None:
        try:
            callback()
        except Exception:
            logger.exception(f'{self!r} stop callback raised')

    # ----- store faults -----

    def _store_recovered(self) -> None:
        self._consecutive_faults = 0
        self._fault_backoff.reset()

    def _on_store_fault(self, notification: FeedNotification, error: StoreOperationError) -> None:
        self._consecutive_faults += 1
        logger.error(
            f'{self!r} store fault claiming {notification.location}: {error.message} '
            f'(consecutive={self._consecutive_faults}, retryable={error.retryable})'
        )
        self._events.emit(WorkerEvent.ERROR, error)
        if not self._accepting:
            return

        limit = self._resilience.max_consecutive_store_faults
        if limit and self._consecutive_faults >= limit:
            logger.error(f'{self!r} stopping after {self._consecutive_faults} consecutive store faults')
            self._accepting = False
            self._stop.set()
            self._spawn_background(self.stop(), name=f'worker-auto-stop-{self.queue.feed}')
            return

        self._buffer.restore(notification)
        delay = self._fault_backoff.next_delay_seconds()
        logger.warning(f'{self!r} holding off claims for {delay:.2f}s')
        self._cooldown = asyncio.get_running_loop().call_later(delay, self._end_cooldown)

    def _end_cooldown(self) -> None:
        self._cooldown = None
        self._try_to_work()

    def _cancel_cooldown(self) -> None:
        if self._cooldown is not None:
            self._cooldown.cancel()
            self._cooldown = None
