"""Unit tests for the Worker state machine, run against MemoryFeedStore."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest
from psycopg import OperationalError
from result import Err, Ok

from feedworker.core.brokers.base import FeedNotification, ItemRef, NotificationCallback
from feedworker.core.brokers.memory import MemoryFeedStore
from feedworker.core.brokers.result_types import StoreErrorCode, StoreOperationError
from feedworker.core.errors import ConfigurationError, ErrorCode, HandlerDefinitionError
from feedworker.core.models.job import Job
from feedworker.core.models.resilience import WorkerResilienceConfig
from feedworker.core.queue import JobQueue
from feedworker.core.types.status import WorkerState
from feedworker.core.worker.events import WorkerEvent
from feedworker.core.worker.executor import Completion
from feedworker.core.worker.worker import Worker

FAST_RETRY = WorkerResilienceConfig(store_retry_initial_ms=10, store_retry_max_ms=20)


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError('condition not met in time')
        await asyncio.sleep(0.005)


class Recorder:
    """Records (event, job identifier | error) tuples from a worker."""

    def __init__(self, worker: Worker) -> None:
        self.events: list[tuple[str, Any]] = []
        for event in WorkerEvent:
            worker.events.on(event, self._listener(event))

    def _listener(self, event: WorkerEvent) -> Callable[..., None]:
        def record(*args: Any) -> None:
            subject = args[0] if args else None
            if isinstance(subject, Job):
                subject = subject.identifier
            self.events.append((event.value, subject))

        return record

    def names(self, *, skip_idle: bool = False) -> list[str]:
        return [name for name, _ in self.events if not (skip_idle and name == 'idle')]


def succeed(job: Job, done: Completion) -> None:
    done()


class FaultyStore(MemoryFeedStore):
    """Memory store whose transactions fail `failures` times (-1: always)."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures_left = failures
        self.attempts = 0

    async def transact(self, location: ItemRef, propose: Any) -> Any:
        self.attempts += 1
        if self.failures_left != 0:
            self.failures_left -= 1
            return Err(
                StoreOperationError(
                    code=StoreErrorCode.TRANSACTION_FAILED,
                    message='connection reset',
                    retryable=True,
                )
            )
        return await super().transact(location, propose)


class GatedStore(MemoryFeedStore):
    """Memory store whose transactions wait for `release` before running."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def transact(self, location: ItemRef, propose: Any) -> Any:
        self.entered.set()
        await self.release.wait()
        return await super().transact(location, propose)


class _SlowSubscription:
    def __init__(self, gate: asyncio.Event) -> None:
        self.gate = gate
        self.cancelled = False

    async def cancel(self) -> None:
        await self.gate.wait()
        self.cancelled = True


class SlowCancelStore(MemoryFeedStore):
    """Hands out a subscription whose cancel() blocks; exposes the callback."""

    def __init__(self) -> None:
        super().__init__()
        self.callback: NotificationCallback | None = None
        self.cancel_gate = asyncio.Event()

    async def subscribe(self, feed: str, callback: NotificationCallback, *, window: int = 1) -> Any:
        self.callback = callback
        return Ok(_SlowSubscription(self.cancel_gate))


class SlowSubscribeStore(MemoryFeedStore):
    """Memory store whose subscribe() waits for `gate` before subscribing."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def subscribe(self, feed: str, callback: NotificationCallback, *, window: int = 1) -> Any:
        await self.gate.wait()
        return await super().subscribe(feed, callback, window=window)


@pytest.mark.unit
class TestConstruction:
    def test_non_callable_handler_rejected(self) -> None:
        queue = JobQueue(MemoryFeedStore())
        with pytest.raises(HandlerDefinitionError) as exc_info:
            Worker(queue, 'not a function')  # type: ignore[arg-type]
        assert exc_info.value.code is ErrorCode.WORKER_INVALID_HANDLER

    def test_missing_handler_rejected(self) -> None:
        with pytest.raises(HandlerDefinitionError):
            Worker(JobQueue(MemoryFeedStore()), None)  # type: ignore[arg-type]

    def test_non_queue_rejected(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Worker(object(), succeed)  # type: ignore[arg-type]
        assert exc_info.value.code is ErrorCode.WORKER_INVALID_QUEUE

    @pytest.mark.asyncio
    async def test_bare_store_wrapped_in_default_queue(self) -> None:
        store = MemoryFeedStore()
        worker = Worker(store, succeed)

        assert isinstance(worker.queue, JobQueue)
        assert worker.queue.store is store
        assert worker.queue.feed == 'jobs'

        await worker.start()
        await worker.queue.enqueue('x')
        await wait_until(lambda: worker.success_count == 1)
        assert worker.queue.stats.succeeded == 1
        await worker.stop()

    def test_queue_hooks_registered(self) -> None:
        worker = Worker(JobQueue(MemoryFeedStore()), succeed)
        assert worker.events.listener_count(WorkerEvent.START) == 1
        assert worker.events.listener_count(WorkerEvent.SUCCESS) == 1
        assert worker.events.listener_count(WorkerEvent.FAILURE) == 1

    def test_initial_state(self) -> None:
        worker = Worker(JobQueue(MemoryFeedStore(), 'emails'), succeed)
        assert worker.state is WorkerState.STOPPED
        assert worker.is_busy is False
        assert worker.success_count == 0
        assert worker.failure_count == 0
        assert repr(worker) == '<Worker:emails>'


@pytest.mark.unit
class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_is_idempotent(self) -> None:
        store = MemoryFeedStore()
        worker = Worker(JobQueue(store), succeed)

        await worker.start()
        await worker.start()

        assert worker.state is WorkerState.IDLE
        assert len(store._subs['jobs']) == 1
        await worker.stop()

    @pytest.mark.asyncio
    async def test_stop_when_idle_calls_back_immediately(self) -> None:
        store = MemoryFeedStore()
        queue = JobQueue(store)
        worker = Worker(queue, succeed)
        await worker.start()

        calls: list[str] = []
        await worker.stop(lambda: calls.append('stopped'))

        assert calls == ['stopped']
        assert worker.state is WorkerState.STOPPED

        await queue.enqueue({'n': 1})
        await asyncio.sleep(0.02)
        assert store.size('jobs') == 1
        assert worker.success_count == 0

    @pytest.mark.asyncio
    async def test_restart_after_stop_resumes_processing(self) -> None:
        store = MemoryFeedStore()
        queue = JobQueue(store)
        worker = Worker(queue, succeed)
        await worker.start()
        await worker.stop()

        await queue.enqueue({'n': 1})
        await worker.start()
        await wait_until(lambda: worker.success_count == 1)
        await worker.stop()

    @pytest.mark.asyncio
    async def test_start_after_stop_during_subscribe_stays_subscribed(self) -> None:
        store = SlowSubscribeStore()
        queue = JobQueue(store)
        worker = Worker(queue, succeed)

        first_start = asyncio.create_task(worker.start())
        await asyncio.sleep(0)
        await worker.stop()
        await worker.start()

        store.gate.set()
        await first_start

        assert worker.state is WorkerState.IDLE
        assert len(store._subs['jobs']) == 1
        await queue.enqueue('x')
        await wait_until(lambda: worker.success_count == 1)
        await worker.stop()

    @pytest.mark.asyncio
    async def test_stop_during_subscribe_discards_subscription(self) -> None:
        store = SlowSubscribeStore()
        worker = Worker(JobQueue(store), succeed)

        first_start = asyncio.create_task(worker.start())
        await asyncio.sleep(0)
        await worker.stop()

        store.gate.set()
        await first_start

        assert worker.state is WorkerState.STOPPED
        assert 'jobs' not in store._subs

    @pytest.mark.asyncio
    async def test_subscription_failure_raises_original_exception(self) -> None:
        store = MemoryFeedStore()
        queue = JobQueue(store)
        cause = OperationalError('connection refused')

        async def failing_subscribe(callback: NotificationCallback) -> Any:
            return Err(
                StoreOperationError(
                    code=StoreErrorCode.SUBSCRIBE_FAILED,
                    message='listen failed',
                    retryable=True,
                    exception=cause,
                )
            )

        queue.subscribe = failing_subscribe  # type: ignore[method-assign]
        worker = Worker(queue, succeed)

        with pytest.raises(OperationalError):
            await worker.start()
        assert worker.state is WorkerState.STOPPED


@pytest.mark.unit
class TestProcessing:
    @pytest.mark.asyncio
    async def test_drains_backlog_present_before_start(self) -> None:
        store = MemoryFeedStore()
        queue = JobQueue(store)
        for i in range(3):
            await queue.enqueue({'n': i}, identifier=f'job-{i}')

        worker = Worker(queue, succeed)
        recorder = Recorder(worker)
        await worker.start()
        await wait_until(lambda: worker.success_count == 3 and not worker.is_busy)

        assert recorder.names(skip_idle=True) == ['start', 'success', 'finish'] * 3
        assert [subject for name, subject in recorder.events if name == 'start'] == [
            'job-0', 'job-1', 'job-2',
        ]
        assert recorder.events[-1] == ('idle', None)
        assert store.size('jobs') == 0
        await worker.stop()

    @pytest.mark.asyncio
    async def test_picks_up_jobs_enqueued_while_idle(self) -> None:
        store = MemoryFeedStore()
        queue = JobQueue(store)
        worker = Worker(queue, succeed)
        await worker.start()

        await queue.enqueue('late job')
        await wait_until(lambda: worker.success_count == 1)

        assert worker.state is WorkerState.IDLE
        await worker.stop()

    @pytest.mark.asyncio
    async def test_busy_while_handler_runs(self) -> None:
        held: list[Completion] = []
        queue = JobQueue(MemoryFeedStore())
        worker = Worker(queue, lambda job, done: held.append(done))
        await worker.start()

        await queue.enqueue('x')
        await wait_until(lambda: len(held) == 1)
        assert worker.state is WorkerState.BUSY
        assert worker.is_busy is True

        held[0]()
        await wait_until(lambda: not worker.is_busy)
        assert worker.state is WorkerState.IDLE
        await worker.stop()

    @pytest.mark.asyncio
    async def test_never_runs_two_jobs_at_once(self) -> None:
        running = 0
        peak = 0
        queue = JobQueue(MemoryFeedStore())

        async def handler(job: Job, done: Completion) -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.001)
            running -= 1
            done()

        worker = Worker(queue, handler)
        await worker.start()
        for i in range(10):
            await queue.enqueue(i)
        await wait_until(lambda: worker.success_count == 10)

        assert peak == 1
        await worker.stop()

    @pytest.mark.asyncio
    async def test_counters_and_queue_stats(self) -> None:
        store = MemoryFeedStore()
        queue = JobQueue(store)

        def handler(job: Job, done: Completion) -> None:
            done(ValueError(job.payload) if job.payload % 3 == 0 else None)

        worker = Worker(queue, handler)
        for n in range(10):
            await queue.enqueue(n)
        await worker.start()
        await wait_until(lambda: worker.success_count + worker.failure_count == 10)

        assert worker.failure_count == 4
        assert worker.success_count == 6
        assert queue.stats.started == 10
        assert queue.stats.failed == 4
        assert queue.stats.succeeded == 6
        await worker.stop()

    @pytest.mark.asyncio
    async def test_lost_claim_after_job_still_emits_one_idle(self) -> None:
        store = MemoryFeedStore()
        queue = JobQueue(store)
        await queue.enqueue('first', identifier='job-1')
        second = (await queue.enqueue('second', identifier='job-2')).ok_value

        async def handler(job: Job, done: Completion) -> None:
            # The notification for job-2 arrives while busy; another
            # consumer takes job-2 before this worker gets to it.
            await asyncio.sleep(0.01)
            await store.transact(second, lambda current: None)
            done()

        worker = Worker(queue, handler)
        recorder = Recorder(worker)
        await worker.start()
        await wait_until(lambda: store.transaction_count == 3 and not worker.is_busy)
        await asyncio.sleep(0.02)

        assert recorder.events == [
            ('start', 'job-1'), ('success', 'job-1'), ('finish', 'job-1'), ('idle', None),
        ]
        assert worker.success_count == 1
        assert worker.state is WorkerState.IDLE
        await worker.stop()


@pytest.mark.unit
class TestHandlerMisbehaviour:
    @pytest.mark.asyncio
    async def test_sync_raise_matches_explicit_failure(self) -> None:
        error = RuntimeError('handler bug')

        def raising(job: Job, done: Completion) -> None:
            raise error

        def failing(job: Job, done: Completion) -> None:
            done(error)

        observed: list[tuple[list[tuple[str, Any]], int, int]] = []
        for handler in (raising, failing):
            queue = JobQueue(MemoryFeedStore())
            await queue.enqueue('x', identifier='job-1')
            worker = Worker(queue, handler)
            failures: list[Any] = []
            worker.events.on(WorkerEvent.FAILURE, lambda job, err: failures.append(err))
            recorder = Recorder(worker)
            await worker.start()
            await wait_until(lambda: worker.failure_count == 1 and not worker.is_busy)
            await worker.stop()

            assert failures == [error]
            observed.append((recorder.events, worker.success_count, worker.failure_count))

        assert observed[0] == observed[1]
        assert observed[0][0][:3] == [
            ('start', 'job-1'), ('failure', 'job-1'), ('finish', 'job-1'),
        ]

    @pytest.mark.asyncio
    async def test_double_completion_counts_once(self) -> None:
        queue = JobQueue(MemoryFeedStore())

        def handler(job: Job, done: Completion) -> None:
            done()
            done(RuntimeError('second call'))

        worker = Worker(queue, handler)
        recorder = Recorder(worker)
        await queue.enqueue('x')
        await worker.start()
        await wait_until(lambda: worker.success_count == 1 and not worker.is_busy)
        await asyncio.sleep(0.01)

        assert worker.failure_count == 0
        assert recorder.names(skip_idle=True) == ['start', 'success', 'finish']
        await worker.stop()

    @pytest.mark.asyncio
    async def test_listener_exception_does_not_wedge_worker(self) -> None:
        queue = JobQueue(MemoryFeedStore())
        worker = Worker(queue, succeed)

        def bad_listener(job: Job) -> None:
            raise RuntimeError('listener bug')

        worker.events.on(WorkerEvent.START, bad_listener)
        for i in range(2):
            await queue.enqueue(i)
        await worker.start()
        await wait_until(lambda: worker.success_count == 2)
        await worker.stop()

    @pytest.mark.asyncio
    async def test_cancelled_await_inside_handler_is_failure(self) -> None:
        queue = JobQueue(MemoryFeedStore())

        async def handler(job: Job, done: Completion) -> None:
            if job.identifier == 'job-0':
                inner = asyncio.ensure_future(asyncio.sleep(10))
                inner.cancel()
                await inner
            done()

        worker = Worker(queue, handler)
        recorder = Recorder(worker)
        for i in range(3):
            await queue.enqueue(i, identifier=f'job-{i}')
        await worker.start()
        await wait_until(lambda: worker.success_count + worker.failure_count == 3 and not worker.is_busy)

        assert worker.failure_count == 1
        assert worker.success_count == 2
        assert recorder.events[:3] == [
            ('start', 'job-0'), ('failure', 'job-0'), ('finish', 'job-0'),
        ]
        assert queue.stats.failed == 1
        await worker.stop()

    @pytest.mark.asyncio
    async def test_cancelled_cycle_releases_worker_and_resumes(self) -> None:
        queue = JobQueue(MemoryFeedStore())

        async def handler(job: Job, done: Completion) -> None:
            if job.identifier == 'job-0':
                await asyncio.Event().wait()
            done()

        worker = Worker(queue, handler)
        for i in range(3):
            await queue.enqueue(i, identifier=f'job-{i}')
        await worker.start()
        await wait_until(lambda: worker.is_busy and worker._buffer.pending is not None)

        cycles = list(worker._service_tasks)
        assert len(cycles) == 1
        cycles[0].cancel()

        await wait_until(lambda: worker.success_count == 2 and not worker._service_tasks)
        assert worker.failure_count == 0
        assert worker.state is WorkerState.IDLE
        await worker.stop()


@pytest.mark.unit
class TestConcurrentWorkers:
    @pytest.mark.asyncio
    async def test_each_job_handled_exactly_once(self) -> None:
        store = MemoryFeedStore()
        handled: list[tuple[int, str | None]] = []

        def make_handler(index: int) -> Callable[[Job, Completion], None]:
            def handler(job: Job, done: Completion) -> None:
                handled.append((index, job.identifier))
                asyncio.get_running_loop().call_later(0.001, done)

            return handler

        workers = [Worker(JobQueue(store), make_handler(i)) for i in range(4)]
        for worker in workers:
            await worker.start()
        for i in range(40):
            await JobQueue(store).enqueue({'n': i}, identifier=f'job-{i}')

        await wait_until(lambda: sum(w.success_count for w in workers) == 40, timeout=10.0)

        identifiers = [identifier for _, identifier in handled]
        assert len(identifiers) == 40
        assert set(identifiers) == {f'job-{i}' for i in range(40)}
        assert store.size('jobs') == 0
        for worker in workers:
            await worker.stop()

    @pytest.mark.asyncio
    async def test_race_for_one_item_has_one_winner(self) -> None:
        store = MemoryFeedStore()
        calls: list[str] = []

        def handler(job: Job, done: Completion) -> None:
            calls.append(job.identifier or '')
            done()

        first = Worker(JobQueue(store), handler)
        second = Worker(JobQueue(store), handler)
        recorders = [Recorder(first), Recorder(second)]
        await first.start()
        await second.start()

        await JobQueue(store).enqueue('contested', identifier='job-1')
        await wait_until(lambda: store.transaction_count == 2 and not first.is_busy and not second.is_busy)

        assert calls == ['job-1']
        assert sorted([first.success_count, second.success_count]) == [0, 1]
        loser = recorders[0] if first.success_count == 0 else recorders[1]
        assert loser.events == []
        assert first.state is WorkerState.IDLE
        assert second.state is WorkerState.IDLE
        await first.stop()
        await second.stop()


@pytest.mark.unit
class TestGracefulStop:
    @pytest.mark.asyncio
    async def test_stop_while_busy_defers_callback_until_finish(self) -> None:
        store = MemoryFeedStore()
        queue = JobQueue(store)
        held: list[Completion] = []
        worker = Worker(queue, lambda job, done: held.append(done))
        recorder = Recorder(worker)
        await queue.enqueue('first')
        await queue.enqueue('second')
        await worker.start()
        await wait_until(lambda: len(held) == 1)

        stopped: list[int] = []
        await worker.stop(lambda: recorder.events.append(('stopped', None)))
        await worker.stop(lambda: stopped.append(1))
        assert ('stopped', None) not in recorder.events
        assert worker.state is WorkerState.BUSY

        await queue.enqueue('third')
        held[0]()
        await wait_until(lambda: stopped == [1])

        names = recorder.names()
        assert names.index('stopped') > names.index('finish')
        assert len(held) == 1
        assert worker.success_count == 1
        assert worker.state is WorkerState.STOPPED
        assert store.size('jobs') == 2
        await asyncio.sleep(0.01)
        assert stopped == [1]

    @pytest.mark.asyncio
    async def test_claim_in_flight_at_stop_still_runs(self) -> None:
        store = GatedStore()
        queue = JobQueue(store)
        worker = Worker(queue, succeed)
        recorder = Recorder(worker)
        await worker.start()
        await queue.enqueue('x', identifier='job-1')
        await store.entered.wait()

        stopped: list[int] = []
        await worker.stop(lambda: stopped.append(1))
        assert stopped == []

        store.release.set()
        await wait_until(lambda: stopped == [1])
        assert recorder.names(skip_idle=True) == ['start', 'success', 'finish']
        assert worker.state is WorkerState.STOPPED

    @pytest.mark.asyncio
    async def test_notifications_during_unsubscribe_start_no_claim(self) -> None:
        store = SlowCancelStore()
        queue = JobQueue(store)
        worker = Worker(queue, succeed)
        await worker.start()

        stopped: list[int] = []
        stop_task = asyncio.create_task(worker.stop(lambda: stopped.append(1)))
        await asyncio.sleep(0)

        location = (await store.push('jobs', {'payload': 'x'})).ok_value
        assert store.callback is not None
        store.callback(FeedNotification(location))
        await asyncio.sleep(0.01)

        assert store.transaction_count == 0
        assert worker.is_busy is False

        store.cancel_gate.set()
        await stop_task
        assert stopped == [1]
        assert store.size('jobs') == 1


@pytest.mark.unit
class TestStoreFaults:
    @pytest.mark.asyncio
    async def test_fault_is_reported_and_job_retried_after_backoff(self) -> None:
        store = FaultyStore(failures=2)
        queue = JobQueue(store)
        worker = Worker(queue, succeed, resilience=FAST_RETRY)
        errors: list[StoreOperationError] = []
        worker.events.on(WorkerEvent.ERROR, errors.append)

        await queue.enqueue('x')
        await worker.start()
        await wait_until(lambda: worker.success_count == 1)

        assert len(errors) == 2
        assert all(e.code is StoreErrorCode.TRANSACTION_FAILED for e in errors)
        assert store.attempts == 3
        assert worker.state is WorkerState.IDLE
        await worker.stop()

    @pytest.mark.asyncio
    async def test_backoff_holds_off_new_claims(self) -> None:
        store = FaultyStore(failures=-1)
        queue = JobQueue(store, notify_window=2)
        resilience = WorkerResilienceConfig(store_retry_initial_ms=500, store_retry_max_ms=1_000)
        worker = Worker(queue, succeed, resilience=resilience)
        worker.events.on(WorkerEvent.ERROR, lambda err: None)

        await worker.start()
        await queue.enqueue('a')
        await wait_until(lambda: store.attempts == 1)
        await queue.enqueue('b')
        await asyncio.sleep(0.05)

        assert store.attempts == 1
        assert worker.is_busy is False
        assert worker.state is WorkerState.IDLE

        await worker.stop()
        assert worker._cooldown is None

    @pytest.mark.asyncio
    async def test_stops_itself_after_consecutive_faults(self) -> None:
        store = FaultyStore(failures=-1)
        queue = JobQueue(store)
        resilience = WorkerResilienceConfig(
            store_retry_initial_ms=10,
            store_retry_max_ms=20,
            max_consecutive_store_faults=2,
        )
        worker = Worker(queue, succeed, resilience=resilience)
        errors: list[StoreOperationError] = []
        worker.events.on(WorkerEvent.ERROR, errors.append)

        await queue.enqueue('x')
        await worker.start()
        await wait_until(lambda: worker.state is WorkerState.STOPPED)
        await asyncio.sleep(0.05)

        assert len(errors) == 2
        assert store.attempts == 2
        assert store._subs.get('jobs') is None

    @pytest.mark.asyncio
    async def test_unlistened_fault_does_not_raise(self) -> None:
        store = FaultyStore(failures=1)
        queue = JobQueue(store)
        worker = Worker(queue, succeed, resilience=FAST_RETRY)

        await queue.enqueue('x')
        await worker.start()
        await wait_until(lambda: worker.success_count == 1)
        await worker.stop()


@pytest.mark.unit
class TestRunForever:
    @pytest.mark.asyncio
    async def test_runs_until_stop_requested(self) -> None:
        store = MemoryFeedStore()
        queue = JobQueue(store)
        worker = Worker(queue, succeed)
        task = asyncio.create_task(worker.run_forever())

        await wait_until(lambda: worker.state is WorkerState.IDLE)
        await queue.enqueue('x')
        await wait_until(lambda: worker.success_count == 1)

        worker.request_stop()
        await asyncio.wait_for(task, timeout=2.0)
        assert worker.state is WorkerState.STOPPED

    @pytest.mark.asyncio
    async def test_retries_transient_start_errors(self) -> None:
        store = MemoryFeedStore()
        queue = JobQueue(store)
        real_subscribe = queue.subscribe
        attempts = 0

        async def flaky_subscribe(callback: NotificationCallback) -> Any:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise OperationalError('connection refused')
            return await real_subscribe(callback)

        queue.subscribe = flaky_subscribe  # type: ignore[method-assign]
        worker = Worker(queue, succeed, resilience=FAST_RETRY)
        task = asyncio.create_task(worker.run_forever())

        await wait_until(lambda: worker.state is WorkerState.IDLE)
        worker.request_stop()
        await asyncio.wait_for(task, timeout=2.0)
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_non_retryable_start_error_propagates(self) -> None:
        queue = JobQueue(MemoryFeedStore())

        async def broken_subscribe(callback: NotificationCallback) -> Any:
            raise ValueError('bad feed')

        queue.subscribe = broken_subscribe  # type: ignore[method-assign]
        worker = Worker(queue, succeed, resilience=FAST_RETRY)

        with pytest.raises(ValueError, match='bad feed'):
            await worker.run_forever()

    @pytest.mark.asyncio
    async def test_waits_for_in_flight_job(self) -> None:
        queue = JobQueue(MemoryFeedStore())
        held: list[Completion] = []
        worker = Worker(queue, lambda job, done: held.append(done))
        task = asyncio.create_task(worker.run_forever())

        await wait_until(lambda: worker.state is WorkerState.IDLE)
        await queue.enqueue('x')
        await wait_until(lambda: len(held) == 1)

        worker.request_stop()
        await asyncio.sleep(0.02)
        assert not task.done()

        held[0]()
        await asyncio.wait_for(task, timeout=2.0)
        assert worker.success_count == 1
