# feedworker/core/worker/executor.py
from __future__ import annotations

import asyncio
import inspect
import threading
from typing import Any, Awaitable, Callable

from feedworker.core.logging import get_logger
from feedworker.core.models.job import Job, JobFailure, JobResult, JobSuccess

logger = get_logger('executor')


class Completion:
    """
    Single-use completion signal handed to a job handler.

    ``done()`` or ``done(None)`` reports success, ``done(error)`` failure.
    Only the first call counts; later calls are logged and ignored. Safe to
    call from any thread: the outcome is delivered onto the worker's loop.
    """

    __slots__ = ('_job', '_future', '_loop', '_lock', '_called')

    def __init__(
        self,
        job: Job,
        future: asyncio.Future[JobResult],
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._job = job
        self._future = future
        self._loop = loop
        self._lock = threading.Lock()
        self._called = False

    @property
    def called(self) -> bool:
        return self._called

    def __call__(self, error: Any = None) -> None:
        with self._lock:
            if self._called:
                logger.error(
                    f'Completion for job {self._job.identifier!r} called more than once; '
                    f'ignoring extra call (error={error!r})'
                )
                return
            self._called = True

        result: JobResult = JobSuccess() if error is None else JobFailure(error)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._resolve(result)
        else:
            self._loop.call_soon_threadsafe(self._resolve, result)

    def _resolve(self, result: JobResult) -> None:
        if not self._future.done():
            self._future.set_result(result)


type JobHandler = Callable[[Job, Completion], Awaitable[Any] | Any]


class JobExecutor:
    """Runs a handler once per job and waits for its completion signal."""

    def __init__(self, handler: JobHandler) -> None:
        self.handler = handler

    async def run(self, job: Job) -> JobResult:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[JobResult] = loop.create_future()
        done = Completion(job, future, loop)

        try:
            returned = self.handler(job, done)
        except Exception as exc:
            # Raising is the same as done(exc).
            done(exc)
        else:
            if inspect.isawaitable(returned):
                try:
                    await returned
                except asyncio.CancelledError as exc:
                    task = asyncio.current_task()
                    if task is not None and task.cancelling():
                        raise
                    # Cancellation from inside the handler is a job failure.
                    done(exc)
                except Exception as exc:
                    done(exc)

        return await future
