# feedworker/core/queue.py
"""
Producer/consumer face of one job feed.

Producers call ``enqueue``; workers subscribe through the queue and report
job lifecycle back to it through hooks registered on their event channel.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from result import is_ok

from feedworker.core.brokers.base import FeedStore, ItemRef, NotificationCallback, Subscription
from feedworker.core.brokers.result_types import StoreResult
from feedworker.core.defaults import DEFAULT_FEED_NAME, DEFAULT_NOTIFY_WINDOW
from feedworker.core.logging import get_logger
from feedworker.core.models.job import Job
from feedworker.core.models.queue import QueueConfig
from feedworker.core.worker.events import NotificationChannel, WorkerEvent

logger = get_logger('queue')


@dataclass
class QueueStats:
    """Process-lifetime tallies of hook calls, across every attached worker."""

    started: int = 0
    succeeded: int = 0
    failed: int = 0


class JobQueue:
    def __init__(
        self,
        store: FeedStore,
        feed: str = DEFAULT_FEED_NAME,
        *,
        notify_window: int = DEFAULT_NOTIFY_WINDOW,
    ) -> None:
        self.config = QueueConfig(feed=feed, notify_window=notify_window)
        self.store = store
        self.stats = QueueStats()

    @property
    def feed(self) -> str:
        return self.config.feed

    def __repr__(self) -> str:
        return f'<JobQueue feed={self.feed!r}>'

    async def enqueue(self, payload: Any, *, identifier: str | None = None) -> StoreResult[ItemRef]:
        """Append a job to the feed. `identifier` is optional; the feed key is used otherwise."""
        push_r = await self.store.push(self.feed, Job(identifier, payload).to_value())
        if is_ok(push_r):
            logger.debug(f'Enqueued job at {push_r.ok_value}')
        return push_r

    async def subscribe(self, callback: NotificationCallback) -> StoreResult[Subscription]:
        return await self.store.subscribe(
            self.feed, callback, window=self.config.notify_window,
        )

    def register_hooks(self, channel: NotificationChannel) -> None:
        channel.on(WorkerEvent.START, self.job_was_started)
        channel.on(WorkerEvent.FAILURE, self.job_did_fail)
        channel.on(WorkerEvent.SUCCESS, self.job_did_succeed)

    # ----- hooks -----

    def job_was_started(self, job: Job) -> None:
        self.stats.started += 1
        logger.debug(f'Job {job.identifier} started')

    def job_did_fail(self, job: Job, error: Any) -> None:
        self.stats.failed += 1
        logger.warning(f'Job {job.identifier} failed: {error!r}')

    def job_did_succeed(self, job: Job) -> None:
        self.stats.succeeded += 1
        logger.debug(f'Job {job.identifier} succeeded')
