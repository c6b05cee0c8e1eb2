# feedworker/core/brokers/postgres.py
from __future__ import annotations

import asyncio
import contextlib
import hashlib
from asyncio import Queue, Task
from typing import Any, Optional

from psycopg import Notify
from result import Err, Ok, is_err
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from feedworker.core.brokers.base import (
    ABORT,
    FeedNotification,
    HeadWindow,
    ItemRef,
    NotificationCallback,
    ProposeFn,
    TransactionOutcome,
    make_item_key,
)
from feedworker.core.brokers.listener import PostgresListener
from feedworker.core.brokers.result_types import StoreErrorCode, StoreOperationError, StoreResult
from feedworker.core.brokers.sql import (
    COUNT_ITEMS_SQL,
    CREATE_NOTIFY_FUNCTION_SQL,
    CREATE_NOTIFY_TRIGGER_SQL,
    DELETE_ITEM_SQL,
    DROP_NOTIFY_TRIGGER_SQL,
    HEAD_KEYS_SQL,
    INSERT_ITEM_SQL,
    SCHEMA_ADVISORY_LOCK_SQL,
    SELECT_ITEM_FOR_UPDATE_SQL,
    UPSERT_ITEM_SQL,
)
from feedworker.core.defaults import COALESCE_NOTIFIES, FEED_CHANNEL_PREFIX
from feedworker.core.logging import get_logger
from feedworker.core.models.item_pg import Base
from feedworker.core.models.store import StoreConfig
from feedworker.core.utils.db import store_error_from_exception

logger = get_logger('store')

# Errors a store operation can hit on the wire; anything else is a bug and propagates.
_STORE_ERRORS = (SQLAlchemyError, OSError)


class PostgresFeedSubscription:
    """
    Watches one feed's head window.

    Each NOTIFY burst on the feed channel (or the poll interval elapsing
    without one) triggers a re-read of the first `window` keys; keys new to
    the window are delivered to the callback in feed order.
    """

    def __init__(
        self,
        store: PostgresFeedStore,
        feed: str,
        channel: str,
        queue: Queue[Notify],
        callback: NotificationCallback,
        *,
        window: int,
        poll_interval_s: float,
    ) -> None:
        self._store = store
        self.feed = feed
        self.channel = channel
        self._queue = queue
        self._callback = callback
        self._window = HeadWindow(window)
        self._poll_interval_s = poll_interval_s
        self._task: Optional[Task[None]] = None
        self.active = True

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(
                self._pump(), name=f'feed-subscription-{self.feed}'
            )

    async def _pump(self) -> None:
        while self.active:
            await self._refresh()
            try:
                await asyncio.wait_for(self._queue.get(), timeout=self._poll_interval_s)
            except asyncio.TimeoutError:
                # Fallback poll: NOTIFY may have been missed during a reconnect.
                continue
            # drain a burst
            drained = 0
            while drained < COALESCE_NOTIFIES and not self._queue.empty():
                self._queue.get_nowait()
                drained += 1

    async def _refresh(self) -> None:
        keys_r = await self._store.head_keys(self.feed, self._window.size)
        if is_err(keys_r):
            logger.warning(f'Could not read head of feed {self.feed!r}: {keys_r.err_value.message}')
            return
        for key in self._window.advance(keys_r.ok_value):
            if not self.active:
                return
            try:
                self._callback(FeedNotification(ItemRef(self.feed, key)))
            except Exception:
                logger.exception(f'Notification callback for feed {self.feed!r} failed')

    async def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self._store.listener.unsubscribe(self.channel, self._queue)
        self._store._subscriptions.discard(self)


class PostgresFeedStore:
    """
    PostgreSQL-backed feed store with LISTEN/NOTIFY change notifications.

      - push(): INSERT into feedworker_items; a trigger NOTIFYs the feed channel
      - transact(): row-locked read-propose-commit in one transaction
      - subscribe(): head-window notifications via PostgresListener
    """

    def __init__(self, config: StoreConfig, *, notify_poll_interval_ms: int = 5_000):
        self.config = config
        self.notify_poll_interval_ms = notify_poll_interval_ms

        engine_cfg = self.config.model_dump(exclude={'database_url'}, exclude_none=True)
        self.async_engine = create_async_engine(self.config.database_url, **engine_cfg)
        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )
        self.listener = PostgresListener(self.config.listener_url)

        self._subscriptions: set[PostgresFeedSubscription] = set()
        self._initialized = False
        logger.info('PostgresFeedStore initialized')

    def _schema_advisory_key(self) -> int:
        """Stable 64-bit advisory lock key; distinct per database URL."""
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'feedworker-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def ensure_schema_initialized(self) -> StoreResult[None]:
        """
        Create the items table and the notify trigger, then start the listener.

        Safe to call multiple times and from multiple processes; DDL runs
        under a transaction-scoped advisory lock.
        """
        if self._initialized:
            return Ok(None)
        try:
            async with self.async_engine.begin() as conn:
                await conn.execute(
                    SCHEMA_ADVISORY_LOCK_SQL, {'key': self._schema_advisory_key()}
                )
                await conn.run_sync(Base.metadata.create_all)
                await conn.execute(CREATE_NOTIFY_FUNCTION_SQL)
                await conn.execute(DROP_NOTIFY_TRIGGER_SQL)
                await conn.execute(CREATE_NOTIFY_TRIGGER_SQL)
        except _STORE_ERRORS as exc:
            return Err(store_error_from_exception(
                StoreErrorCode.SCHEMA_INIT_FAILED, 'Schema initialization', exc,
            ))

        start_r = await self.listener.start()
        if is_err(start_r):
            return start_r
        self._initialized = True
        return Ok(None)

    async def push(self, feed: str, value: Any) -> StoreResult[ItemRef]:
        init_r = await self.ensure_schema_initialized()
        if is_err(init_r):
            return init_r

        key = make_item_key()
        try:
            async with self.session_factory() as s:
                await s.execute(INSERT_ITEM_SQL, {'feed': feed, 'key': key, 'value': value})
                await s.commit()
        except _STORE_ERRORS as exc:
            return Err(store_error_from_exception(
                StoreErrorCode.PUSH_FAILED, f'Push to feed {feed!r}', exc,
            ))
        # Trigger sends NOTIFY feedworker_<feed>
        return Ok(ItemRef(feed, key))

    async def transact(
        self, location: ItemRef, propose: ProposeFn,
    ) -> StoreResult[TransactionOutcome]:
        init_r = await self.ensure_schema_initialized()
        if is_err(init_r):
            return init_r

        params = {'feed': location.feed, 'key': location.key}
        try:
            async with self.session_factory() as s:
                res = await s.execute(SELECT_ITEM_FOR_UPDATE_SQL, params)
                row = res.fetchone()
                current = row[0] if row is not None else None

                proposed = propose(current)
                if proposed is ABORT:
                    await s.rollback()
                    return Ok(TransactionOutcome(committed=False, value=current))

                if proposed is None:
                    if row is not None:
                        await s.execute(DELETE_ITEM_SQL, params)
                else:
                    await s.execute(UPSERT_ITEM_SQL, {**params, 'value': proposed})
                await s.commit()
        except _STORE_ERRORS as exc:
            return Err(store_error_from_exception(
                StoreErrorCode.TRANSACTION_FAILED, f'Transaction on {location}', exc,
            ))
        return Ok(TransactionOutcome(committed=True, value=proposed))

    async def head_keys(self, feed: str, limit: int) -> StoreResult[list[str]]:
        try:
            async with self.session_factory() as s:
                res = await s.execute(HEAD_KEYS_SQL, {'feed': feed, 'lim': limit})
                return Ok([row[0] for row in res.fetchall()])
        except _STORE_ERRORS as exc:
            return Err(store_error_from_exception(
                StoreErrorCode.QUERY_FAILED, f'Reading head of feed {feed!r}', exc,
            ))

    async def count(self, feed: str) -> StoreResult[int]:
        init_r = await self.ensure_schema_initialized()
        if is_err(init_r):
            return init_r
        try:
            async with self.session_factory() as s:
                res = await s.execute(COUNT_ITEMS_SQL, {'feed': feed})
                row = res.fetchone()
                return Ok(int(row[0]) if row else 0)
        except _STORE_ERRORS as exc:
            return Err(store_error_from_exception(
                StoreErrorCode.QUERY_FAILED, f'Counting feed {feed!r}', exc,
            ))

    async def subscribe(
        self,
        feed: str,
        callback: NotificationCallback,
        *,
        window: int = 1,
    ) -> StoreResult[PostgresFeedSubscription]:
        init_r = await self.ensure_schema_initialized()
        if is_err(init_r):
            return init_r

        channel = f'{FEED_CHANNEL_PREFIX}{feed}'
        listen_r = await self.listener.listen(channel)
        if is_err(listen_r):
            err = listen_r.err_value
            return Err(StoreOperationError(
                code=StoreErrorCode.SUBSCRIBE_FAILED,
                message=f'Failed to subscribe to feed {feed!r}: {err.message}',
                retryable=err.retryable,
                exception=err.exception,
            ))

        subscription = PostgresFeedSubscription(
            self,
            feed,
            channel,
            listen_r.ok_value,
            callback,
            window=window,
            poll_interval_s=self.notify_poll_interval_ms / 1000.0,
        )
        self._subscriptions.add(subscription)
        subscription.start()
        logger.info(f'Subscribed to feed {feed!r} on channel {channel!r}')
        return Ok(subscription)

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.cancel()
        await self.listener.close()
        await self.async_engine.dispose()
        self._initialized = False
        logger.info('PostgresFeedStore closed')
