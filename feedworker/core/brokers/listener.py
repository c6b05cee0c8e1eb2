# feedworker/core/brokers/listener.py
"""
PostgreSQL LISTEN/NOTIFY fan-out for feed subscriptions.

Flow:
  1. Producer or claimer writes feedworker_items -> trigger -> NOTIFY feedworker_<feed>, key
  2. PostgresListener's dispatcher reads conn.notifies() and copies each
     notification into every local subscriber queue for that channel
  3. PostgresFeedSubscription pumps its queue and re-reads the feed head
"""

from __future__ import annotations

import asyncio
import contextlib
from asyncio import Queue, Task
from collections import defaultdict
from typing import DefaultDict, Optional, Set

import psycopg
from psycopg import AsyncConnection, InterfaceError, Notify, OperationalError, sql
from result import Err, Ok

from feedworker.core.brokers.result_types import StoreErrorCode, StoreResult
from feedworker.core.logging import get_logger
from feedworker.core.utils.db import store_error_from_exception

logger = get_logger('listener')

_SUBSCRIBER_QUEUE_MAXSIZE: int = 4096
_RECONNECT_BACKOFF_MIN_S = 0.2
_RECONNECT_BACKOFF_MAX_S = 5.0


class PostgresListener:
    """
    LISTEN/NOTIFY wrapper distributing notifications to asyncio queues.

    - one autocommit connection; the dispatcher task is its only reader of
      conn.notifies(), and is paused while LISTEN/UNLISTEN run on it
    - one bounded queue per local subscriber; a full queue drops the
      notification for that subscriber only (subscribers re-scan the feed
      head on their own, so a dropped wake-up is not a lost job)
    - on connection loss the dispatcher reconnects with exponential backoff
      and re-issues LISTEN for every tracked channel
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._dispatcher_conn: Optional[AsyncConnection] = None
        self._listen_channels: Set[str] = set()
        self._subs: DefaultDict[str, Set[Queue[Notify]]] = defaultdict(set)
        self._dispatcher_task: Optional[Task[None]] = None
        # Serializes LISTEN/UNLISTEN and subscription bookkeeping.
        self._lock = asyncio.Lock()

    async def start(self) -> StoreResult[None]:
        """Open the listener connection. Safe to call more than once."""
        try:
            await self._ensure_connection()
        except (OperationalError, InterfaceError, OSError) as exc:
            await self._close_connection()
            return Err(store_error_from_exception(
                StoreErrorCode.LISTENER_START_FAILED, 'Opening listener connection', exc,
            ))
        return Ok(None)

    async def _ensure_connection(self) -> None:
        if self._dispatcher_conn is None or self._dispatcher_conn.closed:
            self._dispatcher_conn = await psycopg.AsyncConnection.connect(
                self.database_url, autocommit=True,
            )
            for channel in self._listen_channels:
                await self._dispatcher_conn.execute(
                    sql.SQL('LISTEN {}').format(sql.Identifier(channel))
                )

    async def _close_connection(self) -> None:
        conn, self._dispatcher_conn = self._dispatcher_conn, None
        if conn is not None and not conn.closed:
            with contextlib.suppress(OperationalError, InterfaceError, OSError):
                await conn.close()

    async def _pause_dispatcher(self) -> bool:
        if self._dispatcher_task is None:
            return False
        self._dispatcher_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._dispatcher_task
        self._dispatcher_task = None
        return True

    def _start_dispatcher(self) -> None:
        if self._dispatcher_task is None:
            self._dispatcher_task = asyncio.create_task(
                self._dispatcher(), name='pg-listener-dispatcher'
            )

    async def _dispatcher(self) -> None:
        backoff = _RECONNECT_BACKOFF_MIN_S
        while True:
            try:
                await self._ensure_connection()
                assert self._dispatcher_conn is not None
                async for notification in self._dispatcher_conn.notifies():
                    backoff = _RECONNECT_BACKOFF_MIN_S
                    for q in list(self._subs.get(notification.channel, ())):
                        try:
                            q.put_nowait(notification)
                        except asyncio.QueueFull:
                            logger.debug(
                                f'Dropping notification on {notification.channel!r}: subscriber queue full'
                            )
            except (OperationalError, InterfaceError, OSError) as exc:
                logger.warning(
                    f'Listener connection lost ({exc}); reconnecting in {backoff:.1f}s'
                )
                await self._close_connection()
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _RECONNECT_BACKOFF_MAX_S)
            except asyncio.CancelledError:
                raise
            except Exception:
                # Unexpected issue: brief pause to avoid a hot loop, then try again.
                logger.exception('Listener dispatcher failed; restarting')
                await self._close_connection()
                await asyncio.sleep(0.5)

    async def listen(self, channel_name: str) -> StoreResult[Queue[Notify]]:
        """Subscribe a fresh queue to *channel_name*.

        LISTEN is issued on the server only for the first local subscriber.
        """
        try:
            async with self._lock:
                await self._ensure_connection()
                if channel_name not in self._listen_channels:
                    # LISTEN must run on the dispatcher connection, which the
                    # notifies() iterator holds while the dispatcher runs.
                    await self._pause_dispatcher()
                    try:
                        assert self._dispatcher_conn is not None
                        await self._dispatcher_conn.execute(
                            sql.SQL('LISTEN {}').format(sql.Identifier(channel_name))
                        )
                        self._listen_channels.add(channel_name)
                    finally:
                        self._start_dispatcher()
                q: Queue[Notify] = asyncio.Queue(maxsize=_SUBSCRIBER_QUEUE_MAXSIZE)
                self._subs[channel_name].add(q)
                return Ok(q)
        except (OperationalError, InterfaceError, OSError) as exc:
            return Err(store_error_from_exception(
                StoreErrorCode.LISTENER_SUBSCRIBE_FAILED, f'LISTEN {channel_name!r}', exc,
            ))

    async def unsubscribe(self, channel_name: str, q: Optional[Queue[Notify]]) -> None:
        """Drop a local queue; UNLISTEN once the channel has no subscribers left."""
        async with self._lock:
            subs = self._subs.get(channel_name)
            if subs is not None and q is not None:
                subs.discard(q)
            if subs:
                return
            self._subs.pop(channel_name, None)
            if channel_name not in self._listen_channels:
                return
            self._listen_channels.discard(channel_name)
            conn = self._dispatcher_conn
            if conn is None or conn.closed:
                return
            # UNLISTEN only affects the connection that issued LISTEN.
            was_running = await self._pause_dispatcher()
            try:
                await conn.execute(
                    sql.SQL('UNLISTEN {}').format(sql.Identifier(channel_name))
                )
            except (OperationalError, InterfaceError) as exc:
                # The channel is no longer routed or re-LISTENed on reconnect.
                logger.warning(f'UNLISTEN {channel_name!r} failed: {exc}')
            finally:
                if was_running and self._listen_channels:
                    self._start_dispatcher()

    async def close(self) -> None:
        """Stop the dispatcher and close the connection. Safe to call more than once."""
        await self._pause_dispatcher()
        await self._close_connection()
        # Release local bookkeeping to avoid process-lifetime growth.
        self._subs.clear()
        self._listen_channels.clear()
