# feedworker/core/brokers/memory.py
"""
In-process feed store.

Behaves like the PostgreSQL store from a worker's point of view: items are
kept in key order, transactions on the store are atomic, and subscribers
learn about items entering the head window asynchronously (on the next loop
iteration). Useful for tests and for running several workers in one process.
"""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from typing import Any, DefaultDict

from result import Ok

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
from feedworker.core.brokers.result_types import StoreResult
from feedworker.core.logging import get_logger

logger = get_logger('memory')


class MemorySubscription:
    def __init__(
        self,
        store: MemoryFeedStore,
        feed: str,
        callback: NotificationCallback,
        window: int,
    ) -> None:
        self._store = store
        self.feed = feed
        self._callback = callback
        self._window = HeadWindow(window)
        self.active = True

    def refresh(self, head_keys: list[str]) -> None:
        loop = asyncio.get_running_loop()
        for key in self._window.advance(head_keys):
            loop.call_soon(self._deliver, FeedNotification(ItemRef(self.feed, key)))

    def _deliver(self, notification: FeedNotification) -> None:
        # Deliveries queued before cancel() are dropped.
        if self.active:
            self._callback(notification)

    async def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self._store._detach(self)


class MemoryFeedStore:
    """Feed store backed by plain dicts on the running event loop."""

    def __init__(self) -> None:
        # Per feed: key -> value. Keys come from make_item_key (time ordered).
        self._items: DefaultDict[str, dict[str, Any]] = defaultdict(dict)
        self._subs: DefaultDict[str, list[MemorySubscription]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self.transaction_count = 0

    def keys(self, feed: str) -> list[str]:
        return sorted(self._items.get(feed, {}))

    def size(self, feed: str) -> int:
        return len(self._items.get(feed, {}))

    def get(self, location: ItemRef) -> Any:
        return copy.deepcopy(self._items.get(location.feed, {}).get(location.key))

    async def push(self, feed: str, value: Any) -> StoreResult[ItemRef]:
        async with self._lock:
            key = make_item_key()
            self._items[feed][key] = copy.deepcopy(value)
        self._announce(feed)
        return Ok(ItemRef(feed, key))

    async def transact(
        self, location: ItemRef, propose: ProposeFn,
    ) -> StoreResult[TransactionOutcome]:
        async with self._lock:
            # Give concurrent claimers a chance to queue up behind the lock.
            await asyncio.sleep(0)
            self.transaction_count += 1
            items = self._items[location.feed]
            current = copy.deepcopy(items.get(location.key))
            proposed = propose(current)
            if proposed is ABORT:
                return Ok(TransactionOutcome(committed=False, value=current))
            if proposed is None:
                items.pop(location.key, None)
            else:
                items[location.key] = copy.deepcopy(proposed)
        self._announce(location.feed)
        return Ok(TransactionOutcome(committed=True, value=proposed))

    async def subscribe(
        self,
        feed: str,
        callback: NotificationCallback,
        *,
        window: int = 1,
    ) -> StoreResult[MemorySubscription]:
        subscription = MemorySubscription(self, feed, callback, window)
        self._subs[feed].append(subscription)
        subscription.refresh(self.keys(feed))
        logger.debug(f'Subscribed to feed {feed!r} (window={window})')
        return Ok(subscription)

    def _announce(self, feed: str) -> None:
        subs = self._subs.get(feed)
        if not subs:
            return
        head = self.keys(feed)
        for subscription in list(subs):
            subscription.refresh(head)

    def _detach(self, subscription: MemorySubscription) -> None:
        subs = self._subs.get(subscription.feed)
        if subs and subscription in subs:
            subs.remove(subscription)
        if not subs:
            self._subs.pop(subscription.feed, None)

    async def close(self) -> None:
        for subs in list(self._subs.values()):
            for subscription in list(subs):
                await subscription.cancel()
