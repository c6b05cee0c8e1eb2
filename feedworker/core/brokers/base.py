# feedworker/core/brokers/base.py
"""
Store boundary shared by every feed backend.

A feed is an ordered collection of items, each addressed by an ``ItemRef``
(feed name + key). Stores offer three things to a worker:

  1. ``subscribe``: an ordered stream of ``FeedNotification`` values, one
     per item entering the feed's head window.
  2. ``transact``: an atomic read-propose-commit on a single item. The store
     evaluates ``propose`` against the value present at commit time and
     reports whether the write committed.
  3. ``push``: append a new item (used by producers via ``JobQueue``).

All operations return ``StoreResult`` values instead of raising.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Final, Protocol, Sequence, runtime_checkable

from feedworker.core.brokers.result_types import StoreResult


@dataclass(frozen=True, slots=True)
class ItemRef:
    """Stable reference to one item of a feed."""

    feed: str
    key: str

    def __str__(self) -> str:
        return f'{self.feed}/{self.key}'


@dataclass(frozen=True, slots=True)
class FeedNotification:
    """An item may be claimable at `location`. Not a guarantee it still is."""

    location: ItemRef

    @property
    def key(self) -> str:
        return self.location.key


@dataclass(frozen=True, slots=True)
class TransactionOutcome:
    """Result of a transaction that reached the store.

    committed: whether the proposed write was applied
    value: the item's value after the transaction (None when absent)
    """

    committed: bool
    value: Any


class _Abort:
    __slots__ = ()

    def __repr__(self) -> str:
        return 'ABORT'


# Returned by a propose function to leave the item untouched (committed=False).
ABORT: Final = _Abort()

type ProposeFn = Callable[[Any], Any]
type NotificationCallback = Callable[[FeedNotification], None]


class Subscription(Protocol):
    async def cancel(self) -> None:
        """Stop delivery. Idempotent; no callback fires once this returns."""
        ...


@runtime_checkable
class FeedStore(Protocol):
    async def push(self, feed: str, value: Any) -> StoreResult[ItemRef]: ...

    async def transact(
        self, location: ItemRef, propose: ProposeFn,
    ) -> StoreResult[TransactionOutcome]: ...

    async def subscribe(
        self,
        feed: str,
        callback: NotificationCallback,
        *,
        window: int = 1,
    ) -> StoreResult[Subscription]: ...

    async def close(self) -> None: ...


class HeadWindow:
    """Tracks which keys of a feed's head have already been announced.

    ``advance`` takes the current first-N keys (in feed order) and returns
    the ones that were not in the window last time, preserving order.
    """

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError(f'window size must be >= 1, got {size}')
        self.size = size
        self._announced: set[str] = set()

    def advance(self, head_keys: Sequence[str]) -> list[str]:
        current = list(head_keys[: self.size])
        entering = [key for key in current if key not in self._announced]
        self._announced = set(current)
        return entering


def make_item_key() -> str:
    """Unique key that sorts by creation time (nanoseconds + random suffix)."""
    return f'{time.time_ns():020d}{secrets.token_hex(4)}'
