# feedworker/core/worker/buffer.py
"""Single-slot coalescing buffer for feed notifications."""

from __future__ import annotations

from typing import Callable, Optional

from feedworker.core.brokers.base import FeedNotification


class NotificationBuffer:
    """
    Holds at most one pending notification; a new one replaces the old.

    Bursts coalesce to "at least one more item may exist". The worker only
    ever acts on the most recent signal, so strict arrival order is not
    preserved under load. Liveness comes from the store announcing the next
    head item after every removal.
    """

    __slots__ = ('_is_busy', '_pending')

    def __init__(self, is_busy: Callable[[], bool]) -> None:
        self._is_busy = is_busy
        self._pending: Optional[FeedNotification] = None

    @property
    def pending(self) -> Optional[FeedNotification]:
        return self._pending

    def deposit(self, notification: FeedNotification) -> Optional[FeedNotification]:
        """Store `notification`; returns the unconsumed one it replaced, if any."""
        dropped = self._pending
        self._pending = notification
        return dropped

    def take_if_idle(self) -> Optional[FeedNotification]:
        if self._is_busy() or self._pending is None:
            return None
        notification, self._pending = self._pending, None
        return notification

    def restore(self, notification: FeedNotification) -> bool:
        """Put a notification back unless a newer one arrived meanwhile."""
        if self._pending is not None:
            return False
        self._pending = notification
        return True

    def clear(self) -> None:
        self._pending = None
