# feedworker/core/worker/events.py
"""Lifecycle events a worker reports, and the channel that delivers them."""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable

from feedworker.core.logging import get_logger

logger = get_logger('events')


class WorkerEvent(str, Enum):
    """
    Event kinds and the arguments listeners receive:

    - START(job): about to execute
    - SUCCESS(job) / FAILURE(job, error): handler outcome
    - FINISH(job): always after SUCCESS or FAILURE
    - IDLE(): the backlog drained and no job is in flight
    - ERROR(error): a store-level fault (StoreOperationError)
    """

    START = 'start'
    SUCCESS = 'success'
    FAILURE = 'failure'
    FINISH = 'finish'
    IDLE = 'idle'
    ERROR = 'error'


type Listener = Callable[..., Any]


class _Once:
    __slots__ = ('channel', 'event', 'listener')

    def __init__(self, channel: NotificationChannel, event: WorkerEvent, listener: Listener):
        self.channel = channel
        self.event = event
        self.listener = listener

    def __call__(self, *args: Any) -> Any:
        self.channel.off(self.event, self)
        return self.listener(*args)


class NotificationChannel:
    """
    Ordered, synchronous fan-out of worker events.

    Listeners run in registration order over a snapshot taken at emit time,
    so (un)registering from inside a listener affects the next emit only.
    A listener that raises is logged and skipped over.
    """

    def __init__(self) -> None:
        self._listeners: dict[WorkerEvent, list[Listener]] = {}

    def on(self, event: WorkerEvent | str, listener: Listener) -> NotificationChannel:
        self._listeners.setdefault(WorkerEvent(event), []).append(listener)
        return self

    def once(self, event: WorkerEvent | str, listener: Listener) -> NotificationChannel:
        kind = WorkerEvent(event)
        return self.on(kind, _Once(self, kind, listener))

    def off(self, event: WorkerEvent | str, listener: Listener) -> NotificationChannel:
        """Remove the first registration of `listener` (direct or via once)."""
        listeners = self._listeners.get(WorkerEvent(event))
        if not listeners:
            return self
        for index, registered in enumerate(listeners):
            if registered is listener or (
                isinstance(registered, _Once) and registered.listener is listener
            ):
                del listeners[index]
                break
        return self

    def listener_count(self, event: WorkerEvent | str) -> int:
        return len(self._listeners.get(WorkerEvent(event), ()))

    def emit(self, event: WorkerEvent | str, *args: Any) -> int:
        """Deliver `event` to every listener; returns how many were called."""
        kind = WorkerEvent(event)
        snapshot = tuple(self._listeners.get(kind, ()))
        if not snapshot:
            if kind is WorkerEvent.ERROR:
                logger.error(f'Unhandled worker error event: {args[0] if args else None}')
            return 0

        for listener in snapshot:
            try:
                listener(*args)
            except Exception:
                logger.exception(f'Listener {listener!r} for {kind.value!r} raised')
        return len(snapshot)
