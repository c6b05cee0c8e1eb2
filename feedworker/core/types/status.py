# core/types/status.py
"""
Worker lifecycle states.
This module should not import from other application modules.
"""

from enum import Enum


class WorkerState(Enum):
    """Observable state of a single worker"""

    STOPPED = 'stopped'  # Not subscribed to the feed and no job in flight.

    IDLE = 'idle'  # Subscribed, waiting for a notification.

    BUSY = 'busy'  # Claiming or executing exactly one job.
