"""Worker configuration dataclass."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from feedworker.core.defaults import DEFAULT_FEED_NAME, DEFAULT_NOTIFY_WINDOW

if TYPE_CHECKING:
    from feedworker.core.models.resilience import WorkerResilienceConfig


@dataclass
class WorkerConfig:
    database_url: str  # SQLAlchemy async URL (postgresql+psycopg://...)
    feed: str = DEFAULT_FEED_NAME
    # Head items announced per subscription; 1 drains a backlog one item at a time.
    notify_window: int = DEFAULT_NOTIFY_WINDOW
    resilience_config: Optional['WorkerResilienceConfig'] = None
