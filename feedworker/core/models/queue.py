from __future__ import annotations

import re
from typing import Annotated

from pydantic import BaseModel, Field, field_validator

from feedworker.core.defaults import DEFAULT_FEED_NAME, DEFAULT_NOTIFY_WINDOW
from feedworker.core.errors import ConfigurationError, ErrorCode

# Feed names end up in a NOTIFY channel name (63-byte identifier limit).
_FEED_NAME_RE = re.compile(r'^[a-z][a-z0-9_]{0,47}$')


class QueueConfig(BaseModel):
    feed: str = Field(default=DEFAULT_FEED_NAME, description='Name of the job feed')
    notify_window: Annotated[int, Field(ge=1, le=1_000)] = Field(
        default=DEFAULT_NOTIFY_WINDOW,
        description='How many head items a subscription announces',
    )

    @field_validator('feed')
    def validate_feed(cls, v: str) -> str:
        if not _FEED_NAME_RE.match(v):
            raise ConfigurationError(
                message=f'invalid feed name: {v!r}',
                code=ErrorCode.CONFIG_INVALID_FEED,
                notes=['feed names are used as part of a PostgreSQL channel name'],
                help_text='use lowercase letters, digits and underscores (max 48 chars), starting with a letter',
            )
        return v
