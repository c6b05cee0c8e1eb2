from __future__ import annotations
from datetime import datetime
from typing import Any
from sqlalchemy import DateTime, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class FeedItemModel(Base):
    """
    One claimable item of a feed.

    - feed: str # feed name, also the suffix of the NOTIFY channel
    - key: str # time-ordered unique key (see make_item_key); becomes the job id when the value has none
    - value: Any # JSON document, usually {"payload": ..., "identifier": ...}
    - created_at: datetime # when the item was pushed
    - updated_at: datetime # last transactional write
    """

    __tablename__ = 'feedworker_items'

    feed: Mapped[str] = mapped_column(String(48), primary_key=True)
    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[Any] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
