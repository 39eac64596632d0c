"""Notification model (one per recipient per event)."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import UUIDMixin, utcnow


class Notification(UUIDMixin, SQLModel, table=True):
    __tablename__ = "notifications"
    __table_args__ = (
        sa.UniqueConstraint("event_id", "recipient_id", name="uq_notifications_event_recipient"),
        sa.Index("ix_notifications_subject", "subject_type", "subject_id"),
    )

    account_id: uuid.UUID = Field(foreign_key="accounts.id", nullable=False, index=True)
    recipient_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)
    event_id: uuid.UUID = Field(foreign_key="events.id", nullable=False, ondelete="CASCADE")
    subject_type: str = Field(nullable=False)
    subject_id: uuid.UUID = Field(nullable=False)
    delivered_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    read_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
