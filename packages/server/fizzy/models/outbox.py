"""Transactional outbox of deferred tasks."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from .base import UUIDMixin, utcnow


class TaskOutbox(UUIDMixin, SQLModel, table=True):
    __tablename__ = "task_outbox"
    __table_args__ = (
        sa.Index("ix_task_outbox_status_available", "status", "available_at"),
    )

    account_id: uuid.UUID = Field(foreign_key="accounts.id", nullable=False, index=True)
    kind: str = Field(nullable=False)  # e.g. notifications.generate
    payload: dict = Field(default_factory=dict, sa_type=JSONB, nullable=False)
    tenant: dict = Field(default_factory=dict, sa_type=JSONB, nullable=False)
    status: str = Field(nullable=False, default="pending")  # pending | enqueued | completed | dead
    attempts: int = Field(default=0, nullable=False)
    dispatch_count: int = Field(default=0, nullable=False)
    available_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
    enqueued_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    last_error: Optional[str] = None
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
