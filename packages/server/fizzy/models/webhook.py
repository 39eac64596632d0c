"""Webhook endpoint and per-attempt delivery records."""

from datetime import datetime
from typing import List, Optional
import uuid

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from .base import UUIDMixin, utcnow


class Webhook(UUIDMixin, SQLModel, table=True):
    __tablename__ = "webhooks"

    account_id: uuid.UUID = Field(foreign_key="accounts.id", nullable=False, index=True)
    name: str = Field(nullable=False)
    url: str = Field(nullable=False)
    secret: str = Field(nullable=False)
    active: bool = Field(default=True, nullable=False)
    # Empty list = every action
    subscribed_actions: List[str] = Field(default_factory=list, sa_type=JSONB, nullable=False)
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )

    def subscribes_to(self, action: str) -> bool:
        return not self.subscribed_actions or action in self.subscribed_actions


class WebhookDelivery(UUIDMixin, SQLModel, table=True):
    """One row per attempt; never updated after insert."""

    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        sa.UniqueConstraint(
            "webhook_id", "event_id", "retry_count", name="uq_webhook_deliveries_attempt"
        ),
    )

    account_id: uuid.UUID = Field(foreign_key="accounts.id", nullable=False, index=True)
    webhook_id: uuid.UUID = Field(foreign_key="webhooks.id", nullable=False, index=True, ondelete="CASCADE")
    event_id: uuid.UUID = Field(foreign_key="events.id", nullable=False, index=True, ondelete="CASCADE")
    payload: dict = Field(default_factory=dict, sa_type=JSONB, nullable=False)
    attempted_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
    delivered_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    response_status: Optional[int] = None
    error: Optional[str] = None
    retry_count: int = Field(default=0, nullable=False)
    state: str = Field(nullable=False)  # succeeded | retrying | failed
