"""Event model (account-scoped, append-only)."""

from datetime import datetime
import uuid

import sqlalchemy as sa
from sqlalchemy import event as sa_event
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from fizzy.core.errors import PersistenceError
from fizzy.core.ids import uuid7
from fizzy.core.subjects import SubjectRef

from .base import utcnow


class Event(SQLModel, table=True):
    __tablename__ = "events"
    __table_args__ = (
        sa.Index("ix_events_subject", "subject_type", "subject_id", "id"),
    )

    id: uuid.UUID = Field(default_factory=uuid7, primary_key=True)
    account_id: uuid.UUID = Field(foreign_key="accounts.id", nullable=False, index=True)
    subject_type: str = Field(nullable=False)  # board | card | comment
    subject_id: uuid.UUID = Field(nullable=False)
    actor_id: uuid.UUID = Field(foreign_key="users.id", nullable=False)
    action: str = Field(nullable=False)  # e.g. closed, assigned, moved
    particulars: dict = Field(default_factory=dict, sa_type=JSONB, nullable=False)
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )

    def subject_ref(self) -> SubjectRef:
        return SubjectRef(self.subject_type, self.subject_id)


@sa_event.listens_for(Event, "before_update")
def _reject_event_update(mapper, connection, target):
    raise PersistenceError(f"Event {target.id} is immutable")
