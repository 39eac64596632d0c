"""Card join tables: assignees and watchers."""

from datetime import datetime
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import utcnow


class CardAssignment(SQLModel, table=True):
    __tablename__ = "card_assignments"

    card_id: uuid.UUID = Field(foreign_key="cards.id", primary_key=True, ondelete="CASCADE")
    user_id: uuid.UUID = Field(foreign_key="users.id", primary_key=True)
    assigned_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )


class CardWatch(SQLModel, table=True):
    __tablename__ = "card_watches"

    card_id: uuid.UUID = Field(foreign_key="cards.id", primary_key=True, ondelete="CASCADE")
    user_id: uuid.UUID = Field(foreign_key="users.id", primary_key=True)
