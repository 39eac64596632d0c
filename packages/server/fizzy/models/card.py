"""Card and closure models."""

from datetime import datetime
from typing import Any, ClassVar
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel, select

from fizzy.core.subjects import SubjectRef, register_subject

from .assignments import CardAssignment, CardWatch
from .base import TimestampMixin, UUIDMixin, utcnow


@register_subject
class Card(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "cards"

    SUBJECT_TYPE: ClassVar[str] = "card"

    account_id: uuid.UUID = Field(foreign_key="accounts.id", nullable=False, index=True)
    board_id: uuid.UUID = Field(foreign_key="boards.id", nullable=False, index=True)
    creator_id: uuid.UUID = Field(foreign_key="users.id", nullable=False)
    title: str = Field(nullable=False)
    status: str = Field(nullable=False, default="published")  # drafted | published
    last_active_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        index=True,
        sa_type=sa.DateTime(timezone=True),
    )

    @property
    def drafted(self) -> bool:
        return self.status == "drafted"

    def touch(self) -> None:
        self.last_active_at = utcnow()

    def subject_ref(self) -> SubjectRef:
        return SubjectRef(self.SUBJECT_TYPE, self.id)

    def snapshot(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "status": self.status,
            "board_id": str(self.board_id),
        }

    async def watcher_ids(self, session) -> set[uuid.UUID]:
        result = await session.execute(
            select(CardWatch.user_id).where(CardWatch.card_id == self.id)
        )
        return set(result.scalars().all())

    async def assignee_ids(self, session) -> set[uuid.UUID]:
        result = await session.execute(
            select(CardAssignment.user_id).where(CardAssignment.card_id == self.id)
        )
        return set(result.scalars().all())

    def broadcast_stream(self) -> tuple[str, ...]:
        return (str(self.board_id), "cards")

    def dom_id(self) -> str:
        return f"card_{self.id}"


class Closure(UUIDMixin, SQLModel, table=True):
    __tablename__ = "closures"

    card_id: uuid.UUID = Field(
        foreign_key="cards.id", nullable=False, unique=True, ondelete="CASCADE"
    )
    user_id: uuid.UUID = Field(foreign_key="users.id", nullable=False)
    reason: str = Field(nullable=False, default="Completed")
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
