"""Comment model."""

from datetime import datetime
from typing import Any, ClassVar
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel, select

from fizzy.core.subjects import SubjectRef, register_subject

from .assignments import CardWatch
from .base import UUIDMixin, utcnow


@register_subject
class Comment(UUIDMixin, SQLModel, table=True):
    __tablename__ = "comments"

    SUBJECT_TYPE: ClassVar[str] = "comment"

    account_id: uuid.UUID = Field(foreign_key="accounts.id", nullable=False, index=True)
    card_id: uuid.UUID = Field(foreign_key="cards.id", nullable=False, index=True, ondelete="CASCADE")
    author_id: uuid.UUID = Field(foreign_key="users.id", nullable=False)
    body: str = Field(nullable=False)
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )

    def subject_ref(self) -> SubjectRef:
        return SubjectRef(self.SUBJECT_TYPE, self.id)

    def snapshot(self) -> dict[str, Any]:
        return {"card_id": str(self.card_id), "body": self.body}

    async def watcher_ids(self, session) -> set[uuid.UUID]:
        # Commenting on a card notifies the card's watchers
        result = await session.execute(
            select(CardWatch.user_id).where(CardWatch.card_id == self.card_id)
        )
        return set(result.scalars().all())

    def broadcast_stream(self) -> tuple[str, ...]:
        return (str(self.card_id), "comments")

    def dom_id(self) -> str:
        return f"comment_{self.id}"
