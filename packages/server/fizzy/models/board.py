"""Board model (account-scoped)."""

from typing import Any, ClassVar, Optional
import uuid

from sqlmodel import Field, SQLModel

from fizzy.core.subjects import SubjectRef, register_subject

from .base import TimestampMixin, UUIDMixin

DEFAULT_AUTO_CLOSE_PERIOD_DAYS = 30


@register_subject
class Board(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "boards"

    SUBJECT_TYPE: ClassVar[str] = "board"

    account_id: uuid.UUID = Field(foreign_key="accounts.id", nullable=False, index=True)
    name: str = Field(nullable=False)
    creator_id: uuid.UUID = Field(foreign_key="users.id", nullable=False)
    # None = cards on this board never auto-close
    auto_close_period_days: Optional[int] = Field(
        default=DEFAULT_AUTO_CLOSE_PERIOD_DAYS, index=True
    )

    @property
    def auto_closing(self) -> bool:
        return self.auto_close_period_days is not None

    def subject_ref(self) -> SubjectRef:
        return SubjectRef(self.SUBJECT_TYPE, self.id)

    def snapshot(self) -> dict[str, Any]:
        return {"name": self.name, "auto_close_period_days": self.auto_close_period_days}

    def broadcast_stream(self) -> tuple[str, ...]:
        return (str(self.id), "board")

    def dom_id(self) -> str:
        return f"board_{self.id}"
