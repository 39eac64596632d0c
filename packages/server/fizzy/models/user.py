"""User model (account-scoped)."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import UUIDMixin, utcnow


class User(UUIDMixin, SQLModel, table=True):
    __tablename__ = "users"

    account_id: uuid.UUID = Field(foreign_key="accounts.id", nullable=False, index=True)
    name: str = Field(nullable=False)
    email: Optional[str] = Field(default=None, index=True)
    role: str = Field(nullable=False, default="member")  # admin | member | system
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )

    @property
    def is_system(self) -> bool:
        return self.role == "system"
