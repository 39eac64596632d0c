"""Board, card and comment schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, List, Optional
from uuid import UUID

from pydantic import AfterValidator, BaseModel, Field

from .common import AUTO_CLOSE_PERIOD_OPTIONS, CardStatus


def _check_auto_close_period(value: Optional[int]) -> Optional[int]:
    if value not in AUTO_CLOSE_PERIOD_OPTIONS:
        raise ValueError(f"auto_close_period_days must be one of {AUTO_CLOSE_PERIOD_OPTIONS}")
    return value


AutoClosePeriod = Annotated[Optional[int], AfterValidator(_check_auto_close_period)]


# ---------------------------------------------------------------------------
# Boards
# ---------------------------------------------------------------------------

class BoardCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    auto_close_period_days: AutoClosePeriod = 30


class BoardUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    auto_close_period_days: AutoClosePeriod = None


class BoardRead(BaseModel):
    id: UUID
    account_id: UUID
    name: str
    creator_id: UUID
    auto_close_period_days: Optional[int] = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Cards
# ---------------------------------------------------------------------------

class CardCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    status: CardStatus = CardStatus.PUBLISHED


class CardUpdate(BaseModel):
    title: str = Field(min_length=1, max_length=500)


class CardClose(BaseModel):
    reason: str = "Completed"


class CardAssign(BaseModel):
    user_id: UUID


class CardMove(BaseModel):
    board_id: UUID


class CardRead(BaseModel):
    id: UUID
    account_id: UUID
    board_id: UUID
    creator_id: UUID
    title: str
    status: CardStatus
    closed: bool = False
    closed_at: Optional[datetime] = None
    closed_by: Optional[UUID] = None
    auto_close_at: Optional[datetime] = None
    assignee_ids: List[UUID] = Field(default_factory=list)
    last_active_at: datetime
    created_at: datetime


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------

class CommentCreate(BaseModel):
    body: str = Field(min_length=1)
    mentioned_user_ids: List[UUID] = Field(default_factory=list)


class CommentRead(BaseModel):
    id: UUID
    card_id: UUID
    author_id: UUID
    body: str
    created_at: datetime
