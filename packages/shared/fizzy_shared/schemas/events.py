"""Event schemas: action particulars, API representation and webhook payload."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Type
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .common import ActorType, EventAction


# ---------------------------------------------------------------------------
# Particulars (action-specific payloads)
# ---------------------------------------------------------------------------

class Particulars(BaseModel):
    """Free-form particulars. Any action may mention users."""
    model_config = ConfigDict(extra="allow")

    mentioned_user_ids: List[UUID] = Field(default_factory=list)


class AssignmentParticulars(Particulars):
    assignee_ids: List[UUID] = Field(min_length=1)


class MoveParticulars(Particulars):
    from_board_id: UUID
    to_board_id: UUID


class CommentParticulars(Particulars):
    comment_id: UUID


PARTICULARS_BY_ACTION: Dict[EventAction, Type[Particulars]] = {
    EventAction.ASSIGNED: AssignmentParticulars,
    EventAction.UNASSIGNED: AssignmentParticulars,
    EventAction.MOVED: MoveParticulars,
    EventAction.COMMENTED: CommentParticulars,
}


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

class SubjectRead(BaseModel):
    type: str
    id: UUID


class EventRead(BaseModel):
    id: UUID
    account_id: UUID
    subject: SubjectRead
    actor_id: UUID
    action: EventAction
    particulars: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


# ---------------------------------------------------------------------------
# Outbound webhook body
# ---------------------------------------------------------------------------

class WebhookActor(BaseModel):
    id: UUID
    name: str
    type: ActorType


class WebhookSubject(BaseModel):
    type: str
    id: UUID
    snapshot: Dict[str, Any] = Field(default_factory=dict)


class WebhookPayload(BaseModel):
    """Body POSTed to webhook targets. `id` is the event id, stable across retries."""
    id: UUID
    action: EventAction
    account_id: UUID
    created_at: datetime
    actor: Optional[WebhookActor] = None
    subject: WebhookSubject
    particulars: Dict[str, Any] = Field(default_factory=dict)
