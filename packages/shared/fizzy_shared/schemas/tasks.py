"""Operator view of deferred tasks."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .common import TaskKind, TaskStatus


class TaskRead(BaseModel):
    id: UUID
    account_id: UUID
    kind: TaskKind
    status: TaskStatus
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempts: int
    last_error: Optional[str] = None
    available_at: datetime
    created_at: datetime
    completed_at: Optional[datetime] = None
