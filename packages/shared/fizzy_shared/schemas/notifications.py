"""Notification inbox schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from .events import EventRead


class NotificationRead(BaseModel):
    id: UUID
    recipient_id: UUID
    event: EventRead
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    created_at: datetime
