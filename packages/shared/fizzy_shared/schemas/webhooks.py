"""Webhook administration schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, HttpUrl

from .common import DeliveryState, EventAction


class WebhookCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    url: HttpUrl
    subscribed_actions: List[EventAction] = Field(default_factory=list)


class WebhookUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    url: Optional[HttpUrl] = None
    active: Optional[bool] = None
    subscribed_actions: Optional[List[EventAction]] = None


class WebhookRead(BaseModel):
    id: UUID
    account_id: UUID
    name: str
    url: str
    active: bool
    subscribed_actions: List[EventAction] = Field(default_factory=list)
    created_at: datetime


class WebhookCreated(WebhookRead):
    """Returned once on creation; the signing secret is not shown again."""
    secret: str


class WebhookDeliveryRead(BaseModel):
    id: UUID
    webhook_id: UUID
    event_id: UUID
    state: DeliveryState
    retry_count: int
    response_status: Optional[int] = None
    error: Optional[str] = None
    attempted_at: datetime
    delivered_at: Optional[datetime] = None
