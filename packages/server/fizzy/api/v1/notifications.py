"""
Notification inbox endpoints for the authenticated member.
"""

from __future__ import annotations

import uuid
from typing import List

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from fizzy.core.auth import AuthenticatedMember, require_member
from fizzy.core.database import get_session
from fizzy.core.events import event_read
from fizzy.models.event import Event
from fizzy.models.notification import Notification
from fizzy.services import notifications as inbox
from fizzy_shared.schemas.notifications import NotificationRead

router = APIRouter()


def _notification_read(notification: Notification, event: Event) -> NotificationRead:
    return NotificationRead(
        id=notification.id,
        recipient_id=notification.recipient_id,
        event=event_read(event),
        delivered_at=notification.delivered_at,
        read_at=notification.read_at,
        created_at=notification.created_at,
    )


@router.get("/", response_model=List[NotificationRead])
async def list_notifications_endpoint(
    unread: bool = False,
    limit: int = Query(50, ge=1, le=200),
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    """The member's notifications, newest first. Listing marks them delivered."""
    rows = await inbox.list_notifications(
        session, auth.tenant, auth.user_id, unread_only=unread, limit=limit
    )
    await inbox.mark_delivered(session, [n for n, _ in rows])
    return [_notification_read(n, e) for n, e in rows]


@router.get("/unread_count")
async def unread_count_endpoint(
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    return {"unread": await inbox.unread_count(session, auth.user_id)}


@router.post("/{notification_id}/read", response_model=NotificationRead)
async def mark_read_endpoint(
    notification_id: uuid.UUID,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    notification = await inbox.get_notification_for(session, auth.tenant, notification_id, auth.user_id)
    notification = await inbox.mark_read(session, notification)
    event = await session.get(Event, notification.event_id)
    return _notification_read(notification, event)


@router.delete("/{notification_id}", status_code=204)
async def dismiss_endpoint(
    notification_id: uuid.UUID,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    notification = await inbox.get_notification_for(session, auth.tenant, notification_id, auth.user_id)
    await inbox.dismiss(session, notification)
    return Response(status_code=204)
