"""
Notification service: recipient fan-out for events plus the user's inbox.

Handles:
- Turning a stored event into one Notification per recipient (idempotent)
- Inbox listing, marking read, dismissing
- Cleanup when a subject is destroyed
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import Any

import structlog
from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from fizzy.core.database import insert_ignoring_conflicts
from fizzy.core.errors import NotFoundError
from fizzy.core.ids import uuid7
from fizzy.core.metrics import metrics
from fizzy.core.subjects import Assignable, SubjectRef, Watchable, resolve_subject
from fizzy.core.tenant import TenantContext
from fizzy.models.base import utcnow
from fizzy.models.event import Event
from fizzy.models.notification import Notification
from fizzy.models.user import User
from fizzy_shared.schemas.common import EventAction, Role

log = structlog.get_logger()

ASSIGNMENT_ACTIONS = {EventAction.ASSIGNED.value, EventAction.UNASSIGNED.value}


def _uuids(values: Any) -> set[uuid.UUID]:
    if not values:
        return set()
    return {v if isinstance(v, uuid.UUID) else uuid.UUID(str(v)) for v in values}


class NotificationGenerator:
    """Derives the recipients of an event and records their notifications."""

    def __init__(self, session: AsyncSession, notify_actor: bool = False):
        self.session = session
        self.notify_actor = notify_actor

    async def generate(self, event: Event) -> list[Notification]:
        """Create missing notifications for `event` and return all of them.

        Safe to run any number of times: the (event_id, recipient_id)
        constraint absorbs duplicates, so a redelivered task returns the same
        set as the first run.
        """
        subject = await resolve_subject(self.session, event.subject_ref())
        if subject is None:
            log.info("notifications.subject_gone", event_id=str(event.id), subject_type=event.subject_type)
            return []

        recipients = await self.recipients_for(event, subject)
        now = utcnow()
        rows = [
            {
                "id": uuid7(),
                "account_id": event.account_id,
                "recipient_id": recipient_id,
                "event_id": event.id,
                "subject_type": event.subject_type,
                "subject_id": event.subject_id,
                "created_at": now,
            }
            for recipient_id in sorted(recipients)
        ]
        inserted = await insert_ignoring_conflicts(
            self.session, Notification, rows, conflict_columns=("event_id", "recipient_id")
        )

        result = await self.session.execute(
            select(Notification)
            .where(Notification.event_id == event.id)
            .order_by(Notification.recipient_id)
        )
        notifications = list(result.scalars().all())
        metrics.inc("notifications_generated_total", inserted)
        log.info(
            "notifications.generated",
            event_id=str(event.id),
            action=event.action,
            recipients=len(notifications),
            inserted=inserted,
        )
        return notifications

    async def recipients_for(self, event: Event, subject: Any) -> set[uuid.UUID]:
        candidates: set[uuid.UUID] = set()
        if isinstance(subject, Watchable):
            candidates |= await subject.watcher_ids(self.session)
        if isinstance(subject, Assignable):
            candidates |= await subject.assignee_ids(self.session)

        particulars = event.particulars or {}
        candidates |= _uuids(particulars.get("mentioned_user_ids"))
        if event.action in ASSIGNMENT_ACTIONS:
            # Includes users just unassigned, who are no longer assignees
            candidates |= _uuids(particulars.get("assignee_ids"))

        if not self.notify_actor:
            candidates.discard(event.actor_id)
        if not candidates:
            return set()

        # Only real users of the same account, whatever the particulars say
        result = await self.session.execute(
            select(User.id).where(
                User.id.in_(candidates),
                User.account_id == event.account_id,
                User.role != Role.SYSTEM.value,
            )
        )
        return set(result.scalars().all())


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------


async def list_notifications(
    session: AsyncSession,
    tenant: TenantContext,
    recipient_id: uuid.UUID,
    unread_only: bool = False,
    limit: int = 50,
) -> list[tuple[Notification, Event]]:
    stmt = (
        select(Notification, Event)
        .join(Event, Event.id == Notification.event_id)
        .where(
            Notification.account_id == tenant.account_id,
            Notification.recipient_id == recipient_id,
        )
        .order_by(Notification.id.desc())
        .limit(limit)
    )
    if unread_only:
        stmt = stmt.where(Notification.read_at.is_(None))
    result = await session.execute(stmt)
    return [(n, e) for n, e in result.all()]


async def get_notification_for(
    session: AsyncSession,
    tenant: TenantContext,
    notification_id: uuid.UUID,
    recipient_id: uuid.UUID,
) -> Notification:
    notification = await session.get(Notification, notification_id)
    if notification is None or notification.recipient_id != recipient_id:
        raise NotFoundError(f"Notification {notification_id} not found")
    tenant.check(notification.account_id, "notification")
    return notification


async def mark_read(session: AsyncSession, notification: Notification) -> Notification:
    if notification.read_at is None:
        notification.read_at = utcnow()
        session.add(notification)
        await session.flush()
    return notification


async def mark_delivered(session: AsyncSession, notifications: Iterable[Notification]) -> None:
    now = utcnow()
    for notification in notifications:
        if notification.delivered_at is None:
            notification.delivered_at = now
            session.add(notification)
    await session.flush()


async def dismiss(session: AsyncSession, notification: Notification) -> None:
    await session.delete(notification)
    await session.flush()


async def delete_for_subject(session: AsyncSession, ref: SubjectRef) -> int:
    """Remove every notification about a destroyed subject."""
    result = await session.execute(
        delete(Notification).where(
            Notification.subject_type == ref.type,
            Notification.subject_id == ref.id,
        )
    )
    return result.rowcount or 0


async def unread_count(session: AsyncSession, recipient_id: uuid.UUID) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(Notification)
        .where(Notification.recipient_id == recipient_id, Notification.read_at.is_(None))
    )
    return result.scalar_one()

