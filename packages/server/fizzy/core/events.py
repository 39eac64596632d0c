"""
Event store: the append-only record of domain actions.

Recording an event also queues its fan-out (notification generation and
webhook relay) in the same transaction, so an event that is rolled back
never reaches anyone, and a committed one always does.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, Optional, Union

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from fizzy.core.errors import PersistenceError, ValidationError
from fizzy.core.metrics import metrics
from fizzy.core.queue import enqueue
from fizzy.core.subjects import EventSource, SubjectRef
from fizzy.core.tenant import TenantContext
from fizzy.models.event import Event
from fizzy.models.user import User
from fizzy_shared.schemas.common import EventAction, TaskKind
from fizzy_shared.schemas.events import PARTICULARS_BY_ACTION, EventRead, Particulars, SubjectRead

log = structlog.get_logger()

FANOUT_TASKS = (TaskKind.GENERATE_NOTIFICATIONS, TaskKind.RELAY_WEBHOOKS)


def validate_particulars(action: EventAction, particulars: Any) -> dict[str, Any]:
    """Check particulars against the action's schema and return storable JSON."""
    if particulars is None:
        particulars = {}
    if not isinstance(particulars, dict):
        raise ValidationError(f"Particulars for {action.value} must be an object")

    model = PARTICULARS_BY_ACTION.get(action, Particulars)
    try:
        parsed = model.model_validate(particulars)
        data = parsed.model_dump(mode="json", exclude_unset=True)
        json.dumps(data)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid particulars for {action.value}: {exc}") from exc
    return data


async def record_event(
    session: AsyncSession,
    tenant: TenantContext,
    subject: EventSource,
    action: Union[EventAction, str],
    actor: User,
    particulars: Optional[dict[str, Any]] = None,
) -> Event:
    """Append an event to the caller's transaction and queue its fan-out.

    Raises ValidationError for an unknown action or bad particulars,
    TenantMismatchError if the subject or actor belongs to another account,
    and PersistenceError if the write fails.
    """
    try:
        action = EventAction(action)
    except ValueError:
        raise ValidationError(f"Unknown event action: {action}") from None
    if not isinstance(subject, EventSource):
        raise ValidationError(f"{type(subject).__name__} cannot be an event subject")

    data = validate_particulars(action, particulars)
    tenant.check(subject.account_id, "subject")
    tenant.check(actor.account_id, "actor")

    ref = subject.subject_ref()
    event = Event(
        account_id=tenant.account_id,
        subject_type=ref.type,
        subject_id=ref.id,
        actor_id=actor.id,
        action=action.value,
        particulars=data,
    )
    try:
        session.add(event)
        for kind in FANOUT_TASKS:
            await enqueue(session, kind, {"event_id": str(event.id)}, tenant)
        await session.flush()
    except SQLAlchemyError as exc:
        log.error("event.persist_failed", action=action.value, subject=ref.type, error=str(exc))
        raise PersistenceError(f"Could not record {action.value} event: {exc}") from exc

    log.info(
        "event.recorded",
        event_id=str(event.id),
        account_id=str(tenant.account_id),
        action=action.value,
        subject_type=ref.type,
        subject_id=str(ref.id),
    )
    metrics.inc("events_recorded_total")
    return event


class EventHistory:
    """Reverse-chronological events of one subject, fetched a page at a time.

    Each `async for` starts again from the newest event.
    """

    def __init__(self, session: AsyncSession, ref: SubjectRef, page_size: int = 50):
        self.session = session
        self.ref = ref
        self.page_size = page_size

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        cursor = None
        while True:
            stmt = (
                select(Event)
                .where(Event.subject_type == self.ref.type, Event.subject_id == self.ref.id)
                .order_by(Event.id.desc())
                .limit(self.page_size)
            )
            if cursor is not None:
                stmt = stmt.where(Event.id < cursor)
            page = (await self.session.execute(stmt)).scalars().all()
            for event in page:
                yield event
            if len(page) < self.page_size:
                return
            cursor = page[-1].id

    async def to_list(self, limit: Optional[int] = None) -> list[Event]:
        events = []
        async for event in self:
            events.append(event)
            if limit is not None and len(events) >= limit:
                break
        return events


def events_for(
    session: AsyncSession,
    subject: Union[EventSource, SubjectRef],
    page_size: int = 50,
) -> EventHistory:
    ref = subject if isinstance(subject, SubjectRef) else subject.subject_ref()
    return EventHistory(session, ref, page_size=page_size)


def event_read(event: Event) -> EventRead:
    return EventRead(
        id=event.id,
        account_id=event.account_id,
        subject=SubjectRead(type=event.subject_type, id=event.subject_id),
        actor_id=event.actor_id,
        action=event.action,
        particulars=event.particulars or {},
        created_at=event.created_at,
    )
