"""
Task handlers, one per task kind.

Each handler receives a TaskContext carrying the tenant the task was queued
for. Handlers re-read current state instead of trusting what was true when
the task was queued.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

import structlog

from fizzy.core.broadcast import BroadcastDispatcher
from fizzy.core.errors import ValidationError
from fizzy.core.queue import TaskContext, task_handler
from fizzy.models.event import Event
from fizzy.services.notifications import NotificationGenerator
from fizzy.services.webhooks import WebhookRelay
from fizzy_shared.schemas.broadcasts import Instruction
from fizzy_shared.schemas.common import TaskKind

log = structlog.get_logger()


def _uuid_field(payload: dict[str, Any], key: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(payload[key]))
    except (KeyError, ValueError) as exc:
        raise ValidationError(f"Task payload needs a valid {key}") from exc


async def _load_event(ctx: TaskContext) -> Optional[Event]:
    event = await ctx.session.get(Event, _uuid_field(ctx.payload, "event_id"))
    if event is None:
        log.warning("task.event_missing", task_id=str(ctx.task_id), event_id=ctx.payload.get("event_id"))
        return None
    ctx.tenant.check(event.account_id, "event")
    return event


def _relay(ctx: TaskContext) -> WebhookRelay:
    if ctx.http is None:
        raise ValidationError("Webhook tasks need an HTTP client")
    return WebhookRelay(ctx.tenant, ctx.http, session_factory=ctx.session_factory, settings=ctx.settings)


@task_handler(TaskKind.GENERATE_NOTIFICATIONS)
async def generate_notifications(ctx: TaskContext) -> int:
    event = await _load_event(ctx)
    if event is None:
        return 0
    generator = NotificationGenerator(ctx.session, notify_actor=ctx.settings.notify_actor)
    return len(await generator.generate(event))


@task_handler(TaskKind.RELAY_WEBHOOKS)
async def relay_webhooks(ctx: TaskContext) -> int:
    deliveries = await _relay(ctx).relay(_uuid_field(ctx.payload, "event_id"))
    return len(deliveries)


@task_handler(TaskKind.DELIVER_WEBHOOK)
async def deliver_webhook(ctx: TaskContext) -> Optional[str]:
    try:
        retry_count = int(ctx.payload["retry_count"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError("Task payload needs a retry_count") from exc
    delivery = await _relay(ctx).deliver(
        _uuid_field(ctx.payload, "webhook_id"),
        _uuid_field(ctx.payload, "event_id"),
        retry_count=retry_count,
    )
    return delivery.state if delivery else None


@task_handler(TaskKind.BROADCAST)
async def dispatch_broadcast(ctx: TaskContext) -> None:
    try:
        stream = ctx.payload["stream"]
        instruction = Instruction.model_validate(ctx.payload["instruction"])
    except (KeyError, ValueError) as exc:
        raise ValidationError(f"Malformed broadcast task: {exc}") from exc
    if ctx.redis is None:
        raise ValidationError("Broadcast tasks need a Redis connection")
    await BroadcastDispatcher(ctx.redis).broadcast(ctx.tenant, stream, instruction)
