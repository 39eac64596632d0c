"""
Deferred task queue: a transactional outbox drained into Celery.

`enqueue` only writes a TaskOutbox row in the caller's session, so a task
becomes visible to workers when (and only if) the caller commits. The
`dispatch_pending` beat task sends committed, due rows to the workers;
`execute_task` is what a worker runs for each message.

Retries go back through the outbox: a failed attempt returns the row to
`pending` with `available_at` pushed out by the backoff, so a retry survives a
Redis flush the same way a first attempt does. After `task_max_attempts`
failures the row is `dead` and stays visible to operators.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from fizzy.core.config import Settings, get_settings
from fizzy.core.database import get_session_context
from fizzy.core.errors import ExhaustedRetriesError, NotFoundError, TenantMismatchError, ValidationError
from fizzy.core.metrics import metrics
from fizzy.core.tenant import TenantContext
from fizzy.models.base import utcnow
from fizzy.models.outbox import TaskOutbox
from fizzy_shared.schemas.common import TERMINAL_TASK_STATUSES, TaskKind, TaskStatus

log = structlog.get_logger()

# Name of the Celery task that runs outbox rows
RUN_TASK_NAME = "fizzy.run_task"

# send(entry_id, message_id) hands one row to the workers
TaskSender = Callable[[str, str], Any]


@dataclass
class TaskContext:
    """Everything a task handler may touch.

    `session` is committed after the handler returns. Handlers that need
    several independent commits (one per webhook) open their own sessions
    from `session_factory`.
    """

    task_id: uuid.UUID
    kind: str
    payload: dict[str, Any]
    tenant: TenantContext
    attempt: int
    session: AsyncSession
    settings: Settings
    session_factory: Optional[async_sessionmaker] = None
    http: Any = None  # httpx.AsyncClient
    redis: Any = None  # redis.asyncio.Redis


TaskHandler = Callable[[TaskContext], Awaitable[Any]]

_HANDLERS: dict[str, TaskHandler] = {}


def task_handler(kind: TaskKind):
    """Register the coroutine that runs tasks of `kind`."""

    def decorator(fn: TaskHandler) -> TaskHandler:
        _HANDLERS[kind.value] = fn
        return fn

    return decorator


def handler_for(kind: str) -> TaskHandler:
    try:
        return _HANDLERS[kind]
    except KeyError:
        raise ValidationError(f"No handler registered for task kind {kind}") from None


def message_id_for(entry_id: uuid.UUID, dispatch_count: int) -> str:
    """Queue message id for one dispatch of an outbox row."""
    return f"task:{entry_id}:{dispatch_count}"


def compute_backoff(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff for the given (1-based) attempt, capped."""
    return min(cap, base * 2 ** (attempt - 1))


async def enqueue(
    session: AsyncSession,
    task_kind: TaskKind | str,
    payload: dict[str, Any],
    tenant: TenantContext,
    delay_seconds: float = 0,
) -> TaskOutbox:
    """Add an outbox row to the caller's transaction.

    Nothing is sent to Redis here. If the caller rolls back, the task never
    existed.
    """
    try:
        kind = TaskKind(task_kind)
    except ValueError:
        raise ValidationError(f"Unknown task kind: {task_kind}") from None
    try:
        json.dumps(payload)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Task payload is not JSON-serializable: {exc}") from exc

    entry = TaskOutbox(
        account_id=tenant.account_id,
        kind=kind.value,
        payload=payload,
        tenant=tenant.to_payload(),
        available_at=utcnow() + timedelta(seconds=delay_seconds),
    )
    session.add(entry)
    return entry


async def dispatch_pending(
    session: AsyncSession,
    send: TaskSender,
    batch_size: Optional[int] = None,
) -> int:
    """Send committed, due `pending` rows to the workers. Returns the number sent.

    Rows are claimed (marked `enqueued`) and committed before the push so a
    fast worker never sees them as still pending. A push that fails puts its
    row back to `pending` for the next run.
    """
    settings = get_settings()
    now = utcnow()
    result = await session.execute(
        select(TaskOutbox)
        .where(
            TaskOutbox.status == TaskStatus.PENDING.value,
            TaskOutbox.available_at <= now,
        )
        .order_by(TaskOutbox.available_at)
        .limit(batch_size or settings.outbox_batch_size)
        .with_for_update(skip_locked=True)
    )
    entries = result.scalars().all()
    if not entries:
        return 0

    claimed = []
    for entry in entries:
        entry.status = TaskStatus.ENQUEUED.value
        entry.enqueued_at = now
        entry.dispatch_count += 1
        claimed.append((entry.id, entry.dispatch_count))
    await session.commit()

    pushed = 0
    for entry_id, dispatch_count in claimed:
        try:
            result = send(str(entry_id), message_id_for(entry_id, dispatch_count))
            if inspect.isawaitable(result):
                await result
            pushed += 1
        except Exception as exc:
            log.warning("outbox.push_failed", task_id=str(entry_id), error=str(exc))
            await session.execute(
                update(TaskOutbox)
                .where(
                    TaskOutbox.id == entry_id,
                    TaskOutbox.status == TaskStatus.ENQUEUED.value,
                )
                .values(status=TaskStatus.PENDING.value, enqueued_at=None)
            )
            await session.commit()

    metrics.inc("outbox_dispatched_total", pushed)
    log.debug("outbox.dispatched", count=pushed)
    return pushed


async def requeue_stalled(session: AsyncSession, visibility_timeout_seconds: Optional[int] = None) -> int:
    """Return rows stuck in `enqueued` past the visibility timeout to `pending`.

    Covers jobs lost with the queue (Redis flush, worker killed mid-job).
    """
    timeout = visibility_timeout_seconds or get_settings().task_visibility_timeout_seconds
    cutoff = utcnow() - timedelta(seconds=timeout)
    result = await session.execute(
        update(TaskOutbox)
        .where(
            TaskOutbox.status == TaskStatus.ENQUEUED.value,
            TaskOutbox.enqueued_at <= cutoff,
        )
        .values(status=TaskStatus.PENDING.value, enqueued_at=None)
    )
    count = result.rowcount or 0
    if count:
        log.warning("outbox.requeued_stalled", count=count)
        metrics.inc("outbox_requeued_total", count)
    return count


async def retry_dead(session: AsyncSession, tenant: TenantContext, task_id: uuid.UUID) -> TaskOutbox:
    """Operator action: give a dead task a fresh set of attempts."""
    entry = await session.get(TaskOutbox, task_id)
    if entry is None:
        raise NotFoundError(f"Task {task_id} not found")
    tenant.check(entry.account_id, "task")
    if entry.status != TaskStatus.DEAD.value:
        raise ValidationError(f"Only dead tasks can be retried (task is {entry.status})")
    entry.status = TaskStatus.PENDING.value
    entry.attempts = 0
    entry.available_at = utcnow()
    entry.enqueued_at = None
    entry.completed_at = None
    log.info("task.retry_requested", task_id=str(task_id), kind=entry.kind)
    return entry


async def execute_task(
    entry_id: str,
    message_id: Optional[str] = None,
    *,
    session_factory: Optional[async_sessionmaker] = None,
    settings: Optional[Settings] = None,
    http: Any = None,
    redis: Any = None,
) -> str:
    """Run one outbox row. Returns the row's resulting status.

    Only rows claimed by `dispatch_pending` run. Redelivered or stale
    messages (row already finished, back in `pending` waiting out its backoff,
    or claimed again under a newer `message_id`) are no-ops. A handler
    failure is recorded on the row and never raised to the worker.
    """
    settings = settings or get_settings()

    async with get_session_context(session_factory) as session:
        entry = await session.get(TaskOutbox, uuid.UUID(entry_id))
        if entry is None:
            log.warning("task.missing", task_id=entry_id)
            return "missing"
        if entry.status in TERMINAL_TASK_STATUSES:
            log.info("task.skipped_terminal", task_id=entry_id, status=entry.status)
            return entry.status
        if entry.status != TaskStatus.ENQUEUED.value:
            log.info("task.skipped_unclaimed", task_id=entry_id, status=entry.status)
            return entry.status
        if message_id is not None and message_id != message_id_for(entry.id, entry.dispatch_count):
            log.info("task.skipped_stale_message", task_id=entry_id, message_id=message_id)
            return entry.status
        entry.attempts += 1
        kind = entry.kind
        payload = dict(entry.payload)
        attempt = entry.attempts
        tenant_data = dict(entry.tenant)

    bound = log.bind(task_id=entry_id, kind=kind, account_id=tenant_data.get("account_id"), attempt=attempt)

    try:
        tenant = TenantContext.from_payload(tenant_data)
        handler = handler_for(kind)
        async with get_session_context(session_factory) as session:
            ctx = TaskContext(
                task_id=uuid.UUID(entry_id),
                kind=kind,
                payload=payload,
                tenant=tenant,
                attempt=attempt,
                session=session,
                settings=settings,
                session_factory=session_factory,
                http=http,
                redis=redis,
            )
            await asyncio.wait_for(handler(ctx), timeout=settings.task_timeout_seconds)
    except Exception as exc:
        error = f"{type(exc).__name__}: {exc}"
        if isinstance(exc, (ValidationError, TenantMismatchError)) or attempt >= settings.task_max_attempts:
            # Malformed and cross-account tasks go straight to dead
            exhausted = ExhaustedRetriesError(f"Task {kind}", attempt, error)
            await _record_outcome(
                session_factory, entry_id,
                status=TaskStatus.DEAD.value, last_error=exhausted.message,
            )
            bound.error("task.dead", error=exhausted.message)
            metrics.inc("tasks_dead_total")
            return TaskStatus.DEAD.value

        delay = compute_backoff(attempt, settings.task_retry_base_seconds, settings.task_retry_max_seconds)
        await _record_outcome(
            session_factory, entry_id,
            status=TaskStatus.PENDING.value, last_error=error, delay_seconds=delay,
        )
        bound.warning("task.retry_scheduled", error=error, delay_seconds=delay)
        metrics.inc("tasks_retried_total")
        return TaskStatus.PENDING.value

    await _record_outcome(session_factory, entry_id, status=TaskStatus.COMPLETED.value)
    bound.debug("task.completed")
    metrics.inc("tasks_completed_total")
    return TaskStatus.COMPLETED.value


async def _record_outcome(
    session_factory: Optional[async_sessionmaker],
    entry_id: str,
    *,
    status: str,
    last_error: Optional[str] = None,
    delay_seconds: float = 0,
) -> None:
    async with get_session_context(session_factory) as session:
        entry = await session.get(TaskOutbox, uuid.UUID(entry_id))
        if entry is None:
            return
        now = utcnow()
        entry.status = status
        entry.enqueued_at = None
        if last_error is not None:
            entry.last_error = last_error
        if status == TaskStatus.PENDING.value:
            entry.available_at = now + timedelta(seconds=delay_seconds)
        else:
            entry.completed_at = now
