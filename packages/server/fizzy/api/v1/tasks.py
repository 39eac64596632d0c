"""
Operator view of deferred tasks (admins only).

- GET / lists tasks, optionally by status (e.g. ?status=dead)
- POST /{task_id}/retry gives a dead task a fresh set of attempts
"""

from __future__ import annotations

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from fizzy.core.auth import AuthenticatedMember, require_admin
from fizzy.core.database import get_session
from fizzy.core.queue import retry_dead
from fizzy.models.outbox import TaskOutbox
from fizzy_shared.schemas.common import TaskKind, TaskStatus
from fizzy_shared.schemas.tasks import TaskRead

router = APIRouter()


def _task_read(entry: TaskOutbox) -> TaskRead:
    return TaskRead(
        id=entry.id,
        account_id=entry.account_id,
        kind=entry.kind,
        status=entry.status,
        payload=entry.payload or {},
        attempts=entry.attempts,
        last_error=entry.last_error,
        available_at=entry.available_at,
        created_at=entry.created_at,
        completed_at=entry.completed_at,
    )


@router.get("/", response_model=List[TaskRead])
async def list_tasks_endpoint(
    status: Optional[TaskStatus] = None,
    kind: Optional[TaskKind] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    auth: AuthenticatedMember = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    stmt = select(TaskOutbox).where(TaskOutbox.account_id == auth.account_id)
    if status:
        stmt = stmt.where(TaskOutbox.status == status.value)
    if kind:
        stmt = stmt.where(TaskOutbox.kind == kind.value)
    stmt = stmt.order_by(TaskOutbox.id.desc()).offset((page - 1) * per_page).limit(per_page)
    result = await session.execute(stmt)
    return [_task_read(t) for t in result.scalars().all()]


@router.post("/{task_id}/retry", response_model=TaskRead)
async def retry_task_endpoint(
    task_id: uuid.UUID,
    auth: AuthenticatedMember = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    entry = await retry_dead(session, auth.tenant, task_id)
    await session.flush()
    return _task_read(entry)
