"""
Tests for the outbox-backed task queue.

Tests cover:
- Enqueued tasks become visible only when the caller commits
- Dispatch claims due rows and sends them to the workers with per-dispatch message ids
- Failed pushes and stalled jobs return to pending
- Execution: success, scheduled retry, dead after max attempts
- Redelivered, stale and unclaimed messages never run a row early
- Cross-account tasks die without retrying
- Operator retry of dead tasks
"""

import asyncio
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update
from sqlmodel import select

from fizzy.core import queue
from fizzy.core.config import Settings
from fizzy.core.errors import NotFoundError, ValidationError
from fizzy.core.events import events_for
from fizzy.core.metrics import metrics
from fizzy.core.queue import (
    compute_backoff,
    dispatch_pending,
    enqueue,
    execute_task,
    requeue_stalled,
    retry_dead,
)
from fizzy.models.base import utcnow
from fizzy.models.outbox import TaskOutbox
from fizzy_shared.schemas.common import TaskKind, TaskStatus

from conftest import RecordingSender


async def _task(session_factory, task_id) -> TaskOutbox:
    async with session_factory() as session:
        return await session.get(TaskOutbox, task_id)


async def _queue_broadcast(db, world, **kwargs) -> TaskOutbox:
    entry = await enqueue(
        db,
        TaskKind.BROADCAST,
        {"stream": ["x"], "instruction": {"type": "refresh"}},
        world.tenant,
        **kwargs,
    )
    await db.commit()
    return entry


class TestBackoff:
    def test_doubles_per_attempt(self):
        assert [compute_backoff(n, 5, 900) for n in (1, 2, 3, 4)] == [5, 10, 20, 40]

    def test_capped(self):
        assert compute_backoff(20, 5, 900) == 900


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_visible_only_after_commit(self, db, session_factory, world):
        entry = await enqueue(db, TaskKind.BROADCAST, {"stream": ["x"]}, world.tenant)
        await db.flush()
        assert await _task(session_factory, entry.id) is None

        await db.commit()
        stored = await _task(session_factory, entry.id)
        assert stored.status == TaskStatus.PENDING.value
        assert stored.attempts == 0
        assert stored.tenant == world.tenant.to_payload()

    @pytest.mark.asyncio
    async def test_rollback_discards(self, db, session_factory, world):
        entry = await enqueue(db, TaskKind.BROADCAST, {"stream": ["x"]}, world.tenant)
        await db.rollback()
        assert await _task(session_factory, entry.id) is None

    @pytest.mark.asyncio
    async def test_unknown_kind(self, db, world):
        with pytest.raises(ValidationError):
            await enqueue(db, "reticulate.splines", {}, world.tenant)

    @pytest.mark.asyncio
    async def test_payload_must_be_json(self, db, world):
        with pytest.raises(ValidationError):
            await enqueue(db, TaskKind.BROADCAST, {"when": object()}, world.tenant)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_pushes_due_rows(self, db, session_factory, world):
        entry = await _queue_broadcast(db, world)
        sender = RecordingSender()

        async with session_factory() as session:
            assert await dispatch_pending(session, sender) == 1

        assert sender.sent == [(str(entry.id), f"task:{entry.id}:1")]
        stored = await _task(session_factory, entry.id)
        assert stored.status == TaskStatus.ENQUEUED.value
        assert stored.dispatch_count == 1
        assert metrics.get("outbox_dispatched_total") == 1

    @pytest.mark.asyncio
    async def test_delayed_rows_wait(self, db, session_factory, world):
        await _queue_broadcast(db, world, delay_seconds=3600)
        sender = RecordingSender()

        async with session_factory() as session:
            assert await dispatch_pending(session, sender) == 0
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_failed_push_returns_to_pending(self, db, session_factory, world):
        entry = await _queue_broadcast(db, world)

        async with session_factory() as session:
            assert await dispatch_pending(session, RecordingSender(fail=True)) == 0

        stored = await _task(session_factory, entry.id)
        assert stored.status == TaskStatus.PENDING.value
        assert stored.enqueued_at is None

    @pytest.mark.asyncio
    async def test_redispatch_gets_new_job_id(self, db, session_factory, world):
        entry = await _queue_broadcast(db, world)
        async with session_factory() as session:
            await dispatch_pending(session, RecordingSender(fail=True))

        sender = RecordingSender()
        async with session_factory() as session:
            await dispatch_pending(session, sender)
        assert sender.sent[0][1] == f"task:{entry.id}:2"

    @pytest.mark.asyncio
    async def test_async_sender_is_awaited(self, db, session_factory, world):
        entry = await _queue_broadcast(db, world)
        sender = AsyncMock()

        async with session_factory() as session:
            assert await dispatch_pending(session, sender) == 1
        sender.assert_awaited_once_with(str(entry.id), f"task:{entry.id}:1")


class TestRequeueStalled:
    @pytest.mark.asyncio
    async def test_old_enqueued_rows_return(self, db, session_factory, world):
        entry = await _queue_broadcast(db, world)
        async with session_factory() as session:
            await dispatch_pending(session, RecordingSender())
            await session.execute(
                update(TaskOutbox)
                .where(TaskOutbox.id == entry.id)
                .values(enqueued_at=utcnow() - timedelta(hours=1))
            )
            await session.commit()

        async with session_factory() as session:
            assert await requeue_stalled(session, visibility_timeout_seconds=600) == 1
            await session.commit()

        assert (await _task(session_factory, entry.id)).status == TaskStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_recent_enqueued_rows_stay(self, db, session_factory, world):
        entry = await _queue_broadcast(db, world)
        async with session_factory() as session:
            await dispatch_pending(session, RecordingSender())

        async with session_factory() as session:
            assert await requeue_stalled(session, visibility_timeout_seconds=600) == 0

        assert (await _task(session_factory, entry.id)).status == TaskStatus.ENQUEUED.value


async def _claim(session_factory, entry) -> str:
    """Dispatch due rows and return the message id sent for `entry`."""
    sender = RecordingSender()
    async with session_factory() as session:
        await dispatch_pending(session, sender)
    return dict(sender.sent)[str(entry.id)]


async def _run(session_factory, settings, entry, **kwargs) -> str:
    message_id = await _claim(session_factory, entry)
    return await execute_task(
        str(entry.id), message_id, session_factory=session_factory, settings=settings, **kwargs
    )


class TestExecute:
    @pytest.mark.asyncio
    async def test_success_completes(self, db, session_factory, settings, world, mock_redis):
        entry = await _queue_broadcast(db, world)

        status = await _run(session_factory, settings, entry, redis=mock_redis)

        assert status == TaskStatus.COMPLETED.value
        stored = await _task(session_factory, entry.id)
        assert stored.status == TaskStatus.COMPLETED.value
        assert stored.attempts == 1
        assert stored.completed_at is not None
        mock_redis.publish.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self, db, session_factory, world, monkeypatch):
        entry = await _queue_broadcast(db, world)

        async def flaky(ctx):
            raise RuntimeError("boom")

        monkeypatch.setitem(queue._HANDLERS, TaskKind.BROADCAST.value, flaky)
        settings = Settings(task_retry_base_seconds=60, task_max_attempts=3)

        status = await _run(session_factory, settings, entry)

        assert status == TaskStatus.PENDING.value
        stored = await _task(session_factory, entry.id)
        assert stored.status == TaskStatus.PENDING.value
        assert stored.attempts == 1
        assert stored.last_error == "RuntimeError: boom"
        # Not due again until the backoff has passed
        async with session_factory() as session:
            assert await dispatch_pending(session, RecordingSender()) == 0
        assert metrics.get("tasks_retried_total") == 1

    @pytest.mark.asyncio
    async def test_redelivered_message_waits_out_backoff(self, db, session_factory, world, monkeypatch):
        entry = await _queue_broadcast(db, world)
        calls = []

        async def always_fails(ctx):
            calls.append(ctx.attempt)
            raise RuntimeError("boom")

        monkeypatch.setitem(queue._HANDLERS, TaskKind.BROADCAST.value, always_fails)
        settings = Settings(task_retry_base_seconds=600, task_max_attempts=3)

        message_id = await _claim(session_factory, entry)
        statuses = [
            await execute_task(str(entry.id), message_id, session_factory=session_factory, settings=settings)
            for _ in range(3)
        ]
        # Same row, no message id at all
        statuses.append(await execute_task(str(entry.id), session_factory=session_factory, settings=settings))

        assert statuses == [TaskStatus.PENDING.value] * 4
        assert calls == [1]
        stored = await _task(session_factory, entry.id)
        assert stored.status == TaskStatus.PENDING.value
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_stale_message_after_redispatch(self, db, session_factory, settings, world, mock_redis):
        entry = await _queue_broadcast(db, world)
        first = await _claim(session_factory, entry)
        async with session_factory() as session:
            await requeue_stalled(session, visibility_timeout_seconds=-1)
            await session.commit()
        second = await _claim(session_factory, entry)

        stale = await execute_task(
            str(entry.id), first, session_factory=session_factory, settings=settings, redis=mock_redis
        )
        assert stale == TaskStatus.ENQUEUED.value
        mock_redis.publish.assert_not_awaited()

        current = await execute_task(
            str(entry.id), second, session_factory=session_factory, settings=settings, redis=mock_redis
        )
        assert current == TaskStatus.COMPLETED.value
        assert (await _task(session_factory, entry.id)).attempts == 1

    @pytest.mark.asyncio
    async def test_dead_after_max_attempts(self, db, session_factory, settings, world, monkeypatch):
        entry = await _queue_broadcast(db, world)
        calls = []

        async def always_fails(ctx):
            calls.append(ctx.attempt)
            raise RuntimeError("still broken")

        monkeypatch.setitem(queue._HANDLERS, TaskKind.BROADCAST.value, always_fails)

        statuses = [await _run(session_factory, settings, entry) for _ in range(settings.task_max_attempts)]

        assert statuses == [TaskStatus.PENDING.value] * 2 + [TaskStatus.DEAD.value]
        assert calls == [1, 2, 3]
        stored = await _task(session_factory, entry.id)
        assert stored.status == TaskStatus.DEAD.value
        assert "after 3 attempts" in stored.last_error
        assert "still broken" in stored.last_error
        assert metrics.get("tasks_dead_total") == 1

    @pytest.mark.asyncio
    async def test_malformed_task_dies_immediately(self, db, session_factory, settings, world):
        entry = await enqueue(db, TaskKind.BROADCAST, {"instruction": {"type": "refresh"}}, world.tenant)
        await db.commit()

        status = await _run(session_factory, settings, entry)

        assert status == TaskStatus.DEAD.value
        assert (await _task(session_factory, entry.id)).attempts == 1

    @pytest.mark.asyncio
    async def test_other_accounts_event_dies_immediately(self, db, session_factory, settings, world, other_world):
        [foreign_event] = await events_for(db, other_world.card).to_list(limit=1)
        entry = await enqueue(
            db, TaskKind.GENERATE_NOTIFICATIONS, {"event_id": str(foreign_event.id)}, world.tenant
        )
        await db.commit()

        status = await _run(session_factory, settings, entry)

        assert status == TaskStatus.DEAD.value
        stored = await _task(session_factory, entry.id)
        assert stored.attempts == 1
        assert "TenantMismatchError" in stored.last_error
        assert metrics.get("tasks_retried_total") == 0

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, db, session_factory, world, monkeypatch):
        entry = await _queue_broadcast(db, world)

        async def hangs(ctx):
            await asyncio.sleep(10)

        monkeypatch.setitem(queue._HANDLERS, TaskKind.BROADCAST.value, hangs)
        settings = Settings(task_timeout_seconds=0.05, task_retry_base_seconds=0)

        status = await _run(session_factory, settings, entry)

        assert status == TaskStatus.PENDING.value
        assert "TimeoutError" in (await _task(session_factory, entry.id)).last_error

    @pytest.mark.asyncio
    async def test_terminal_rows_are_skipped(self, db, session_factory, settings, world, mock_redis):
        entry = await _queue_broadcast(db, world)
        message_id = await _claim(session_factory, entry)
        await execute_task(
            str(entry.id), message_id, session_factory=session_factory, settings=settings, redis=mock_redis
        )

        # Redelivered message for a completed row
        status = await execute_task(
            str(entry.id), message_id, session_factory=session_factory, settings=settings, redis=mock_redis
        )

        assert status == TaskStatus.COMPLETED.value
        assert mock_redis.publish.await_count == 1
        assert (await _task(session_factory, entry.id)).attempts == 1

    @pytest.mark.asyncio
    async def test_unclaimed_rows_are_skipped(self, db, session_factory, settings, world, mock_redis):
        entry = await _queue_broadcast(db, world)

        status = await execute_task(
            str(entry.id), session_factory=session_factory, settings=settings, redis=mock_redis
        )

        assert status == TaskStatus.PENDING.value
        assert (await _task(session_factory, entry.id)).attempts == 0
        mock_redis.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_row(self, session_factory, settings):
        assert await execute_task(str(uuid.uuid4()), session_factory=session_factory, settings=settings) == "missing"

    @pytest.mark.asyncio
    async def test_handler_sees_queued_tenant(self, db, session_factory, settings, world, monkeypatch):
        entry = await _queue_broadcast(db, world)
        seen = []

        async def record(ctx):
            seen.append(ctx.tenant)

        monkeypatch.setitem(queue._HANDLERS, TaskKind.BROADCAST.value, record)
        await _run(session_factory, settings, entry)

        assert seen == [world.tenant]


class TestRetryDead:
    @pytest.mark.asyncio
    async def test_revives_dead_task(self, db, session_factory, settings, world):
        entry = await enqueue(db, TaskKind.BROADCAST, {}, world.tenant)
        await db.commit()
        await _run(session_factory, settings, entry)

        async with session_factory() as session:
            revived = await retry_dead(session, world.tenant, entry.id)
            await session.commit()

        assert revived.status == TaskStatus.PENDING.value
        assert revived.attempts == 0

    @pytest.mark.asyncio
    async def test_only_dead_tasks(self, db, session_factory, world):
        entry = await _queue_broadcast(db, world)
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await retry_dead(session, world.tenant, entry.id)

    @pytest.mark.asyncio
    async def test_unknown_task(self, session_factory, world):
        async with session_factory() as session:
            with pytest.raises(NotFoundError):
                await retry_dead(session, world.tenant, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_other_accounts_task_hidden(self, db, session_factory, world, other_world):
        entry = await _queue_broadcast(db, world)
        async with session_factory() as session:
            with pytest.raises(NotFoundError):
                await retry_dead(session, other_world.tenant, entry.id)


class TestOutboxListing:
    @pytest.mark.asyncio
    async def test_fixture_setup_drained(self, session_factory, world):
        async with session_factory() as session:
            result = await session.execute(
                select(TaskOutbox).where(TaskOutbox.status != TaskStatus.COMPLETED.value)
            )
            assert result.scalars().all() == []
