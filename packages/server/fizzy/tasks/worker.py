"""
Celery worker: runs outbox tasks and the recurring jobs.

    celery -A fizzy.tasks.worker worker
    celery -A fizzy.tasks.worker beat
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import redis.asyncio as redis
import structlog
from celery import Celery, signals
from celery.schedules import crontab
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from fizzy.core.config import get_settings
from fizzy.core.database import get_session_context
from fizzy.core.logging import configure_logging
from fizzy.core.queue import RUN_TASK_NAME, dispatch_pending, execute_task, requeue_stalled
from fizzy.services.entropy import auto_close_stale_cards
from fizzy.services.webhooks import USER_AGENT
import fizzy.tasks.handlers  # noqa: F401  registers the task handlers

log = structlog.get_logger()
settings = get_settings()

celery_app = Celery("fizzy", broker=settings.redis_url)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_ignore_result=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.worker_max_jobs,
    # Handlers are cancelled at task_timeout_seconds; this only catches a wedged worker
    task_time_limit=settings.task_timeout_seconds + 30,
)

# Periodic tasks (beat). Requires worker with -B or a separate beat service.
celery_app.conf.beat_schedule = {
    "dispatch-outbox": {
        "task": "fizzy.dispatch_outbox",
        "schedule": float(settings.outbox_poll_seconds),
        "options": {"expires": float(settings.outbox_poll_seconds)},
    },
    "entropy-sweep-daily": {
        "task": "fizzy.entropy_sweep",
        "schedule": crontab(hour=settings.entropy_sweep_hour, minute=0),
    },
}


@signals.worker_process_init.connect
@signals.beat_init.connect
def _configure_logging(**kwargs):
    configure_logging(settings.log_level, settings.log_format)


@signals.worker_ready.connect
def _worker_ready(**kwargs):
    log.info("worker.started", concurrency=settings.worker_max_jobs)


@asynccontextmanager
async def worker_resources():
    """Engine, HTTP client and Redis client for one task run.

    Every Celery task runs in its own event loop, so nothing here outlives it.
    """
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    http = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.webhook_timeout_seconds),
        headers={"User-Agent": USER_AGENT},
    )
    redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        yield session_factory, http, redis_client
    finally:
        await http.aclose()
        await redis_client.aclose()
        await engine.dispose()


async def _run_task(entry_id: str, message_id: Optional[str] = None) -> str:
    async with worker_resources() as (session_factory, http, redis_client):
        return await execute_task(
            entry_id,
            message_id,
            session_factory=session_factory,
            settings=settings,
            http=http,
            redis=redis_client,
        )


@celery_app.task(name=RUN_TASK_NAME)
def run_task(entry_id: str, message_id: Optional[str] = None) -> str:
    """Run one outbox row (sent by dispatch_outbox)."""
    return asyncio.run(_run_task(entry_id, message_id))


def send_to_workers(entry_id: str, job_id: str) -> None:
    run_task.apply_async(args=[entry_id, job_id], task_id=job_id)


async def _dispatch_outbox() -> int:
    async with worker_resources() as (session_factory, _, _):
        async with get_session_context(session_factory) as session:
            await requeue_stalled(session)
            await session.commit()
            return await dispatch_pending(session, send_to_workers)


@celery_app.task(name="fizzy.dispatch_outbox")
def dispatch_outbox() -> int:
    """Requeue stalled rows, then send due rows to the workers."""
    return asyncio.run(_dispatch_outbox())


async def _entropy_sweep() -> int:
    async with worker_resources() as (session_factory, _, _):
        return await auto_close_stale_cards(session_factory)


@celery_app.task(name="fizzy.entropy_sweep")
def entropy_sweep() -> int:
    """Auto-close stale cards. Returns the number closed."""
    return asyncio.run(_entropy_sweep())
