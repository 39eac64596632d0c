"""
Test configuration and fixtures.

Uses a throwaway SQLite file per test (so separate sessions really are
separate transactions) and mocks Redis and webhook receivers.
"""

from __future__ import annotations

import os

os.environ.setdefault("FIZZY_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("FIZZY_LOG_FORMAT", "text")

from dataclasses import dataclass
from typing import Any, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles
from sqlmodel import SQLModel

import fizzy.models  # noqa: F401  populate metadata
import fizzy.tasks.handlers  # noqa: F401  register task handlers
from fizzy.core.config import Settings
from fizzy.core.metrics import metrics
from fizzy.core.queue import dispatch_pending, execute_task
from fizzy.core.tenant import TenantContext
from fizzy.models.account import Account
from fizzy.models.board import Board
from fizzy.models.card import Card
from fizzy.models.user import User
from fizzy.services.accounts import create_account, create_user
from fizzy.services.boards import create_board
from fizzy.services.cards import create_card
from fizzy_shared.schemas.cards import BoardCreate, CardCreate
from fizzy_shared.schemas.common import Role


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fizzy.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    """Settings with no retry delays, so retries are due immediately."""
    return Settings(
        task_retry_base_seconds=0,
        webhook_retry_base_seconds=0,
        webhook_max_attempts=3,
        task_max_attempts=3,
        task_timeout_seconds=5,
    )


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def mock_redis():
    """Stands in for redis.asyncio.Redis; records publishes."""
    redis_mock = AsyncMock()
    redis_mock.publish = AsyncMock(return_value=1)
    redis_mock.ping = AsyncMock(return_value=True)
    return redis_mock


class WebhookReceiver:
    """httpx MockTransport target that replays scripted status codes."""

    def __init__(self, statuses: Optional[list[int]] = None, error: Optional[Exception] = None):
        self.statuses = list(statuses or [200])
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status, json={"ok": status < 300})


@pytest.fixture
def receiver():
    return WebhookReceiver()


@pytest.fixture
async def http(receiver):
    async with httpx.AsyncClient(transport=httpx.MockTransport(receiver)) as client:
        yield client


class RecordingSender:
    """Stands in for Celery; records the rows handed to the workers."""

    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    def __call__(self, entry_id: str, job_id: str) -> None:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.sent.append((entry_id, job_id))


async def drain_outbox(session_factory, settings, http=None, redis=None, rounds: int = 20) -> list[str]:
    """Dispatch and run due tasks until none are left. Returns task outcomes."""
    outcomes: list[str] = []
    for _ in range(rounds):
        sender = RecordingSender()
        async with session_factory() as session:
            pushed = await dispatch_pending(session, sender)
        if not pushed:
            break
        for entry_id, message_id in sender.sent:
            outcomes.append(
                await execute_task(
                    entry_id,
                    message_id,
                    session_factory=session_factory,
                    settings=settings,
                    http=http,
                    redis=redis,
                )
            )
    return outcomes


@dataclass
class World:
    account: Account
    admin: User
    alice: User
    bob: User
    board: Board
    card: Card

    @property
    def tenant(self) -> TenantContext:
        return TenantContext(self.account.id, self.alice.id)


async def build_world(session: AsyncSession, name: str = "Acme") -> World:
    account = await create_account(session, name)
    admin = await create_user(session, account, "Ada", "ada@example.com", role=Role.ADMIN)
    alice = await create_user(session, account, "Alice", "alice@example.com")
    bob = await create_user(session, account, "Bob", "bob@example.com")
    tenant = TenantContext(account.id, alice.id)
    board = await create_board(session, tenant, BoardCreate(name="Roadmap"), alice)
    card = await create_card(session, tenant, board, CardCreate(title="Ship it"), alice)
    return World(account, admin, alice, bob, board, card)


@pytest.fixture
async def world(db, session_factory, settings, http) -> World:
    """An account with users and a published card, its setup tasks drained."""
    w = await build_world(db)
    await db.commit()
    await drain_outbox(session_factory, settings, http=http, redis=AsyncMock())
    metrics.reset()
    return w


@pytest.fixture
async def other_world(db, session_factory, settings, http) -> World:
    w = await build_world(db, name="Globex")
    await db.commit()
    await drain_outbox(session_factory, settings, http=http, redis=AsyncMock())
    metrics.reset()
    return w
