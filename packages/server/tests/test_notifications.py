"""
Tests for notification generation and the inbox.

Tests cover:
- Recipients: watchers, assignees and mentions, never the actor or system users
- Idempotent generation (redelivered tasks create nothing new)
- Cross-account mentions are ignored
- Inbox: unread filtering, mark read, dismiss
"""

import pytest
from sqlmodel import select

from fizzy.core.errors import NotFoundError
from fizzy.core.events import record_event
from fizzy.core.metrics import metrics
from fizzy.models.notification import Notification
from fizzy.services import notifications
from fizzy.services.accounts import system_user_for
from fizzy.services.cards import (
    add_comment,
    assign_card,
    destroy_card,
    unassign_card,
    unwatch_card,
    watch_card,
)
from fizzy.services.notifications import NotificationGenerator
from fizzy_shared.schemas.common import EventAction

from conftest import drain_outbox


async def _recipients(session_factory, event_id):
    async with session_factory() as session:
        result = await session.execute(
            select(Notification.recipient_id).where(Notification.event_id == event_id)
        )
        return set(result.scalars().all())


class TestRecipients:
    @pytest.mark.asyncio
    async def test_watchers_except_actor(self, db, session_factory, settings, http, world, mock_redis):
        await watch_card(db, world.card, world.bob.id)
        event = await record_event(db, world.tenant, world.card, EventAction.UPDATED, world.alice)
        await db.commit()

        await drain_outbox(session_factory, settings, http=http, redis=mock_redis)

        assert await _recipients(session_factory, event.id) == {world.bob.id}

    @pytest.mark.asyncio
    async def test_assignees_are_notified(self, db, session_factory, settings, http, world, mock_redis):
        await assign_card(db, world.tenant, world.card, world.bob.id, world.alice)
        await db.commit()
        await drain_outbox(session_factory, settings, http=http, redis=mock_redis)

        async with session_factory() as session:
            result = await session.execute(
                select(Notification).where(Notification.recipient_id == world.bob.id)
            )
            assert len(result.scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_unassigned_user_still_hears_about_it(self, db, session_factory, settings, http, world, mock_redis):
        await assign_card(db, world.tenant, world.card, world.bob.id, world.alice)
        await db.commit()
        await drain_outbox(session_factory, settings, http=http, redis=mock_redis)
        # Bob stops watching, then is unassigned
        await unwatch_card(db, world.card, world.bob.id)
        await unassign_card(db, world.tenant, world.card, world.bob.id, world.alice)
        await db.commit()
        await drain_outbox(session_factory, settings, http=http, redis=mock_redis)

        async with session_factory() as session:
            result = await session.execute(
                select(Notification).where(Notification.recipient_id == world.bob.id)
            )
            assert len(result.scalars().all()) == 2

    @pytest.mark.asyncio
    async def test_mentions(self, db, session_factory, settings, http, world, mock_redis):
        await add_comment(db, world.tenant, world.card, "Look @Ada", world.alice, [world.admin.id])
        await db.commit()
        await drain_outbox(session_factory, settings, http=http, redis=mock_redis)

        async with session_factory() as session:
            result = await session.execute(
                select(Notification.recipient_id).where(Notification.account_id == world.account.id)
            )
            assert set(result.scalars().all()) == {world.admin.id}

    @pytest.mark.asyncio
    async def test_cross_account_mentions_ignored(self, db, session_factory, settings, world, other_world):
        event = await record_event(
            db, world.tenant, world.card, EventAction.UPDATED, world.alice,
            {"mentioned_user_ids": [other_world.bob.id]},
        )
        await db.commit()

        async with session_factory() as session:
            created = await NotificationGenerator(session).generate(event)
            await session.commit()

        assert created == []

    @pytest.mark.asyncio
    async def test_system_user_never_notified(self, db, session_factory, world):
        system_user = await system_user_for(db, world.account.id)
        await watch_card(db, world.card, system_user.id)
        event = await record_event(db, world.tenant, world.card, EventAction.UPDATED, world.alice)
        await db.commit()

        async with session_factory() as session:
            created = await NotificationGenerator(session).generate(event)
            await session.commit()

        assert created == []

    @pytest.mark.asyncio
    async def test_notify_actor_option(self, db, session_factory, world):
        event = await record_event(db, world.tenant, world.card, EventAction.UPDATED, world.alice)
        await db.commit()

        async with session_factory() as session:
            created = await NotificationGenerator(session, notify_actor=True).generate(event)
            await session.commit()

        assert [n.recipient_id for n in created] == [world.alice.id]


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_generate_twice(self, db, session_factory, world):
        await watch_card(db, world.card, world.bob.id)
        await watch_card(db, world.card, world.admin.id)
        event = await record_event(db, world.tenant, world.card, EventAction.UPDATED, world.alice)
        await db.commit()

        async with session_factory() as session:
            first = await NotificationGenerator(session).generate(event)
            await session.commit()
        async with session_factory() as session:
            second = await NotificationGenerator(session).generate(event)
            await session.commit()

        assert len(first) == 2
        assert [n.id for n in first] == [n.id for n in second]
        assert await _recipients(session_factory, event.id) == {world.bob.id, world.admin.id}

    @pytest.mark.asyncio
    async def test_redelivery_counts_only_new_rows(self, db, session_factory, world):
        await watch_card(db, world.card, world.bob.id)
        event = await record_event(db, world.tenant, world.card, EventAction.UPDATED, world.alice)
        await db.commit()
        metrics.reset()

        for _ in range(2):
            async with session_factory() as session:
                await NotificationGenerator(session).generate(event)
                await session.commit()

        assert metrics.get("notifications_generated_total") == 1

    @pytest.mark.asyncio
    async def test_vanished_subject(self, db, session_factory, world):
        event = await record_event(db, world.tenant, world.card, EventAction.UPDATED, world.alice)
        await db.commit()

        await destroy_card(db, world.tenant, world.card, world.alice)
        await db.commit()

        async with session_factory() as session:
            assert await NotificationGenerator(session).generate(event) == []


class TestInbox:
    @pytest.mark.asyncio
    async def test_read_and_dismiss(self, db, session_factory, settings, http, world, mock_redis):
        await watch_card(db, world.card, world.bob.id)
        await record_event(db, world.tenant, world.card, EventAction.UPDATED, world.alice)
        await record_event(db, world.tenant, world.card, EventAction.CLOSED, world.alice, {"reason": "done"})
        await db.commit()
        await drain_outbox(session_factory, settings, http=http, redis=mock_redis)

        async with session_factory() as session:
            inbox = await notifications.list_notifications(session, world.tenant, world.bob.id)
            assert sorted(e.action for _, e in inbox) == [EventAction.CLOSED.value, EventAction.UPDATED.value]
            assert await notifications.unread_count(session, world.bob.id) == 2

            newest, _ = inbox[0]
            await notifications.mark_read(session, newest)
            unread = await notifications.list_notifications(session, world.tenant, world.bob.id, unread_only=True)
            assert len(unread) == 1

            await notifications.dismiss(session, unread[0][0])
            assert await notifications.unread_count(session, world.bob.id) == 0
            await session.commit()

    @pytest.mark.asyncio
    async def test_other_recipients_notification_hidden(self, db, session_factory, settings, http, world, mock_redis):
        await watch_card(db, world.card, world.bob.id)
        await record_event(db, world.tenant, world.card, EventAction.UPDATED, world.alice)
        await db.commit()
        await drain_outbox(session_factory, settings, http=http, redis=mock_redis)

        async with session_factory() as session:
            [(notification, _)] = await notifications.list_notifications(session, world.tenant, world.bob.id)
            with pytest.raises(NotFoundError):
                await notifications.get_notification_for(session, world.tenant, notification.id, world.alice.id)
