"""
Tests for automatic closing of stale cards.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlmodel import select

from fizzy.core.events import events_for
from fizzy.models.base import utcnow
from fizzy.models.board import Board
from fizzy.models.card import Card, Closure
from fizzy.models.user import User
from fizzy.services.cards import CLOSED_AUTOMATICALLY, auto_close_at, create_card
from fizzy.services.entropy import auto_close_stale_cards, stale_card_ids
from fizzy_shared.schemas.cards import CardCreate
from fizzy_shared.schemas.common import CardStatus, EventAction, Role


async def _age(session_factory, card_id, days):
    async with session_factory() as session:
        await session.execute(
            update(Card).where(Card.id == card_id).values(last_active_at=utcnow() - timedelta(days=days))
        )
        await session.commit()


async def _closure(session_factory, card_id):
    async with session_factory() as session:
        result = await session.execute(select(Closure).where(Closure.card_id == card_id))
        return result.scalar_one_or_none()


class TestAutoCloseAt:
    def test_period_added_to_last_activity(self, world):
        assert auto_close_at(world.card, world.board) == world.card.last_active_at + timedelta(days=30)

    def test_never_without_period(self, world):
        world.board.auto_close_period_days = None
        assert auto_close_at(world.card, world.board) is None


class TestSweep:
    @pytest.mark.asyncio
    async def test_stale_card_closed_by_system_user(self, session_factory, world):
        await _age(session_factory, world.card.id, 31)

        assert await auto_close_stale_cards(session_factory) == 1

        closure = await _closure(session_factory, world.card.id)
        assert closure.reason == CLOSED_AUTOMATICALLY
        async with session_factory() as session:
            system_user = await session.get(User, closure.user_id)
            assert system_user.role == Role.SYSTEM.value
            [event] = await events_for(session, world.card).to_list(limit=1)
            assert event.action == EventAction.CLOSED.value
            assert event.actor_id == system_user.id
            assert event.particulars == {"reason": CLOSED_AUTOMATICALLY}

    @pytest.mark.asyncio
    async def test_recent_cards_untouched(self, session_factory, world):
        await _age(session_factory, world.card.id, 29)

        assert await auto_close_stale_cards(session_factory) == 0
        assert await _closure(session_factory, world.card.id) is None

    @pytest.mark.asyncio
    async def test_boards_without_period_never_close(self, session_factory, world):
        async with session_factory() as session:
            await session.execute(
                update(Board).where(Board.id == world.board.id).values(auto_close_period_days=None)
            )
            await session.commit()
        await _age(session_factory, world.card.id, 400)

        assert await auto_close_stale_cards(session_factory) == 0

    @pytest.mark.asyncio
    async def test_drafts_never_close(self, db, session_factory, world):
        draft = await create_card(
            db, world.tenant, world.board, CardCreate(title="Idea", status=CardStatus.DRAFTED), world.alice
        )
        await db.commit()
        await _age(session_factory, draft.id, 90)

        async with session_factory() as session:
            assert draft.id not in await stale_card_ids(session)

    @pytest.mark.asyncio
    async def test_second_sweep_is_a_noop(self, session_factory, world):
        await _age(session_factory, world.card.id, 31)

        assert await auto_close_stale_cards(session_factory) == 1
        assert await auto_close_stale_cards(session_factory) == 0

    @pytest.mark.asyncio
    async def test_one_system_user_per_account(self, db, session_factory, world):
        second = await create_card(db, world.tenant, world.board, CardCreate(title="Two"), world.alice)
        await db.commit()
        await _age(session_factory, world.card.id, 31)
        await _age(session_factory, second.id, 31)

        assert await auto_close_stale_cards(session_factory) == 2

        async with session_factory() as session:
            result = await session.execute(
                select(User).where(User.account_id == world.account.id, User.role == Role.SYSTEM.value)
            )
            assert len(result.scalars().all()) == 1
