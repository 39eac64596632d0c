"""
Entropy: automatic closing of cards nobody has touched for a while.

A published, open card whose last activity is older than its board's
`auto_close_period_days` is closed by the account's system user. Boards with
no period never auto-close.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from fizzy.core.database import get_session_context
from fizzy.core.metrics import metrics
from fizzy.core.tenant import TenantContext
from fizzy.models.base import utcnow
from fizzy.models.board import Board
from fizzy.models.card import Card, Closure
from fizzy.services.accounts import system_user_for
from fizzy.services.cards import CLOSED_AUTOMATICALLY, close_card
from fizzy_shared.schemas.common import CardStatus

log = structlog.get_logger()


async def stale_card_ids(
    session: AsyncSession,
    now: Optional[datetime] = None,
    card_id: Optional[uuid.UUID] = None,
) -> list[uuid.UUID]:
    """Ids of open, published cards past their board's auto-close period."""
    now = now or utcnow()
    periods = await session.execute(
        select(Board.auto_close_period_days)
        .where(Board.auto_close_period_days.is_not(None))
        .distinct()
    )

    card_ids: list[uuid.UUID] = []
    for period in periods.scalars().all():
        cutoff = now - timedelta(days=period)
        stmt = (
            select(Card.id)
            .join(Board, Board.id == Card.board_id)
            .outerjoin(Closure, Closure.card_id == Card.id)
            .where(
                Board.auto_close_period_days == period,
                Card.status == CardStatus.PUBLISHED.value,
                Card.last_active_at <= cutoff,
                Closure.id.is_(None),
            )
            .order_by(Card.last_active_at)
        )
        if card_id is not None:
            stmt = stmt.where(Card.id == card_id)
        result = await session.execute(stmt)
        card_ids.extend(result.scalars().all())
    return card_ids


async def auto_close_stale_cards(
    session_factory: Optional[async_sessionmaker] = None,
    now: Optional[datetime] = None,
) -> int:
    """Close every stale card, one transaction per card. Returns the count closed."""
    now = now or utcnow()
    async with get_session_context(session_factory) as session:
        card_ids = await stale_card_ids(session, now)

    closed = 0
    for card_id in card_ids:
        try:
            async with get_session_context(session_factory) as session:
                card = await session.get(Card, card_id)
                # Re-checked: the card may have been touched since the scan
                if card is None or not await stale_card_ids(session, now, card_id=card_id):
                    continue
                system_user = await system_user_for(session, card.account_id)
                tenant = TenantContext(card.account_id, system_user.id)
                await close_card(session, tenant, card, system_user, reason=CLOSED_AUTOMATICALLY)
                closed += 1
        except Exception:
            log.exception("entropy.close_failed", card_id=str(card_id))

    if closed:
        log.info("entropy.cards_closed", count=closed)
        metrics.inc("entropy_cards_closed_total", closed)
    return closed
