"""
Card service layer: card mutations and their side effects.

Every mutation:
- touches the card's last_active_at (which drives auto-closing)
- records an event in the caller's transaction (queuing notifications and webhooks)
- queues a view patch for the card's board stream, unless the card is a draft
"""

from __future__ import annotations

import html
import uuid
from datetime import datetime, timedelta
from typing import Optional, Sequence

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from fizzy.core.errors import NotFoundError, ValidationError
from fizzy.core.events import record_event
from fizzy.core.queue import enqueue
from fizzy.core.tenant import TenantContext
from fizzy.models.assignments import CardAssignment, CardWatch
from fizzy.models.board import Board
from fizzy.models.card import Card, Closure
from fizzy.models.comment import Comment
from fizzy.models.user import User
from fizzy.services import notifications
from fizzy.services.accounts import get_member
from fizzy_shared.schemas import broadcasts
from fizzy_shared.schemas.cards import CardCreate, CardRead
from fizzy_shared.schemas.common import CardStatus, EventAction, TaskKind

log = structlog.get_logger()

CLOSED_AUTOMATICALLY = "Closed automatically"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def get_card_or_404(session: AsyncSession, tenant: TenantContext, card_id: uuid.UUID) -> Card:
    card = await session.get(Card, card_id)
    if card is None:
        raise NotFoundError(f"Card {card_id} not found")
    tenant.check(card.account_id, "card")
    return card


async def get_closure(session: AsyncSession, card: Card) -> Optional[Closure]:
    result = await session.execute(select(Closure).where(Closure.card_id == card.id))
    return result.scalar_one_or_none()


def auto_close_at(card: Card, board: Board) -> Optional[datetime]:
    """When `card` will be auto-closed if nothing happens, or None."""
    if board.auto_close_period_days is None:
        return None
    return card.last_active_at + timedelta(days=board.auto_close_period_days)


async def enrich_card(session: AsyncSession, card: Card) -> CardRead:
    """Convert a Card ORM object to a CardRead with closure and assignees."""
    closure = await get_closure(session, card)
    assignee_ids = sorted(await card.assignee_ids(session))
    board = await session.get(Board, card.board_id)
    closes_at = None
    if closure is None and not card.drafted and board is not None:
        closes_at = auto_close_at(card, board)
    return CardRead(
        id=card.id,
        account_id=card.account_id,
        board_id=card.board_id,
        creator_id=card.creator_id,
        title=card.title,
        status=card.status,
        closed=closure is not None,
        closed_at=closure.created_at if closure else None,
        closed_by=closure.user_id if closure else None,
        auto_close_at=closes_at,
        assignee_ids=assignee_ids,
        last_active_at=card.last_active_at,
        created_at=card.created_at,
    )


async def list_board_cards(
    session: AsyncSession,
    board: Board,
    status: Optional[CardStatus] = None,
    closed: Optional[bool] = None,
    page: int = 1,
    per_page: int = 25,
) -> Sequence[Card]:
    """Cards on a board. Closed cards come most recently closed first; the rest by activity."""
    stmt = select(Card).where(Card.board_id == board.id)
    if status:
        stmt = stmt.where(Card.status == status.value)
    if closed:
        stmt = stmt.join(Closure, Closure.card_id == Card.id).order_by(Closure.created_at.desc())
    elif closed is False:
        stmt = stmt.outerjoin(Closure, Closure.card_id == Card.id).where(Closure.id.is_(None))
    stmt = stmt.order_by(Card.last_active_at.desc()).offset((page - 1) * per_page).limit(per_page)
    result = await session.execute(stmt)
    return result.scalars().all()


def render_card(card: Card, closure: Optional[Closure] = None) -> str:
    """HTML fragment for a card, as pushed to board streams."""
    state = "closed" if closure else "open"
    return (
        f'<article id="{card.dom_id()}" class="card card--{state}">'
        f"{html.escape(card.title)}</article>"
    )


def render_comment(comment: Comment, author: User) -> str:
    return (
        f'<div id="{comment.dom_id()}" class="comment">'
        f"<strong>{html.escape(author.name)}</strong> {html.escape(comment.body)}</div>"
    )


async def queue_broadcast(
    session: AsyncSession,
    tenant: TenantContext,
    stream: Sequence[str],
    instruction: broadcasts.Instruction,
) -> None:
    """Broadcast after commit, via the task queue."""
    await enqueue(
        session,
        TaskKind.BROADCAST,
        {"stream": list(stream), "instruction": instruction.model_dump(mode="json")},
        tenant,
    )


async def _broadcast_card(
    session: AsyncSession,
    tenant: TenantContext,
    card: Card,
    instruction: broadcasts.Instruction,
    stream: Optional[Sequence[str]] = None,
) -> None:
    if card.drafted:
        return
    await queue_broadcast(session, tenant, stream or card.broadcast_stream(), instruction)


async def _replace_card(session: AsyncSession, tenant: TenantContext, card: Card) -> None:
    closure = await get_closure(session, card)
    await _broadcast_card(
        session, tenant, card, broadcasts.replace(card.dom_id(), render_card(card, closure))
    )


async def _save(session: AsyncSession, card: Card) -> None:
    card.touch()
    session.add(card)
    await session.flush()


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def create_card(
    session: AsyncSession,
    tenant: TenantContext,
    board: Board,
    card_in: CardCreate,
    actor: User,
) -> Card:
    tenant.check(board.account_id, "board")
    card = Card(
        account_id=tenant.account_id,
        board_id=board.id,
        creator_id=actor.id,
        title=card_in.title,
        status=card_in.status.value,
    )
    session.add(card)
    await session.flush()
    # Creators watch their cards
    session.add(CardWatch(card_id=card.id, user_id=actor.id))
    await session.flush()

    if not card.drafted:
        await record_event(session, tenant, card, EventAction.CREATED, actor)
        await _broadcast_card(session, tenant, card, broadcasts.prepend("cards", render_card(card)))
    return card


async def publish_card(session: AsyncSession, tenant: TenantContext, card: Card, actor: User) -> Card:
    if not card.drafted:
        return card
    card.status = CardStatus.PUBLISHED.value
    await _save(session, card)
    await record_event(session, tenant, card, EventAction.PUBLISHED, actor)
    await _broadcast_card(session, tenant, card, broadcasts.prepend("cards", render_card(card)))
    return card


async def update_card(
    session: AsyncSession,
    tenant: TenantContext,
    card: Card,
    title: str,
    actor: User,
) -> Card:
    if title == card.title:
        return card
    old_title = card.title
    card.title = title
    await _save(session, card)
    await record_event(
        session, tenant, card, EventAction.UPDATED, actor,
        {"old_title": old_title, "new_title": title},
    )
    await _replace_card(session, tenant, card)
    return card


async def close_card(
    session: AsyncSession,
    tenant: TenantContext,
    card: Card,
    actor: User,
    reason: str = "Completed",
) -> Card:
    """Close a card. Closing an already closed card changes nothing."""
    tenant.check(card.account_id, "card")
    if await get_closure(session, card) is not None:
        return card

    closure = Closure(card_id=card.id, user_id=actor.id, reason=reason)
    session.add(closure)
    await _save(session, card)
    await record_event(session, tenant, card, EventAction.CLOSED, actor, {"reason": reason})
    await _broadcast_card(
        session, tenant, card, broadcasts.replace(card.dom_id(), render_card(card, closure))
    )
    log.info("cards.closed", card_id=str(card.id), actor_id=str(actor.id), reason=reason)
    return card


async def reopen_card(session: AsyncSession, tenant: TenantContext, card: Card, actor: User) -> Card:
    closure = await get_closure(session, card)
    if closure is None:
        return card
    await session.delete(closure)
    await _save(session, card)
    await record_event(session, tenant, card, EventAction.REOPENED, actor)
    await _broadcast_card(session, tenant, card, broadcasts.replace(card.dom_id(), render_card(card)))
    return card


# ---------------------------------------------------------------------------
# Assignment and watching
# ---------------------------------------------------------------------------


async def watch_card(session: AsyncSession, card: Card, user_id: uuid.UUID) -> None:
    if await session.get(CardWatch, (card.id, user_id)) is None:
        session.add(CardWatch(card_id=card.id, user_id=user_id))
        await session.flush()


async def unwatch_card(session: AsyncSession, card: Card, user_id: uuid.UUID) -> None:
    watch = await session.get(CardWatch, (card.id, user_id))
    if watch is not None:
        await session.delete(watch)
        await session.flush()


async def assign_card(
    session: AsyncSession,
    tenant: TenantContext,
    card: Card,
    assignee_id: uuid.UUID,
    actor: User,
) -> Card:
    assignee = await get_member(session, tenant, assignee_id)
    if assignee.is_system:
        raise ValidationError("Cards cannot be assigned to the system user")
    if await session.get(CardAssignment, (card.id, assignee.id)) is not None:
        return card

    session.add(CardAssignment(card_id=card.id, user_id=assignee.id))
    await watch_card(session, card, assignee.id)
    await _save(session, card)
    await record_event(
        session, tenant, card, EventAction.ASSIGNED, actor,
        {"assignee_ids": [str(assignee.id)]},
    )
    await _replace_card(session, tenant, card)
    return card


async def unassign_card(
    session: AsyncSession,
    tenant: TenantContext,
    card: Card,
    assignee_id: uuid.UUID,
    actor: User,
) -> Card:
    assignment = await session.get(CardAssignment, (card.id, assignee_id))
    if assignment is None:
        return card
    await session.delete(assignment)
    await _save(session, card)
    await record_event(
        session, tenant, card, EventAction.UNASSIGNED, actor,
        {"assignee_ids": [str(assignee_id)]},
    )
    await _replace_card(session, tenant, card)
    return card


# ---------------------------------------------------------------------------
# Moving, commenting, destroying
# ---------------------------------------------------------------------------


async def move_card(
    session: AsyncSession,
    tenant: TenantContext,
    card: Card,
    to_board: Board,
    actor: User,
) -> Card:
    tenant.check(to_board.account_id, "board")
    if to_board.id == card.board_id:
        return card

    from_stream = card.broadcast_stream()
    from_board_id = card.board_id
    card.board_id = to_board.id
    await _save(session, card)
    await record_event(
        session, tenant, card, EventAction.MOVED, actor,
        {"from_board_id": str(from_board_id), "to_board_id": str(to_board.id)},
    )
    closure = await get_closure(session, card)
    await _broadcast_card(session, tenant, card, broadcasts.remove(card.dom_id()), stream=from_stream)
    await _broadcast_card(session, tenant, card, broadcasts.prepend("cards", render_card(card, closure)))
    return card


async def add_comment(
    session: AsyncSession,
    tenant: TenantContext,
    card: Card,
    body: str,
    actor: User,
    mentioned_user_ids: Sequence[uuid.UUID] = (),
) -> Comment:
    comment = Comment(account_id=tenant.account_id, card_id=card.id, author_id=actor.id, body=body)
    session.add(comment)
    await watch_card(session, card, actor.id)
    await _save(session, card)

    particulars = {"comment_id": str(comment.id)}
    if mentioned_user_ids:
        particulars["mentioned_user_ids"] = [str(uid) for uid in mentioned_user_ids]
    await record_event(session, tenant, card, EventAction.COMMENTED, actor, particulars)

    if not card.drafted:
        await queue_broadcast(
            session, tenant, comment.broadcast_stream(),
            broadcasts.prepend("comments", render_comment(comment, actor)),
        )
    return comment


async def list_comments(session: AsyncSession, card: Card) -> list[Comment]:
    result = await session.execute(
        select(Comment).where(Comment.card_id == card.id).order_by(Comment.id)
    )
    return list(result.scalars().all())


async def destroy_card(session: AsyncSession, tenant: TenantContext, card: Card, actor: User) -> None:
    """Delete a card with its comments and every notification about them.

    The card's events stay behind as history.
    """
    tenant.check(card.account_id, "card")
    comments = await list_comments(session, card)
    for comment in comments:
        await notifications.delete_for_subject(session, comment.subject_ref())
    await notifications.delete_for_subject(session, card.subject_ref())

    for model in (Comment, Closure, CardAssignment, CardWatch):
        await session.execute(delete(model).where(model.card_id == card.id))
    await _broadcast_card(session, tenant, card, broadcasts.remove(card.dom_id()))
    await session.delete(card)
    await session.flush()
    log.info("cards.destroyed", card_id=str(card.id), actor_id=str(actor.id))
