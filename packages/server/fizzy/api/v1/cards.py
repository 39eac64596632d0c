"""
Card endpoints.

- GET/PATCH/DELETE /{card_id}
- POST /{card_id}/publish, /close, /reopen, /move
- POST /{card_id}/assignments, DELETE /{card_id}/assignments/{user_id}
- GET/POST /{card_id}/comments
- GET /{card_id}/events: reverse-chronological history
"""

from __future__ import annotations

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from fizzy.core.auth import AuthenticatedMember, require_member
from fizzy.core.database import get_session
from fizzy.core.events import event_read, events_for
from fizzy.models.comment import Comment
from fizzy.services import cards as card_service
from fizzy.services.boards import get_board_or_404
from fizzy.services.cards import enrich_card, get_card_or_404
from fizzy_shared.schemas.cards import (
    CardAssign,
    CardClose,
    CardMove,
    CardRead,
    CardUpdate,
    CommentCreate,
    CommentRead,
)
from fizzy_shared.schemas.events import EventRead

router = APIRouter()


def _comment_read(comment: Comment) -> CommentRead:
    return CommentRead(
        id=comment.id,
        card_id=comment.card_id,
        author_id=comment.author_id,
        body=comment.body,
        created_at=comment.created_at,
    )


@router.get("/{card_id}", response_model=CardRead)
async def get_card_endpoint(
    card_id: uuid.UUID,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    return await enrich_card(session, await get_card_or_404(session, auth.tenant, card_id))


@router.patch("/{card_id}", response_model=CardRead)
async def update_card_endpoint(
    card_id: uuid.UUID,
    card_in: CardUpdate,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    card = await get_card_or_404(session, auth.tenant, card_id)
    card = await card_service.update_card(session, auth.tenant, card, card_in.title, auth.user)
    return await enrich_card(session, card)


@router.delete("/{card_id}", status_code=204)
async def destroy_card_endpoint(
    card_id: uuid.UUID,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    card = await get_card_or_404(session, auth.tenant, card_id)
    await card_service.destroy_card(session, auth.tenant, card, auth.user)
    return Response(status_code=204)


@router.post("/{card_id}/publish", response_model=CardRead)
async def publish_card_endpoint(
    card_id: uuid.UUID,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    card = await get_card_or_404(session, auth.tenant, card_id)
    card = await card_service.publish_card(session, auth.tenant, card, auth.user)
    return await enrich_card(session, card)


@router.post("/{card_id}/close", response_model=CardRead)
async def close_card_endpoint(
    card_id: uuid.UUID,
    body: Optional[CardClose] = None,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    card = await get_card_or_404(session, auth.tenant, card_id)
    card = await card_service.close_card(session, auth.tenant, card, auth.user, reason=(body or CardClose()).reason)
    return await enrich_card(session, card)


@router.post("/{card_id}/reopen", response_model=CardRead)
async def reopen_card_endpoint(
    card_id: uuid.UUID,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    card = await get_card_or_404(session, auth.tenant, card_id)
    card = await card_service.reopen_card(session, auth.tenant, card, auth.user)
    return await enrich_card(session, card)


@router.post("/{card_id}/move", response_model=CardRead)
async def move_card_endpoint(
    card_id: uuid.UUID,
    body: CardMove,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    card = await get_card_or_404(session, auth.tenant, card_id)
    to_board = await get_board_or_404(session, auth.tenant, body.board_id)
    card = await card_service.move_card(session, auth.tenant, card, to_board, auth.user)
    return await enrich_card(session, card)


@router.post("/{card_id}/assignments", response_model=CardRead)
async def assign_card_endpoint(
    card_id: uuid.UUID,
    body: CardAssign,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    card = await get_card_or_404(session, auth.tenant, card_id)
    card = await card_service.assign_card(session, auth.tenant, card, body.user_id, auth.user)
    return await enrich_card(session, card)


@router.delete("/{card_id}/assignments/{user_id}", response_model=CardRead)
async def unassign_card_endpoint(
    card_id: uuid.UUID,
    user_id: uuid.UUID,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    card = await get_card_or_404(session, auth.tenant, card_id)
    card = await card_service.unassign_card(session, auth.tenant, card, user_id, auth.user)
    return await enrich_card(session, card)


@router.get("/{card_id}/comments", response_model=List[CommentRead])
async def list_comments_endpoint(
    card_id: uuid.UUID,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    card = await get_card_or_404(session, auth.tenant, card_id)
    return [_comment_read(c) for c in await card_service.list_comments(session, card)]


@router.post("/{card_id}/comments", response_model=CommentRead, status_code=201)
async def add_comment_endpoint(
    card_id: uuid.UUID,
    body: CommentCreate,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    card = await get_card_or_404(session, auth.tenant, card_id)
    comment = await card_service.add_comment(
        session, auth.tenant, card, body.body, auth.user,
        mentioned_user_ids=body.mentioned_user_ids,
    )
    return _comment_read(comment)


@router.get("/{card_id}/events", response_model=List[EventRead])
async def card_events_endpoint(
    card_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=500),
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    """Newest first."""
    card = await get_card_or_404(session, auth.tenant, card_id)
    events = await events_for(session, card).to_list(limit=limit)
    return [event_read(e) for e in events]
