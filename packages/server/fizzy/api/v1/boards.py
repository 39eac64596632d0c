"""
Board endpoints: list, create, read, update; cards on a board.
"""

from __future__ import annotations

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fizzy.core.auth import AuthenticatedMember, require_admin, require_member
from fizzy.core.database import get_session
from fizzy.services.boards import board_read, create_board, get_board_or_404, list_boards, update_board
from fizzy.services.cards import create_card, enrich_card, list_board_cards
from fizzy_shared.schemas.cards import BoardCreate, BoardRead, BoardUpdate, CardCreate, CardRead
from fizzy_shared.schemas.common import CardStatus

router = APIRouter()


@router.get("/", response_model=List[BoardRead])
async def list_boards_endpoint(
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    return [board_read(b) for b in await list_boards(session, auth.tenant)]


@router.post("/", response_model=BoardRead, status_code=201)
async def create_board_endpoint(
    board_in: BoardCreate,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    board = await create_board(session, auth.tenant, board_in, auth.user)
    return board_read(board)


@router.get("/{board_id}", response_model=BoardRead)
async def get_board_endpoint(
    board_id: uuid.UUID,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    return board_read(await get_board_or_404(session, auth.tenant, board_id))


@router.patch("/{board_id}", response_model=BoardRead)
async def update_board_endpoint(
    board_id: uuid.UUID,
    board_in: BoardUpdate,
    auth: AuthenticatedMember = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """Rename a board or change its auto-close period (admins only)."""
    board = await get_board_or_404(session, auth.tenant, board_id)
    board = await update_board(session, auth.tenant, board, board_in, auth.user)
    return board_read(board)


@router.get("/{board_id}/cards", response_model=List[CardRead])
async def list_board_cards_endpoint(
    board_id: uuid.UUID,
    status: Optional[CardStatus] = None,
    closed: Optional[bool] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(25, ge=1, le=100),
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    """Cards on a board; `closed=true` lists the most recently closed first."""
    board = await get_board_or_404(session, auth.tenant, board_id)
    cards = await list_board_cards(session, board, status=status, closed=closed, page=page, per_page=per_page)
    return [await enrich_card(session, c) for c in cards]


@router.post("/{board_id}/cards", response_model=CardRead, status_code=201)
async def create_card_endpoint(
    board_id: uuid.UUID,
    card_in: CardCreate,
    auth: AuthenticatedMember = Depends(require_member),
    session: AsyncSession = Depends(get_session),
):
    board = await get_board_or_404(session, auth.tenant, board_id)
    card = await create_card(session, auth.tenant, board, card_in, auth.user)
    return await enrich_card(session, card)
