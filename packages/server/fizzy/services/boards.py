"""Board service: CRUD plus the board's own events."""

from __future__ import annotations

import uuid

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from fizzy.core.errors import NotFoundError
from fizzy.core.events import record_event
from fizzy.core.tenant import TenantContext
from fizzy.models.board import Board
from fizzy.models.user import User
from fizzy_shared.schemas.cards import BoardCreate, BoardRead, BoardUpdate
from fizzy_shared.schemas.common import EventAction


async def get_board_or_404(session: AsyncSession, tenant: TenantContext, board_id: uuid.UUID) -> Board:
    board = await session.get(Board, board_id)
    if board is None:
        raise NotFoundError(f"Board {board_id} not found")
    tenant.check(board.account_id, "board")
    return board


def board_read(board: Board) -> BoardRead:
    return BoardRead(
        id=board.id,
        account_id=board.account_id,
        name=board.name,
        creator_id=board.creator_id,
        auto_close_period_days=board.auto_close_period_days,
        created_at=board.created_at,
    )


async def list_boards(session: AsyncSession, tenant: TenantContext) -> list[Board]:
    result = await session.execute(
        select(Board).where(Board.account_id == tenant.account_id).order_by(Board.name)
    )
    return list(result.scalars().all())


async def create_board(
    session: AsyncSession,
    tenant: TenantContext,
    board_in: BoardCreate,
    actor: User,
) -> Board:
    board = Board(
        account_id=tenant.account_id,
        name=board_in.name,
        creator_id=actor.id,
        auto_close_period_days=board_in.auto_close_period_days,
    )
    session.add(board)
    await session.flush()
    await record_event(session, tenant, board, EventAction.CREATED, actor)
    return board


async def update_board(
    session: AsyncSession,
    tenant: TenantContext,
    board: Board,
    board_in: BoardUpdate,
    actor: User,
) -> Board:
    # exclude_unset: an explicit null auto-close period means "never"
    data = board_in.model_dump(exclude_unset=True)
    if data.get("name") is None:
        data.pop("name", None)
    if not data:
        return board

    changes = {key: getattr(board, key) for key in data}
    for key, value in data.items():
        setattr(board, key, value)
    session.add(board)
    await session.flush()
    await record_event(
        session, tenant, board, EventAction.UPDATED, actor,
        {"changed": sorted(changes), "previous": changes},
    )
    return board
