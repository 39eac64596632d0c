"""
Account service: account/user creation and the per-account system actor.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from fizzy.core.errors import NotFoundError
from fizzy.core.tenant import TenantContext
from fizzy.models.account import Account
from fizzy.models.user import User
from fizzy_shared.schemas.common import Role

log = structlog.get_logger()

SYSTEM_USER_NAME = "System"


async def create_account(session: AsyncSession, name: str) -> Account:
    account = Account(name=name)
    session.add(account)
    await session.flush()
    return account


async def create_user(
    session: AsyncSession,
    account: Account,
    name: str,
    email: Optional[str] = None,
    role: Role = Role.MEMBER,
) -> User:
    user = User(account_id=account.id, name=name, email=email, role=role.value)
    session.add(user)
    await session.flush()
    return user


async def system_user_for(session: AsyncSession, account_id: uuid.UUID) -> User:
    """Return the account's system user, creating it on first use."""
    result = await session.execute(
        select(User)
        .where(User.account_id == account_id, User.role == Role.SYSTEM.value)
        .order_by(User.id)
        .limit(1)
    )
    user = result.scalar_one_or_none()
    if user is not None:
        return user

    user = User(account_id=account_id, name=SYSTEM_USER_NAME, role=Role.SYSTEM.value)
    session.add(user)
    await session.flush()
    log.info("accounts.system_user_created", account_id=str(account_id), user_id=str(user.id))
    return user


async def get_member(session: AsyncSession, tenant: TenantContext, user_id: uuid.UUID) -> User:
    """Load a user of the tenant's account (404 otherwise)."""
    user = await session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    tenant.check(user.account_id, "user")
    return user
