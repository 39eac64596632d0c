"""
Authentication and authorization for the Fizzy API.

Supports:
- JWT bearer tokens (Authorization header, or `token` query param for WebSockets)
- Account scoping: the token's user must belong to the account in the path
- Role-based authorization dependencies
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, Query
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession

from fizzy.core.config import get_settings
from fizzy.core.database import get_session
from fizzy.core.tenant import TenantContext
from fizzy.models.account import Account
from fizzy.models.user import User

log = structlog.get_logger()
settings = get_settings()

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def create_jwt(
    user_id: uuid.UUID,
    account_id: uuid.UUID,
    role: str,
    *,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed JWT for a user of one account."""
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    payload = {
        "sub": str(user_id),
        "account_id": str(account_id),
        "role": role,
        "iat": now,
        "exp": exp,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_jwt(token: str) -> dict:
    """Decode and verify a JWT. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

class AuthenticatedMember:
    """Container for an authenticated user + their account."""

    def __init__(self, user: User, account: Account):
        self.user = user
        self.account = account
        self.user_id = user.id
        self.account_id = account.id
        self.role = user.role

    @property
    def tenant(self) -> TenantContext:
        return TenantContext(self.account_id, self.user_id)


async def _authenticate_token(
    token: str, account_id: uuid.UUID, session: AsyncSession
) -> AuthenticatedMember:
    try:
        payload = decode_jwt(token)
        user_id = uuid.UUID(payload["sub"])
    except (jwt.PyJWTError, KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    account = await session.get(Account, account_id)
    user = await session.get(User, user_id)
    if account is None or user is None or user.account_id != account.id:
        # Same answer for a missing account and someone else's account
        raise HTTPException(status_code=404, detail="Account not found")
    if user.is_system:
        raise HTTPException(status_code=401, detail="System users cannot sign in")

    return AuthenticatedMember(user=user, account=account)


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip()
    return None


async def get_authenticated_member(
    account_id: uuid.UUID,
    authorization: Optional[str] = Depends(api_key_header),
    session: AsyncSession = Depends(get_session),
) -> AuthenticatedMember:
    """Main authentication dependency (Authorization: Bearer <jwt>)."""
    token = _bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")
    return await _authenticate_token(token, account_id, session)


async def get_authenticated_member_ws(
    account_id: uuid.UUID,
    token: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_session),
) -> AuthenticatedMember:
    """WebSocket authentication dependency (browsers can't set headers)."""
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")
    return await _authenticate_token(token, account_id, session)


# ---------------------------------------------------------------------------
# Authorization dependencies (role checks)
# ---------------------------------------------------------------------------

async def require_member(
    auth: AuthenticatedMember = Depends(get_authenticated_member),
) -> AuthenticatedMember:
    """Any account member can access this endpoint."""
    return auth


async def require_admin(
    auth: AuthenticatedMember = Depends(get_authenticated_member),
) -> AuthenticatedMember:
    """Requires the admin role."""
    if auth.role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return auth
