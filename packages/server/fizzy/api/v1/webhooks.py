"""
Webhook administration endpoints (admins only).

The signing secret is returned once, on creation.
"""

from __future__ import annotations

import uuid
from typing import List

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from fizzy.core.auth import AuthenticatedMember, require_admin
from fizzy.core.database import get_session
from fizzy.models.webhook import Webhook, WebhookDelivery
from fizzy.services.webhooks import create_webhook, get_webhook_or_404, list_deliveries, update_webhook
from fizzy_shared.schemas.webhooks import (
    WebhookCreate,
    WebhookCreated,
    WebhookDeliveryRead,
    WebhookRead,
    WebhookUpdate,
)

router = APIRouter()


def _webhook_read(webhook: Webhook) -> WebhookRead:
    return WebhookRead(
        id=webhook.id,
        account_id=webhook.account_id,
        name=webhook.name,
        url=webhook.url,
        active=webhook.active,
        subscribed_actions=webhook.subscribed_actions or [],
        created_at=webhook.created_at,
    )


def _delivery_read(delivery: WebhookDelivery) -> WebhookDeliveryRead:
    return WebhookDeliveryRead(
        id=delivery.id,
        webhook_id=delivery.webhook_id,
        event_id=delivery.event_id,
        state=delivery.state,
        retry_count=delivery.retry_count,
        response_status=delivery.response_status,
        error=delivery.error,
        attempted_at=delivery.attempted_at,
        delivered_at=delivery.delivered_at,
    )


@router.get("/", response_model=List[WebhookRead])
async def list_webhooks_endpoint(
    auth: AuthenticatedMember = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(
        select(Webhook).where(Webhook.account_id == auth.account_id).order_by(Webhook.created_at)
    )
    return [_webhook_read(w) for w in result.scalars().all()]


@router.post("/", response_model=WebhookCreated, status_code=201)
async def create_webhook_endpoint(
    webhook_in: WebhookCreate,
    auth: AuthenticatedMember = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    webhook = await create_webhook(session, auth.tenant, webhook_in)
    return WebhookCreated(**_webhook_read(webhook).model_dump(), secret=webhook.secret)


@router.get("/{webhook_id}", response_model=WebhookRead)
async def get_webhook_endpoint(
    webhook_id: uuid.UUID,
    auth: AuthenticatedMember = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    return _webhook_read(await get_webhook_or_404(session, auth.tenant, webhook_id))


@router.patch("/{webhook_id}", response_model=WebhookRead)
async def update_webhook_endpoint(
    webhook_id: uuid.UUID,
    webhook_in: WebhookUpdate,
    auth: AuthenticatedMember = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """Update a webhook. `active: false` stops all pending retries too."""
    webhook = await get_webhook_or_404(session, auth.tenant, webhook_id)
    return _webhook_read(await update_webhook(session, webhook, webhook_in))


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook_endpoint(
    webhook_id: uuid.UUID,
    auth: AuthenticatedMember = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    webhook = await get_webhook_or_404(session, auth.tenant, webhook_id)
    await session.delete(webhook)
    return Response(status_code=204)


@router.get("/{webhook_id}/deliveries", response_model=List[WebhookDeliveryRead])
async def list_deliveries_endpoint(
    webhook_id: uuid.UUID,
    limit: int = Query(100, ge=1, le=500),
    auth: AuthenticatedMember = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    webhook = await get_webhook_or_404(session, auth.tenant, webhook_id)
    return [_delivery_read(d) for d in await list_deliveries(session, webhook, limit=limit)]
