"""
Webhook relay: signed HTTP delivery of events to account webhooks.

Handles:
- Fan-out of one event to every active, subscribed webhook of its account
- One delivery record per attempt, never updated
- Scheduled retries with exponential backoff, up to a configured bound
- Webhook administration (create, update, deactivate, delivery history)
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from typing import Optional

import httpx
import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from fizzy.core.config import Settings, get_settings
from fizzy.core.database import get_session_context
from fizzy.core.errors import DeliveryError, NotFoundError
from fizzy.core.metrics import metrics
from fizzy.core.queue import compute_backoff, enqueue
from fizzy.core.subjects import resolve_subject
from fizzy.core.tenant import TenantContext
from fizzy.models.base import utcnow
from fizzy.models.event import Event
from fizzy.models.user import User
from fizzy.models.webhook import Webhook, WebhookDelivery
from fizzy_shared.schemas.common import ActorType, DeliveryState, Role, TaskKind
from fizzy_shared.schemas.events import WebhookActor, WebhookPayload, WebhookSubject
from fizzy_shared.schemas.webhooks import WebhookCreate, WebhookUpdate

log = structlog.get_logger()

SIGNATURE_HEADER = "X-Fizzy-Signature"
USER_AGENT = "Fizzy-Webhooks/1.0"


def sign_payload(secret: str, body: bytes) -> str:
    """`sha256=<hex hmac>` of the exact request body."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def generate_secret() -> str:
    return secrets.token_hex(32)


async def build_payload(session: AsyncSession, event: Event) -> WebhookPayload:
    """Body for `event` with the subject's current snapshot."""
    actor = await session.get(User, event.actor_id)
    subject = await resolve_subject(session, event.subject_ref())
    return WebhookPayload(
        id=event.id,
        action=event.action,
        account_id=event.account_id,
        created_at=event.created_at,
        actor=WebhookActor(
            id=actor.id,
            name=actor.name,
            type=ActorType.SYSTEM if actor.role == Role.SYSTEM.value else ActorType.USER,
        )
        if actor is not None
        else None,
        subject=WebhookSubject(
            type=event.subject_type,
            id=event.subject_id,
            snapshot=subject.snapshot() if subject is not None else {},
        ),
        particulars=event.particulars or {},
    )


class WebhookRelay:
    """
    Delivers events to webhooks.

    Every attempt runs in its own short transaction: the checks and the
    payload are read first, the POST happens with no session open, and the
    outcome (plus any follow-up retry task) is committed together.
    """

    def __init__(
        self,
        tenant: TenantContext,
        http: httpx.AsyncClient,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[Settings] = None,
    ):
        self.tenant = tenant
        self.http = http
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    async def relay(self, event_id: uuid.UUID) -> list[WebhookDelivery]:
        """Attempt 0 for every active webhook subscribed to the event's action.

        Webhooks are isolated: one failing to record does not stop the rest.
        Any such failure is raised once all webhooks were tried, so the task
        is retried; webhooks already attempted are skipped on that run.
        """
        async with get_session_context(self.session_factory) as session:
            event = await session.get(Event, event_id)
            if event is None:
                log.warning("webhook.event_missing", event_id=str(event_id))
                return []
            self.tenant.check(event.account_id, "event")
            result = await session.execute(
                select(Webhook)
                .where(Webhook.account_id == event.account_id, Webhook.active.is_(True))
                .order_by(Webhook.created_at)
            )
            webhook_ids = [w.id for w in result.scalars().all() if w.subscribes_to(event.action)]

        deliveries: list[WebhookDelivery] = []
        failures: list[str] = []
        for webhook_id in webhook_ids:
            try:
                delivery = await self.deliver(webhook_id, event_id, retry_count=0)
            except Exception as exc:
                log.exception("webhook.relay_failed", webhook_id=str(webhook_id), event_id=str(event_id))
                failures.append(f"{webhook_id}: {exc}")
                continue
            if delivery is not None:
                deliveries.append(delivery)

        if failures:
            raise DeliveryError(f"Relay of event {event_id} failed for {len(failures)} webhook(s): {failures[0]}")
        return deliveries

    async def deliver(
        self,
        webhook_id: uuid.UUID,
        event_id: uuid.UUID,
        retry_count: int = 0,
    ) -> Optional[WebhookDelivery]:
        """Perform one attempt. Returns its record, or None if skipped."""
        async with get_session_context(self.session_factory) as session:
            webhook = await session.get(Webhook, webhook_id)
            event = await session.get(Event, event_id)
            if webhook is None or event is None:
                log.info("webhook.skipped_missing", webhook_id=str(webhook_id), event_id=str(event_id))
                return None
            self.tenant.check(webhook.account_id, "webhook")
            self.tenant.check(event.account_id, "event")

            if not webhook.active:
                log.info("webhook.skipped_inactive", webhook_id=str(webhook_id))
                return None
            if await self._has_succeeded(session, webhook_id, event_id):
                log.info("webhook.skipped_delivered", webhook_id=str(webhook_id), event_id=str(event_id))
                return None
            if await self._attempt_recorded(session, webhook_id, event_id, retry_count):
                log.info(
                    "webhook.skipped_duplicate_attempt",
                    webhook_id=str(webhook_id),
                    event_id=str(event_id),
                    retry_count=retry_count,
                )
                return None

            payload = await build_payload(session, event)
            url, secret, action = webhook.url, webhook.secret, event.action

        body = payload.model_dump_json().encode()
        attempted_at = utcnow()
        response_status: Optional[int] = None
        error: Optional[str] = None
        try:
            response_status = await self._post(url, secret, body, event_id, action, retry_count)
            state = DeliveryState.SUCCEEDED
        except DeliveryError as exc:
            response_status = exc.response_status
            error = exc.message
            final = retry_count + 1 >= self.settings.webhook_max_attempts
            state = DeliveryState.FAILED if final else DeliveryState.RETRYING

        delivery = WebhookDelivery(
            account_id=self.tenant.account_id,
            webhook_id=webhook_id,
            event_id=event_id,
            payload=payload.model_dump(mode="json"),
            attempted_at=attempted_at,
            delivered_at=utcnow() if state == DeliveryState.SUCCEEDED else None,
            response_status=response_status,
            error=error,
            retry_count=retry_count,
            state=state.value,
        )

        async with get_session_context(self.session_factory) as session:
            session.add(delivery)
            try:
                await session.flush()
            except IntegrityError:
                # A concurrent run recorded this attempt first
                await session.rollback()
                log.info("webhook.attempt_race_lost", webhook_id=str(webhook_id), retry_count=retry_count)
                return None

            if state == DeliveryState.RETRYING:
                delay = compute_backoff(
                    retry_count + 1,
                    self.settings.webhook_retry_base_seconds,
                    self.settings.webhook_retry_max_seconds,
                )
                await enqueue(
                    session,
                    TaskKind.DELIVER_WEBHOOK,
                    {
                        "webhook_id": str(webhook_id),
                        "event_id": str(event_id),
                        "retry_count": retry_count + 1,
                    },
                    self.tenant,
                    delay_seconds=delay,
                )

        self._report(delivery)
        return delivery

    async def _post(
        self,
        url: str,
        secret: str,
        body: bytes,
        event_id: uuid.UUID,
        action: str,
        retry_count: int,
    ) -> int:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Fizzy-Event-Id": str(event_id),
            "X-Fizzy-Event-Action": action,
            "X-Fizzy-Delivery-Attempt": str(retry_count),
            SIGNATURE_HEADER: sign_payload(secret, body),
        }
        try:
            resp = await self.http.post(
                url,
                content=body,
                headers=headers,
                timeout=self.settings.webhook_timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise DeliveryError(f"Timed out after {self.settings.webhook_timeout_seconds}s") from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc

        if not resp.is_success:
            raise DeliveryError(f"HTTP {resp.status_code}", response_status=resp.status_code)
        return resp.status_code

    async def _has_succeeded(self, session: AsyncSession, webhook_id: uuid.UUID, event_id: uuid.UUID) -> bool:
        result = await session.execute(
            select(WebhookDelivery.id).where(
                WebhookDelivery.webhook_id == webhook_id,
                WebhookDelivery.event_id == event_id,
                WebhookDelivery.state == DeliveryState.SUCCEEDED.value,
            ).limit(1)
        )
        return result.first() is not None

    async def _attempt_recorded(
        self, session: AsyncSession, webhook_id: uuid.UUID, event_id: uuid.UUID, retry_count: int
    ) -> bool:
        result = await session.execute(
            select(WebhookDelivery.id).where(
                WebhookDelivery.webhook_id == webhook_id,
                WebhookDelivery.event_id == event_id,
                WebhookDelivery.retry_count == retry_count,
            ).limit(1)
        )
        return result.first() is not None

    def _report(self, delivery: WebhookDelivery) -> None:
        fields = dict(
            webhook_id=str(delivery.webhook_id),
            event_id=str(delivery.event_id),
            retry_count=delivery.retry_count,
            status=delivery.response_status,
        )
        if delivery.state == DeliveryState.SUCCEEDED.value:
            metrics.inc("webhook_deliveries_succeeded_total")
            log.info("webhook.delivered", **fields)
        elif delivery.state == DeliveryState.RETRYING.value:
            metrics.inc("webhook_deliveries_retrying_total")
            log.warning("webhook.delivery_retrying", error=delivery.error, **fields)
        else:
            metrics.inc("webhook_deliveries_failed_total")
            log.error("webhook.delivery_failed", error=delivery.error, **fields)


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


async def get_webhook_or_404(session: AsyncSession, tenant: TenantContext, webhook_id: uuid.UUID) -> Webhook:
    webhook = await session.get(Webhook, webhook_id)
    if webhook is None:
        raise NotFoundError(f"Webhook {webhook_id} not found")
    tenant.check(webhook.account_id, "webhook")
    return webhook


async def create_webhook(session: AsyncSession, tenant: TenantContext, webhook_in: WebhookCreate) -> Webhook:
    webhook = Webhook(
        account_id=tenant.account_id,
        name=webhook_in.name,
        url=str(webhook_in.url),
        secret=generate_secret(),
        subscribed_actions=[a.value for a in webhook_in.subscribed_actions],
    )
    session.add(webhook)
    await session.flush()
    log.info("webhook.created", webhook_id=str(webhook.id), account_id=str(tenant.account_id))
    return webhook


async def update_webhook(session: AsyncSession, webhook: Webhook, webhook_in: WebhookUpdate) -> Webhook:
    data = webhook_in.model_dump(exclude_unset=True)
    if "url" in data and data["url"] is not None:
        data["url"] = str(data["url"])
    if "subscribed_actions" in data and data["subscribed_actions"] is not None:
        data["subscribed_actions"] = [a.value if hasattr(a, "value") else a for a in data["subscribed_actions"]]
    for key, value in data.items():
        if value is not None and hasattr(webhook, key):
            setattr(webhook, key, value)
    session.add(webhook)
    await session.flush()
    return webhook


async def list_deliveries(
    session: AsyncSession,
    webhook: Webhook,
    limit: int = 100,
) -> list[WebhookDelivery]:
    result = await session.execute(
        select(WebhookDelivery)
        .where(WebhookDelivery.webhook_id == webhook.id)
        .order_by(WebhookDelivery.attempted_at.desc(), WebhookDelivery.retry_count.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
