"""
Real-time broadcast of view-patch instructions over WebSockets.

Features:
- Stream names are always prefixed with the owning account
- Redis Pub/Sub (one channel per account) for multi-process delivery
- Per-connection stream subscriptions, scoped by the connection's own account
- Per-account connection limit enforced in memory
- At-most-once: nothing is buffered for disconnected clients
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any, Callable, Optional, Union
from uuid import UUID

import structlog
from fastapi import WebSocket

from fizzy.core.config import get_settings
from fizzy.core.errors import ValidationError
from fizzy.core.metrics import metrics
from fizzy.core.redis import get_redis
from fizzy.core.tenant import TenantContext
from fizzy_shared.schemas.broadcasts import BroadcastMessage, Instruction

log = structlog.get_logger()

REDIS_BROADCAST_CHANNEL_PREFIX = "fizzy:broadcast:"

StreamKey = Union[str, Sequence[str]]


def account_prefix(account_id: UUID) -> str:
    return f"account:{account_id}:"


def _stream_parts(stream_key: Any) -> list[str]:
    if isinstance(stream_key, str):
        parts = [stream_key]
    elif isinstance(stream_key, (list, tuple)):
        parts = list(stream_key)
    else:
        raise ValidationError(f"Invalid stream key: {stream_key!r}")
    if not parts or not all(isinstance(part, str) and part for part in parts):
        raise ValidationError(f"Invalid stream key: {stream_key!r}")
    return parts


def scoped_stream_name(account_id: UUID, stream_key: StreamKey) -> str:
    """`account:<id>:<part>:<part>...` for a stream key (string or parts)."""
    return account_prefix(account_id) + ":".join(_stream_parts(stream_key))


def parse_stream_keys(value: Any) -> list[StreamKey]:
    """Validate the `streams` list of a client frame: strings or lists of strings."""
    if not isinstance(value, list):
        raise ValidationError("streams must be a list of stream keys")
    for stream_key in value:
        _stream_parts(stream_key)
    return value


def broadcast_channel(account_id: Union[UUID, str]) -> str:
    return f"{REDIS_BROADCAST_CHANNEL_PREFIX}{account_id}"


class BroadcastDispatcher:
    """Publishes instructions to the tenant's Redis channel."""

    def __init__(self, redis: Any):
        self.redis = redis

    async def broadcast(
        self,
        tenant: TenantContext,
        stream_key: StreamKey,
        instruction: Instruction,
    ) -> BroadcastMessage:
        message = BroadcastMessage(
            stream_key=scoped_stream_name(tenant.account_id, stream_key),
            instruction_type=instruction.type,
            target=instruction.target,
            content=instruction.content,
        )
        await self.redis.publish(
            broadcast_channel(tenant.account_id), message.model_dump_json()
        )
        metrics.inc("broadcasts_published_total")
        log.debug(
            "broadcast.published",
            stream=message.stream_key,
            instruction=instruction.type.value,
        )
        return message


class ConnectionInfo:
    """Tracks a single WebSocket connection's metadata."""

    __slots__ = ("websocket", "account_id", "user_id", "streams")

    def __init__(self, websocket: WebSocket, account_id: UUID, user_id: UUID):
        self.websocket = websocket
        self.account_id = account_id
        self.user_id = user_id
        self.streams: set[str] = set()  # scoped stream names


class ConnectionManager:
    """
    Manages broadcast WebSocket connections.

    Local connections are tracked in memory. A Redis listener per account with
    at least one local connection relays published messages to them.
    """

    def __init__(
        self,
        max_connections_per_account: int = 200,
        redis_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.max_connections_per_account = max_connections_per_account
        self._redis_factory = redis_factory
        # account_id_str -> list[ConnectionInfo]
        self._connections: dict[str, list[ConnectionInfo]] = {}
        # account_id_str -> asyncio.Task (Redis listener)
        self._redis_tasks: dict[str, asyncio.Task] = {}

    @property
    def connections(self) -> dict[str, list[ConnectionInfo]]:
        return self._connections

    async def connect(
        self,
        websocket: WebSocket,
        account_id: UUID,
        user_id: UUID,
    ) -> Optional[ConnectionInfo]:
        """
        Accept a WebSocket connection and register it.

        Returns None (without accepting) if the account is at its limit.
        """
        account_str = str(account_id)
        if len(self._connections.get(account_str, [])) >= self.max_connections_per_account:
            log.warning("broadcast.connection_limit", account_id=account_str)
            return None

        await websocket.accept()
        info = ConnectionInfo(websocket, account_id, user_id)

        if account_str not in self._connections:
            self._connections[account_str] = []
            if self._redis_factory is not None:
                self._redis_tasks[account_str] = asyncio.create_task(
                    self._listen_redis(account_str)
                )
        self._connections[account_str].append(info)
        metrics.set_gauge("broadcast_connections", self.connection_count())

        log.info(
            "broadcast.connected",
            account_id=account_str,
            user_id=str(user_id),
            total=len(self._connections[account_str]),
        )
        return info

    async def disconnect(self, info: ConnectionInfo) -> None:
        account_str = str(info.account_id)
        conns = self._connections.get(account_str)
        if conns is not None:
            if info in conns:
                conns.remove(info)
            if not conns:
                task = self._redis_tasks.pop(account_str, None)
                if task:
                    task.cancel()
                del self._connections[account_str]
        metrics.set_gauge("broadcast_connections", self.connection_count())
        log.info("broadcast.disconnected", account_id=account_str, user_id=str(info.user_id))

    def subscribe(self, info: ConnectionInfo, stream_key: StreamKey) -> str:
        """Subscribe to a stream of the connection's own account."""
        name = scoped_stream_name(info.account_id, stream_key)
        info.streams.add(name)
        return name

    def unsubscribe(self, info: ConnectionInfo, stream_key: StreamKey) -> None:
        info.streams.discard(scoped_stream_name(info.account_id, stream_key))

    def connection_count(self) -> int:
        return sum(len(conns) for conns in self._connections.values())

    async def deliver(self, account_id: Union[UUID, str], message: BroadcastMessage) -> int:
        """Send a message to local subscribers. Returns the number reached."""
        account_str = str(account_id)
        if not message.stream_key.startswith(account_prefix(account_str)):
            log.warning(
                "broadcast.foreign_stream_dropped",
                account_id=account_str,
                stream=message.stream_key,
            )
            return 0

        text = message.model_dump_json()
        sent = 0
        dead_connections = []
        for conn_info in self._connections.get(account_str, []):
            if message.stream_key not in conn_info.streams:
                continue
            try:
                await conn_info.websocket.send_text(text)
                sent += 1
            except Exception:
                dead_connections.append(conn_info)

        for dead in dead_connections:
            await self.disconnect(dead)
        metrics.inc("broadcasts_delivered_total", sent)
        return sent

    async def close_all(self) -> None:
        for conns in list(self._connections.values()):
            for conn_info in list(conns):
                try:
                    await conn_info.websocket.close(code=1001)
                except Exception:
                    log.debug("broadcast.close_failed", user_id=str(conn_info.user_id))
                await self.disconnect(conn_info)

    # --- Redis Pub/Sub Listener ---

    async def _listen_redis(self, account_str: str) -> None:
        redis = await self._redis_factory()
        pubsub = redis.pubsub()
        channel = broadcast_channel(account_str)
        await pubsub.subscribe(channel)

        try:
            async for raw in pubsub.listen():
                if raw["type"] != "message":
                    continue
                try:
                    message = BroadcastMessage.model_validate_json(raw["data"])
                except ValueError:
                    log.warning("broadcast.malformed_message", account_id=account_str)
                    continue
                await self.deliver(account_str, message)
        except asyncio.CancelledError:
            log.info("broadcast.listener_cancelled", account_id=account_str)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()


# Singleton
manager = ConnectionManager(
    max_connections_per_account=get_settings().max_connections_per_account,
    redis_factory=get_redis,
)
