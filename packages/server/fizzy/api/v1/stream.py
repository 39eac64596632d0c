"""
Broadcast stream WebSocket.

Frames from the client:
- {"type": "ping"} → {"type": "pong"}
- {"type": "subscribe", "streams": [["<board_id>", "cards"], ...]}
- {"type": "unsubscribe", "streams": [...]}

Frames to the client are BroadcastMessage objects for subscribed streams.
Stream names are scoped to the authenticated account, so a client can only
ever hear its own account's broadcasts.
"""

from __future__ import annotations

import json
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from fizzy.core.auth import get_authenticated_member_ws
from fizzy.core.broadcast import manager, parse_stream_keys
from fizzy.core.database import get_session
from fizzy.core.errors import ValidationError

router = APIRouter()


async def _send(websocket: WebSocket, frame: dict) -> None:
    await websocket.send_text(json.dumps(frame))


@router.websocket("/stream")
async def stream_endpoint(
    websocket: WebSocket,
    account_id: uuid.UUID,
    token: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_session),
):
    try:
        auth = await get_authenticated_member_ws(account_id, token, session)
    except HTTPException:
        await websocket.close(code=4001, reason="authentication_failed")
        return
    # Release the connection; the socket may stay open for hours
    await session.close()

    conn_info = await manager.connect(websocket, auth.account_id, auth.user_id)
    if conn_info is None:
        await websocket.close(code=4029, reason="connection_limit_exceeded")
        return

    try:
        while True:
            data = await websocket.receive_text()
            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                await _send(websocket, {
                    "type": "error",
                    "code": "INVALID_JSON",
                    "message": "Could not parse message as JSON.",
                })
                continue

            frame_type = frame.get("type") if isinstance(frame, dict) else None

            if frame_type == "ping":
                await _send(websocket, {"type": "pong"})
                continue

            if frame_type in ("subscribe", "unsubscribe"):
                try:
                    for stream_key in parse_stream_keys(frame.get("streams", [])):
                        if frame_type == "subscribe":
                            manager.subscribe(conn_info, stream_key)
                        else:
                            manager.unsubscribe(conn_info, stream_key)
                except ValidationError as exc:
                    await _send(websocket, {"type": "error", "code": exc.code, "message": exc.message})
                    continue
                await _send(websocket, {"type": "subscribed", "streams": sorted(conn_info.streams)})
                continue

            await _send(websocket, {
                "type": "error",
                "code": "UNKNOWN_FRAME",
                "message": f"Unsupported frame type: {frame_type}",
            })
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(conn_info)
