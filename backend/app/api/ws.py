"""WebSocket endpoint for the chat realtime layer."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, Depends, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from app.config import get_settings
from app.core.security import decode_access_token
from banter.realtime import RealtimeGateway, get_gateway
from banter.realtime.registry import coerce_user_id
from banter.realtime.relay import safe_send_json

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"event": "ping", "data": {}}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            idle_long_enough = now - last_activity >= interval and (
                last_ping_sent is None or now - last_ping_sent >= interval
            )
            if interval <= 0 or idle_long_enough:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


def _extract_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if token:
        return token
    auth_header = websocket.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ").strip() or None
    return None


async def _resolve_user_id(websocket: WebSocket, gateway: RealtimeGateway) -> int | None:
    token = _extract_token(websocket)
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        payload = decode_access_token(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None

    user_id = coerce_user_id(payload.get("sub"))
    user = await gateway.store.get_user(user_id) if user_id is not None else None
    if user is None or not user.verified:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None
    return user_id


@router.websocket("/chat")
async def websocket_chat(
    websocket: WebSocket,
    gateway: RealtimeGateway = Depends(get_gateway),
) -> None:
    """Carry realtime chat events for one authenticated connection."""

    user_id = await _resolve_user_id(websocket, gateway)
    if user_id is None:
        return

    await websocket.accept()
    connection_id = uuid.uuid4().hex
    await gateway.connect(connection_id, websocket, user_id)
    logger.debug("User %s connected as %s", user_id, connection_id)

    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                gateway.reject(connection_id, None, "Invalid payload")
                continue
            # Let an in-flight handler finish even if this loop is torn down.
            await asyncio.shield(gateway.handle(connection_id, payload))
    finally:
        await gateway.disconnect(connection_id)
        logger.debug("User %s disconnected (%s)", user_id, connection_id)
