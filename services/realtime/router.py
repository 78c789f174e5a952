"""
services/realtime/router.py
WebSocket channel: ws://<host>/ws?token=<access token>

Every authenticated connection is registered for pushes. Donors may also
answer a request over the socket:
    {"type": "response", "requestId": "<uuid>", "accepted": true}
"""

import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.websockets import WebSocketState

from config.database import get_db_context
from config.redis_client import TokenDenyList, get_redis
from services.notification.dispatcher import NotificationDispatcher
from services.notification.sms import TwilioSmsSender, get_sms_sender
from services.realtime.registry import ConnectionRegistry, get_registry
from services.requests.lifecycle import RequestLifecycle
from shared.exceptions import CoordinationError
from shared.models.models import Donor, UserRole
from shared.utils.security import verify_access_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])


async def authenticate_channel(token: Optional[str], redis) -> Optional[dict]:
    """JWT payload for a usable token, None otherwise."""
    if not token:
        return None
    try:
        payload = verify_access_token(token)
        uuid.UUID(payload["sub"])
        UserRole(payload["role"])
    except (JWTError, KeyError, ValueError):
        return None
    if await TokenDenyList(redis).is_revoked(payload.get("jti", "")):
        return None
    return payload


async def handle_channel_message(
    db: AsyncSession,
    registry: ConnectionRegistry,
    sms_sender: TwilioSmsSender,
    user_id: str,
    raw: str,
) -> Optional[dict]:
    """Process one inbound frame. Returns the reply to send back, if any."""
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        return {"type": "error", "message": "Malformed message"}
    if not isinstance(message, dict):
        return {"type": "error", "message": "Malformed message"}

    if message.get("type") != "response":
        return None

    try:
        request_id = uuid.UUID(str(message.get("requestId")))
    except ValueError:
        return {"type": "error", "message": "Invalid requestId"}
    accepted = message.get("accepted")
    if not isinstance(accepted, bool):
        return {"type": "error", "message": "accepted must be true or false"}

    result = await db.execute(select(Donor).where(Donor.user_id == uuid.UUID(user_id)))
    donor = result.scalar_one_or_none()
    if not donor:
        return {"type": "error", "message": "Donor profile not found"}

    lifecycle = RequestLifecycle(db, registry, NotificationDispatcher(db, registry, sms_sender))
    try:
        outcome = await lifecycle.record_donor_response(request_id, accepted, donor)
    except CoordinationError as e:
        return {"type": "error", "requestId": str(request_id), "message": e.message}

    return {
        "type": "response-ack",
        "requestId": str(outcome.request_id),
        "status": outcome.status.value,
    }


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    registry: ConnectionRegistry = Depends(get_registry),
    sms_sender: TwilioSmsSender = Depends(get_sms_sender),
    redis=Depends(get_redis),
):
    payload = await authenticate_channel(token, redis)
    if payload is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    user_id = payload["sub"]
    await registry.register(user_id, websocket, is_admin=payload["role"] == UserRole.ADMIN.value)

    try:
        while True:
            raw = await websocket.receive_text()
            async with get_db_context() as db:
                reply = await handle_channel_message(db, registry, sms_sender, user_id, raw)
            if reply is not None:
                await websocket.send_json(reply)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for user {user_id}: {e}", exc_info=True)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
    finally:
        await registry.deregister(user_id, websocket)
