"""
WebSocket router for real-time dashboard updates.

Clients connect with ``?token=<jwt>`` and receive change events for their
own letters, subscriptions and balances. Staff also receive every letter
change. Delivery is at-least-once; clients merge by entity id.
"""
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from ..auth import Capability, has_capability, resolve_token
from ..database import get_db
from ..models.db_models import Role
from ..services.realtime import manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["WebSocket"])


@router.websocket("/changes")
async def websocket_changes(
    websocket: WebSocket,
    token: str = Query(None),
    db: Session = Depends(get_db),
):
    if not token:
        await websocket.close(code=4001, reason="Authentication required")
        return

    try:
        profile = resolve_token(token, db)
        if profile is None:
            await websocket.close(code=4001, reason="Invalid token")
            return
        user_id = profile.id
        is_staff = has_capability(Role(profile.role), Capability.VIEW_ALL_LETTERS)
    finally:
        # Sockets can stay open for hours
        db.close()

    await manager.connect(websocket, user_id, is_staff=is_staff)

    try:
        # Keep connection alive, answer heartbeats
        while True:
            try:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
            except WebSocketDisconnect:
                break
    finally:
        await manager.disconnect(websocket, user_id)
