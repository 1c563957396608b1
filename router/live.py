"""
Live leave events over WebSocket.

Browsers can't set an Authorization header on a WebSocket handshake, so the
JWT comes in as ?token=. Messages sent by the client are ignored; they only
keep the connection alive.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session
import logging

from db import get_db
from dependencies import user_from_token
from services.directory import normalize_role
from services.live_events import live_event_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/leave", tags=["Leave Events"])


@router.websocket("/events")
async def leave_events(
    websocket: WebSocket,
    token: str = Query(...),
    db: Session = Depends(get_db),
):
    try:
        user = user_from_token(token, db)
        user_id, role = user.id, normalize_role(user.role)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    finally:
        # The socket can stay open for hours; don't hold a DB connection for it
        db.close()

    await live_event_manager.connect(websocket, user_id, role)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        live_event_manager.disconnect(websocket, user_id)
