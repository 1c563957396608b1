"""
WebSocket Service for Live Leave Events

Clients keep a socket open so their leave lists refresh without polling.
Delivery is best-effort: a failed send drops that socket and the client
recovers by refetching.

Event kinds:
- new_leave            a request was submitted and needs approval
- leave_status_update  a gate changed
- leave_deleted        a request was removed
"""

from fastapi import WebSocket
from typing import Dict, Set
from datetime import datetime, timezone
import json
import logging

logger = logging.getLogger(__name__)


class LiveEventManager:
    """
    Tracks open sockets per user, and each user's role so events can be
    fanned out to a whole cohort (all HODs, all admins).
    """

    def __init__(self):
        # Key: user_id, Value: that user's open sockets (one per tab/device)
        self.active_connections: Dict[int, Set[WebSocket]] = {}
        self.user_roles: Dict[int, str] = {}

    async def connect(self, websocket: WebSocket, user_id: int, role: str):
        await websocket.accept()
        self.active_connections.setdefault(user_id, set()).add(websocket)
        self.user_roles[user_id] = (role or "employee").lower()
        logger.info(
            f"✓ User {user_id} ({self.user_roles[user_id]}) connected to leave events "
            f"({self.connection_count()} active connections)"
        )

    def disconnect(self, websocket: WebSocket, user_id: int):
        sockets = self.active_connections.get(user_id)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            del self.active_connections[user_id]
            self.user_roles.pop(user_id, None)
        logger.info(
            f"✓ User {user_id} disconnected from leave events "
            f"({self.connection_count()} active connections)"
        )

    def connection_count(self) -> int:
        return sum(len(s) for s in self.active_connections.values())

    @staticmethod
    def _message(event: dict) -> str:
        payload = dict(event)
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        return json.dumps(payload, default=str)

    async def _send(self, user_id: int, message: str) -> int:
        delivered = 0
        for websocket in list(self.active_connections.get(user_id, ())):
            try:
                await websocket.send_text(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Failed to push leave event to user {user_id}: {e}")
                self.disconnect(websocket, user_id)
        return delivered

    async def send_to_user(self, user_id: int, event: dict) -> int:
        return await self._send(user_id, self._message(event))

    async def send_to_role(self, role: str, event: dict) -> int:
        """Push to every connected user whose role matches."""
        role = (role or "").lower()
        message = self._message(event)
        delivered = 0
        for user_id, user_role in list(self.user_roles.items()):
            if user_role == role:
                delivered += await self._send(user_id, message)
        return delivered


# Global instance
live_event_manager = LiveEventManager()
