"""
WebSocket Connection Manager with Board Channels

Keeps the realtime side of the board consistent with server state: every
connected client subscribes to one or more board channels, and every task,
lock, conflict and activity-log event is sent to the channel of the board it
belongs to. Delivery is best-effort: a failed send drops that socket and the
event is not retried. Clients reconcile by refetching the board.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)

# Event names understood by board clients
TASK_CREATED = "task-created"
TASK_UPDATED = "task-updated"
TASK_DELETED = "task-deleted"
TASK_STATUS_CHANGED = "task-status-changed"
TASK_ASSIGNED = "task-assigned"
TASK_LOCKED = "task-locked"
TASK_UNLOCKED = "task-unlocked"
CONFLICT_DETECTED = "conflict-detected"
ACTION_LOGGED = "action-logged"

BOARD_EVENTS = frozenset({
    TASK_CREATED, TASK_UPDATED, TASK_DELETED, TASK_STATUS_CHANGED, TASK_ASSIGNED,
    TASK_LOCKED, TASK_UNLOCKED, CONFLICT_DETECTED, ACTION_LOGGED,
})


class ConnectionManager:
    """
    WebSocket connection manager with per-board channels.

    One instance is created per application and handed to every component
    that publishes events. Broadcasting to a channel sends to all of its
    subscribers in parallel with asyncio.gather; individual failures remove
    the failing socket and never reach the publisher.
    """

    def __init__(self):
        self.active_connections: Dict[WebSocket, Any] = {}
        self.channels: Dict[int, Set[WebSocket]] = {}
        self._connection_lock = asyncio.Lock()
        self.total_broadcasts = 0
        self.failed_sends = 0

    async def connect(self, websocket: WebSocket, user_id: Any):
        """Accept a WebSocket connection and remember who it belongs to."""
        await websocket.accept()
        async with self._connection_lock:
            self.active_connections[websocket] = user_id
        logger.info(f"WebSocket connected for user {user_id}. Total connections: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket from the registry and from every channel it joined."""
        async with self._connection_lock:
            user_id = self.active_connections.pop(websocket, None)
            for board_id in list(self.channels):
                subscribers = self.channels[board_id]
                subscribers.discard(websocket)
                if not subscribers:
                    del self.channels[board_id]
        logger.info(f"WebSocket disconnected for user {user_id}. Total connections: {len(self.active_connections)}")

    async def join_board(self, websocket: WebSocket, board_id: int):
        async with self._connection_lock:
            self.channels.setdefault(board_id, set()).add(websocket)
        logger.info(f"User {self.active_connections.get(websocket)} joined board {board_id}")

    async def leave_board(self, websocket: WebSocket, board_id: int):
        async with self._connection_lock:
            subscribers = self.channels.get(board_id)
            if subscribers is not None:
                subscribers.discard(websocket)
                if not subscribers:
                    del self.channels[board_id]
        logger.info(f"User {self.active_connections.get(websocket)} left board {board_id}")

    async def broadcast_to_board(self, board_id: int, event_type: str,
                                 data: Dict[str, Any]) -> int:
        """
        Publish one event to every subscriber of a board channel.

        Args:
            board_id: Board whose channel receives the event
            event_type: One of BOARD_EVENTS
            data: Event payload (will be JSON serialized)

        Returns:
            Number of subscribers the event was delivered to
        """
        if event_type not in BOARD_EVENTS:
            raise ValueError(f"Unknown board event '{event_type}'")

        envelope = {
            "type": event_type,
            "board_id": board_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }
        message = json.dumps(envelope, default=str)

        async with self._connection_lock:
            subscribers = list(self.channels.get(board_id, ()))

        self.total_broadcasts += 1
        if not subscribers:
            logger.debug(f"No subscribers on board {board_id} for {event_type}")
            return 0

        results = await asyncio.gather(
            *(self._send_safe(websocket, message) for websocket in subscribers),
            return_exceptions=True
        )
        delivered = sum(1 for result in results if result is True)
        logger.debug(f"Broadcast {event_type} to board {board_id}: {delivered}/{len(subscribers)} delivered")
        return delivered

    async def send_personal(self, websocket: WebSocket, payload: Dict[str, Any]) -> bool:
        """Send a control reply (ack, pong, error) to a single client."""
        return await self._send_safe(websocket, json.dumps(payload, default=str))

    async def _send_safe(self, websocket: WebSocket, message: str) -> bool:
        """
        Send to one connection, dropping it on failure.

        Returns:
            True if successful, False if the connection failed
        """
        try:
            await websocket.send_text(message)
            return True
        except Exception as e:
            self.failed_sends += 1
            logger.warning(f"Dropping WebSocket after failed send: {e}")
            await self.disconnect(websocket)
            return False

    def get_connection_count(self) -> int:
        """Get current number of active WebSocket connections."""
        return len(self.active_connections)

    def get_board_subscriber_count(self, board_id: int) -> int:
        return len(self.channels.get(board_id, ()))

    def get_connection_stats(self) -> Dict[str, Any]:
        return {
            "active": len(self.active_connections),
            "channels": {board_id: len(subs) for board_id, subs in self.channels.items()},
            "total_broadcasts": self.total_broadcasts,
            "failed_sends": self.failed_sends,
        }

    def user_for(self, websocket: WebSocket) -> Optional[Any]:
        return self.active_connections.get(websocket)
