"""WebSocket rooms, one per project."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from sparkchat.libs.chat_timeline import ChatTimeline

logger = logging.getLogger(__name__)


class ProjectRoom:
    """Sockets connected to one project plus the messages they've seen live."""

    def __init__(self, project_id: str):
        self.project_id = project_id
        self.connections: Dict[WebSocket, Any] = {}
        self.timeline = ChatTimeline()


class ConnectionManager:
    def __init__(self):
        self.rooms: Dict[str, ProjectRoom] = {}

    def room(self, project_id: str) -> ProjectRoom:
        if project_id not in self.rooms:
            self.rooms[project_id] = ProjectRoom(project_id)
        return self.rooms[project_id]

    async def connect(self, project_id: str, websocket: WebSocket, user: Any) -> ProjectRoom:
        await websocket.accept()
        room = self.room(project_id)
        room.connections[websocket] = user
        logger.info("[%s] %s joined (%d connected)", project_id, getattr(user, "email", "?"), len(room.connections))
        return room

    def disconnect(self, project_id: str, websocket: WebSocket) -> None:
        room = self.rooms.get(project_id)
        if room is None:
            return
        user = room.connections.pop(websocket, None)
        if user is not None:
            logger.info("[%s] %s left", project_id, getattr(user, "email", "?"))
        # the live timeline goes away with the last connection
        if not room.connections:
            del self.rooms[project_id]

    async def send(self, websocket: WebSocket, event: str, data: Any) -> bool:
        if websocket.application_state != WebSocketState.CONNECTED:
            return False
        try:
            await websocket.send_json({"event": event, "data": data})
            return True
        except (RuntimeError, ConnectionError) as e:
            logger.debug("Send failed: %s", e)
            return False

    async def broadcast(
        self,
        project_id: str,
        event: str,
        data: Any,
        exclude: Optional[WebSocket] = None,
    ) -> int:
        """Send an event to everyone in the room except ``exclude``.

        Returns:
            Number of sockets the event reached
        """
        room = self.rooms.get(project_id)
        if room is None:
            return 0

        delivered = 0
        dead: List[WebSocket] = []
        for connection in list(room.connections):
            if connection is exclude:
                continue
            if await self.send(connection, event, data):
                delivered += 1
            else:
                dead.append(connection)

        for connection in dead:
            self.disconnect(project_id, connection)
        return delivered


manager = ConnectionManager()
