"""Chat API - per-project WebSocket rooms with the AI assistant in the stream.

Clients connect to ``/ws/projects/{project_id}?token=<jwt>`` and exchange
``{"event": ..., "data": ...}`` frames.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

import asyncpg
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from sparkchat.apis.ai import orchestrator
from sparkchat.auth import AuthError, AuthUser, authenticate_token
from sparkchat.libs.ai_orchestrator import AIServiceError, error_reply, strip_trigger, wants_ai_reply
from sparkchat.libs.chat_timeline import merge_history, parse_timestamp
from sparkchat.libs.config import AI_SENDER_EMAIL, AI_SENDER_ID
from sparkchat.libs.connection_manager import ProjectRoom, manager
from sparkchat.libs.database import (
    fetch_file_tree,
    fetch_history,
    get_db_connection,
    insert_message,
    is_project_member,
    merge_into_file_tree,
    parse_uuid,
)
from sparkchat.libs.file_tree import extract_file_tree
from sparkchat.libs.models import ChatEvent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

CLOSE_UNAUTHORIZED = 4401
CLOSE_FORBIDDEN = 4403

AI_SENDER = {"_id": AI_SENDER_ID, "email": AI_SENDER_EMAIL}


async def _reject(websocket: WebSocket, code: int, reason: str) -> None:
    # accept first so the client sees the application close code
    await websocket.accept()
    await websocket.close(code=code, reason=reason)


async def _persist(project_id: UUID, text: str, sender: Dict[str, Any], timestamp=None) -> Dict[str, Any]:
    """Store a message; if the database is unavailable return it unsaved."""
    try:
        conn = await get_db_connection()
        try:
            return await insert_message(conn, project_id, text, sender, timestamp)
        finally:
            await conn.close()
    except (asyncpg.PostgresError, OSError) as e:
        logger.error("[%s] Could not persist message: %s", project_id, e)
        stamp = timestamp or datetime.now(timezone.utc)
        return {
            "projectId": str(project_id),
            "message": text,
            "sender": sender,
            "timestamp": stamp.isoformat(),
        }


async def _reply_with_ai(room: ProjectRoom, project_id: UUID, trigger: Dict[str, Any]) -> None:
    """Generate the assistant reply to ``trigger`` and apply the files it carries."""
    conn = await get_db_connection()
    try:
        history = await fetch_history(conn, project_id)
        file_tree = await fetch_file_tree(conn, project_id) or {}
    finally:
        await conn.close()

    # the prompt itself is sent separately
    if trigger.get("_id"):
        history = [item for item in history if item.get("_id") != trigger["_id"]]

    try:
        reply = await orchestrator.generate_result(strip_trigger(trigger["message"]), history, file_tree)
    except AIServiceError as e:
        logger.error("[%s] AI reply failed: %s", project_id, e)
        reply = error_reply(str(e))

    files = extract_file_tree(reply)
    merged = None
    if files:
        conn = await get_db_connection()
        try:
            merged = await merge_into_file_tree(conn, project_id, files)
        finally:
            await conn.close()

    saved = await _persist(project_id, reply, AI_SENDER)
    room.timeline.add(saved)
    await manager.broadcast(room.project_id, ChatEvent.PROJECT_MESSAGE.value, saved)

    if merged is not None:
        logger.info("[%s] AI updated %d file(s)", project_id, len(files))
        await manager.broadcast(
            room.project_id,
            ChatEvent.FILE_TREE_UPDATED.value,
            {"fileTree": merged, "files": sorted(files)},
        )


async def _handle_event(
    websocket: WebSocket,
    room: ProjectRoom,
    project_id: UUID,
    user: AuthUser,
    event: Optional[str],
    data: Any,
) -> None:
    data = data if isinstance(data, dict) else {}

    if event == ChatEvent.PROJECT_MESSAGE.value:
        text = data.get("message")
        if not isinstance(text, str) or not text.strip():
            await manager.send(websocket, ChatEvent.ERROR.value, {"message": "Message is empty"})
            return

        sender = {"_id": user.sub, "email": user.email}
        saved = await _persist(project_id, text, sender, parse_timestamp(data.get("timestamp")))
        room.timeline.add(saved)
        await manager.broadcast(room.project_id, ChatEvent.PROJECT_MESSAGE.value, saved, exclude=websocket)

        if wants_ai_reply(text):
            await _reply_with_ai(room, project_id, saved)

    elif event == ChatEvent.MESSAGE_DELETED.value:
        message_id = data.get("messageId")
        if not message_id:
            await manager.send(websocket, ChatEvent.ERROR.value, {"message": "messageId is required"})
            return
        room.timeline.remove(str(message_id))
        await manager.broadcast(room.project_id, event, {"messageId": message_id}, exclude=websocket)

    elif event == ChatEvent.HISTORY_CLEARED.value:
        room.timeline.clear()
        await manager.broadcast(room.project_id, event, {"projectId": room.project_id}, exclude=websocket)

    else:
        await manager.send(websocket, ChatEvent.ERROR.value, {"message": f"Unknown event: {event}"})


@router.websocket("/ws/projects/{project_id}")
async def project_socket(websocket: WebSocket, project_id: str, token: Optional[str] = None):
    try:
        user = await authenticate_token(token)
    except AuthError as e:
        logger.info("Socket rejected: %s", e)
        await _reject(websocket, CLOSE_UNAUTHORIZED, "Unauthorized")
        return

    pid = parse_uuid(project_id)
    history = []
    member = False
    if pid is not None:
        conn = await get_db_connection()
        try:
            member = await is_project_member(conn, pid, user.sub)
            if member:
                history = await fetch_history(conn, pid)
        finally:
            await conn.close()

    if not member:
        logger.info("[%s] %s is not a member", project_id, user.email)
        await _reject(websocket, CLOSE_FORBIDDEN, "Not a project member")
        return

    room_id = str(pid)
    room = await manager.connect(room_id, websocket, user)
    try:
        await manager.send(
            websocket,
            ChatEvent.HISTORY.value,
            merge_history(history, room.timeline.messages()),
        )
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("[%s] Ignoring malformed frame from %s", room_id, user.email)
                continue
            if not isinstance(frame, dict):
                logger.warning("[%s] Ignoring non-object frame from %s", room_id, user.email)
                continue

            await _handle_event(websocket, room, pid, user, frame.get("event"), frame.get("data"))
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(room_id, websocket)
