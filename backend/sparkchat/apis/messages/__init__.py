"""Messages API - REST access to a project's persisted chat history."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from sparkchat.apis.projects import require_member, require_project_id
from sparkchat.auth import AuthorizedUser
from sparkchat.libs.chat_timeline import parse_timestamp
from sparkchat.libs.connection_manager import manager
from sparkchat.libs.database import (
    fetch_history,
    get_db_connection,
    insert_message,
    parse_uuid,
)
from sparkchat.libs.models import Sender

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])

# Pydantic Models

class SaveMessageRequest(BaseModel):
    """All fields are optional here so a missing one maps to a 400, not a 422."""
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    sender: Optional[Sender] = None
    project_id: Optional[str] = Field(default=None, alias="projectId")
    timestamp: Optional[Any] = None

class SaveMessageResponse(BaseModel):
    success: bool
    message: str
    data: Dict[str, Any]

class HistoryResponse(BaseModel):
    success: bool
    messages: List[Dict[str, Any]]

class ClearResponse(BaseModel):
    success: bool
    message: str
    deleted_count: int = Field(serialization_alias="deletedCount")

# API Endpoints

@router.post("/save", response_model=SaveMessageResponse, status_code=201)
async def save_message(request: SaveMessageRequest, user: AuthorizedUser):
    """
    Persist a chat message.

    Clients that also sent the message over the socket get it de-duplicated:
    the stored copy replaces the pending one in the room's live timeline.
    """
    if not request.message or not request.sender or not request.project_id:
        raise HTTPException(status_code=400, detail="Missing required fields")

    project_id = require_project_id(request.project_id)

    conn = await get_db_connection()
    try:
        await require_member(conn, project_id, user)
        saved = await insert_message(
            conn,
            project_id,
            request.message,
            request.sender.model_dump(by_alias=True, exclude_none=True),
            parse_timestamp(request.timestamp),
        )
    finally:
        await conn.close()

    room = manager.rooms.get(str(project_id))
    if room is not None:
        room.timeline.add(saved)

    return SaveMessageResponse(success=True, message="Message saved successfully", data=saved)


@router.get("/history/{project_id}", response_model=HistoryResponse)
async def get_history(project_id: str, user: AuthorizedUser):
    """Messages of a project, oldest first."""
    pid = require_project_id(project_id)

    conn = await get_db_connection()
    try:
        await require_member(conn, pid, user)
        messages = await fetch_history(conn, pid)
    finally:
        await conn.close()

    return HistoryResponse(success=True, messages=messages)


@router.delete("/delete/{message_id}")
async def delete_message(message_id: str, user: AuthorizedUser):
    mid = parse_uuid(message_id)
    if mid is None:
        raise HTTPException(status_code=404, detail="Message not found")

    conn = await get_db_connection()
    try:
        project_id = await conn.fetchval("SELECT project_id FROM messages WHERE id = $1", mid)
        if project_id is None:
            raise HTTPException(status_code=404, detail="Message not found")

        await require_member(conn, project_id, user)
        await conn.execute("DELETE FROM messages WHERE id = $1", mid)
    finally:
        await conn.close()

    room = manager.rooms.get(str(project_id))
    if room is not None:
        room.timeline.remove(str(mid))

    logger.info("[%s] Message %s deleted by %s", project_id, mid, user.email)
    return {"success": True, "message": "Message deleted successfully"}


@router.delete("/clear/{project_id}", response_model=ClearResponse)
async def clear_history(project_id: str, user: AuthorizedUser):
    """Delete every message of a project."""
    pid = require_project_id(project_id)

    conn = await get_db_connection()
    try:
        await require_member(conn, pid, user)
        deleted = await conn.fetchval(
            """
            WITH deleted AS (
                DELETE FROM messages WHERE project_id = $1 RETURNING 1
            )
            SELECT COUNT(*) FROM deleted
            """,
            pid
        )
    finally:
        await conn.close()

    room = manager.rooms.get(str(pid))
    if room is not None:
        room.timeline.clear()

    logger.info("[%s] Cleared %d messages", pid, deleted)
    return ClearResponse(
        success=True,
        message=f"Cleared {deleted} messages from project",
        deleted_count=deleted,
    )
