"""Database connection helper and shared queries."""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

import asyncpg

from sparkchat.libs.config import DATABASE_URL

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    email TEXT NOT NULL UNIQUE,
    password TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS projects (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name TEXT NOT NULL UNIQUE,
    file_tree JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS project_users (
    project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    added_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (project_id, user_id)
);

CREATE TABLE IF NOT EXISTS messages (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    message TEXT NOT NULL,
    sender JSONB NOT NULL,
    timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS messages_project_timestamp_idx
    ON messages (project_id, timestamp);

CREATE TABLE IF NOT EXISTS revoked_tokens (
    token TEXT PRIMARY KEY,
    expires_at TIMESTAMPTZ NOT NULL
);
"""


async def get_db_connection():
    """Get database connection."""
    conn = await asyncpg.connect(DATABASE_URL)
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )
    return conn


async def init_schema():
    """Create tables if they don't exist yet."""
    conn = await get_db_connection()
    try:
        await conn.execute(SCHEMA_SQL)
    finally:
        await conn.close()


def parse_uuid(value: str) -> Optional[UUID]:
    """Return the UUID for a string id, or None when it is malformed."""
    try:
        return UUID(str(value))
    except (ValueError, TypeError):
        return None


def message_from_row(row) -> Dict[str, Any]:
    """Convert a messages row into the payload clients receive."""
    timestamp = row["timestamp"]
    return {
        "_id": str(row["id"]),
        "projectId": str(row["project_id"]),
        "message": row["message"],
        "sender": row["sender"],
        "timestamp": timestamp.isoformat() if isinstance(timestamp, datetime) else timestamp,
    }


async def is_project_member(conn, project_id: UUID, user_id: str) -> bool:
    """Check whether a user collaborates on a project."""
    found = await conn.fetchval(
        "SELECT 1 FROM project_users WHERE project_id = $1 AND user_id = $2",
        project_id,
        UUID(user_id),
    )
    return bool(found)


async def insert_message(
    conn,
    project_id: UUID,
    message: str,
    sender: Dict[str, Any],
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Persist a chat message and return it in client form."""
    row = await conn.fetchrow(
        """
        INSERT INTO messages (project_id, message, sender, timestamp)
        VALUES ($1, $2, $3, COALESCE($4, NOW()))
        RETURNING id, project_id, message, sender, timestamp
        """,
        project_id,
        message,
        sender,
        timestamp,
    )
    return message_from_row(row)


async def fetch_history(conn, project_id: UUID) -> List[Dict[str, Any]]:
    """All messages of a project, oldest first."""
    rows = await conn.fetch(
        """
        SELECT id, project_id, message, sender, timestamp
        FROM messages
        WHERE project_id = $1
        ORDER BY timestamp ASC
        """,
        project_id,
    )
    return [message_from_row(row) for row in rows]


async def fetch_file_tree(conn, project_id: UUID) -> Optional[Dict[str, Any]]:
    """Stored file tree of a project, or None if the project doesn't exist."""
    row = await conn.fetchrow(
        "SELECT file_tree FROM projects WHERE id = $1",
        project_id,
    )
    if row is None:
        return None
    return row["file_tree"] or {}


async def store_file_tree(conn, project_id: UUID, file_tree: Dict[str, Any]) -> None:
    """Replace the file tree stored on a project."""
    await conn.execute(
        "UPDATE projects SET file_tree = $1, updated_at = NOW() WHERE id = $2",
        file_tree,
        project_id,
    )


async def merge_into_file_tree(
    conn, project_id: UUID, files: Dict[str, Any]
) -> Optional[Dict[str, Any]]:
    """Add or replace files in the stored tree and return the resulting tree.

    The merge happens in the UPDATE itself, so edits stored since the tree
    was last read are kept. Returns None if the project doesn't exist.
    """
    row = await conn.fetchrow(
        """
        UPDATE projects
        SET file_tree = file_tree || $1::jsonb, updated_at = NOW()
        WHERE id = $2
        RETURNING file_tree
        """,
        files,
        project_id,
    )
    if row is None:
        return None
    return row["file_tree"] or {}
