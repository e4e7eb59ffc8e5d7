"""Projects API - create projects, manage collaborators and the stored file tree."""

import logging
from typing import Any, Dict, List
from uuid import UUID

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sparkchat.auth import AuthorizedUser, AuthUser
from sparkchat.libs.database import (
    get_db_connection,
    is_project_member,
    parse_uuid,
    store_file_tree,
)
from sparkchat.libs.file_tree import InvalidFileTreeError, normalize_file_tree
from sparkchat.libs.models import Project, UserPublic

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projects", tags=["projects"])

# Pydantic Models

class ProjectCreate(BaseModel):
    """Request model for creating a new project."""
    name: str = Field(min_length=1, max_length=100)

    @field_validator("name", mode="before")
    @classmethod
    def normalize_name(cls, value):
        return value.strip().lower() if isinstance(value, str) else value

class AddUsersRequest(BaseModel):
    """Request to add collaborators to a project."""
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(alias="projectId")
    users: List[str] = Field(min_length=1)

class UpdateFileTreeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(alias="projectId")
    file_tree: Dict[str, Any] = Field(alias="fileTree")

class ProjectResponse(BaseModel):
    """Project with collaborator ids."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    name: str
    users: List[str]
    file_tree: Dict[str, Any] = Field(alias="fileTree")

class ProjectDetail(BaseModel):
    """Project with populated collaborators."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    name: str
    users: List[UserPublic]
    file_tree: Dict[str, Any] = Field(alias="fileTree")

class ProjectEnvelope(BaseModel):
    project: ProjectResponse

class ProjectDetailEnvelope(BaseModel):
    project: ProjectDetail

class ProjectList(BaseModel):
    projects: List[ProjectResponse]

# Helper Functions

def require_project_id(value: str) -> UUID:
    """Parse a project id or fail with 400."""
    project_id = parse_uuid(value)
    if project_id is None:
        raise HTTPException(status_code=400, detail="Invalid project ID")
    return project_id


async def require_member(conn, project_id: UUID, user: AuthUser) -> None:
    """404 unless the user collaborates on the project."""
    if not await is_project_member(conn, project_id, user.sub):
        raise HTTPException(status_code=404, detail="Project not found")


def _project_from_row(row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        file_tree=row["file_tree"] or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        users=list(row["users"] or []),
    )


def _to_response(project: Project) -> ProjectResponse:
    return ProjectResponse(
        id=str(project.id),
        name=project.name,
        users=[str(u) for u in project.users],
        file_tree=project.file_tree,
    )


PROJECT_WITH_USERS_SQL = """
SELECT p.id, p.name, p.file_tree, p.created_at, p.updated_at,
       ARRAY(
           SELECT pu.user_id FROM project_users pu
           WHERE pu.project_id = p.id
           ORDER BY pu.added_at
       ) AS users
FROM projects p
"""

# API Endpoints

@router.post("/create", response_model=ProjectEnvelope, status_code=201)
async def create_project(request: ProjectCreate, user: AuthorizedUser):
    """
    Create a new project owned by the caller.

    The creator is added as the first collaborator; both inserts run in one
    transaction. Project names are unique (case-insensitive).
    """
    conn = await get_db_connection()
    try:
        async with conn.transaction():
            project_id = await conn.fetchval(
                """
                INSERT INTO projects (name)
                VALUES ($1)
                ON CONFLICT (name) DO NOTHING
                RETURNING id
                """,
                request.name
            )
            if not project_id:
                raise HTTPException(status_code=409, detail="Project name already exists")

            await conn.execute(
                "INSERT INTO project_users (project_id, user_id) VALUES ($1, $2::uuid)",
                project_id,
                user.sub
            )

        row = await conn.fetchrow(PROJECT_WITH_USERS_SQL + " WHERE p.id = $1", project_id)
    finally:
        await conn.close()

    logger.info("[%s] Project '%s' created by %s", project_id, request.name, user.email)
    return ProjectEnvelope(project=_to_response(_project_from_row(row)))


@router.get("/all", response_model=ProjectList)
async def list_projects(user: AuthorizedUser):
    """Projects the caller collaborates on, oldest first."""
    conn = await get_db_connection()
    try:
        rows = await conn.fetch(
            PROJECT_WITH_USERS_SQL
            + """
            WHERE EXISTS (
                SELECT 1 FROM project_users me
                WHERE me.project_id = p.id AND me.user_id = $1::uuid
            )
            ORDER BY p.created_at
            """,
            user.sub
        )
    finally:
        await conn.close()

    return ProjectList(projects=[_to_response(_project_from_row(r)) for r in rows])


@router.put("/add-user", response_model=ProjectEnvelope)
async def add_users(request: AddUsersRequest, user: AuthorizedUser):
    """
    Add collaborators to a project.

    Only existing collaborators may add users. Users already on the project
    are ignored.
    """
    project_id = require_project_id(request.project_id)
    user_ids = []
    for raw_id in dict.fromkeys(request.users):
        parsed = parse_uuid(raw_id)
        if parsed is None:
            raise HTTPException(status_code=400, detail=f"Invalid user ID: {raw_id}")
        user_ids.append(parsed)

    conn = await get_db_connection()
    try:
        exists = await conn.fetchval("SELECT 1 FROM projects WHERE id = $1", project_id)
        if not exists:
            raise HTTPException(status_code=404, detail="Project not found")

        if not await is_project_member(conn, project_id, user.sub):
            raise HTTPException(status_code=403, detail="User not belong to this project")

        known = await conn.fetchval(
            "SELECT COUNT(*) FROM users WHERE id = ANY($1::uuid[])",
            user_ids
        )
        if known != len(user_ids):
            raise HTTPException(status_code=400, detail="Unknown user in request")

        await conn.execute(
            """
            INSERT INTO project_users (project_id, user_id)
            SELECT $1, unnest($2::uuid[])
            ON CONFLICT DO NOTHING
            """,
            project_id,
            user_ids
        )
        await conn.execute("UPDATE projects SET updated_at = NOW() WHERE id = $1", project_id)

        row = await conn.fetchrow(PROJECT_WITH_USERS_SQL + " WHERE p.id = $1", project_id)
    finally:
        await conn.close()

    logger.info("[%s] %s added %d collaborator(s)", project_id, user.email, len(user_ids))
    return ProjectEnvelope(project=_to_response(_project_from_row(row)))


@router.get("/get-project/{project_id}", response_model=ProjectDetailEnvelope)
async def get_project(project_id: str, user: AuthorizedUser):
    """Project with collaborator emails and its file tree."""
    pid = require_project_id(project_id)

    conn = await get_db_connection()
    try:
        await require_member(conn, pid, user)

        row = await conn.fetchrow(
            "SELECT id, name, file_tree, created_at, updated_at FROM projects WHERE id = $1",
            pid
        )
        if not row:
            raise HTTPException(status_code=404, detail="Project not found")

        user_rows = await conn.fetch(
            """
            SELECT u.id, u.email
            FROM project_users pu
            JOIN users u ON u.id = pu.user_id
            WHERE pu.project_id = $1
            ORDER BY pu.added_at
            """,
            pid
        )
    finally:
        await conn.close()

    return ProjectDetailEnvelope(project=ProjectDetail(
        id=str(row["id"]),
        name=row["name"],
        users=[UserPublic(id=str(u["id"]), email=u["email"]) for u in user_rows],
        file_tree=row["file_tree"] or {},
    ))


@router.put("/update-file-tree", response_model=ProjectEnvelope)
async def update_file_tree(request: UpdateFileTreeRequest, user: AuthorizedUser):
    """Replace the project's stored file tree."""
    pid = require_project_id(request.project_id)
    try:
        file_tree = normalize_file_tree(request.file_tree)
    except InvalidFileTreeError as e:
        raise HTTPException(status_code=400, detail=str(e))

    conn = await get_db_connection()
    try:
        await require_member(conn, pid, user)
        await store_file_tree(conn, pid, file_tree)
        row = await conn.fetchrow(PROJECT_WITH_USERS_SQL + " WHERE p.id = $1", pid)
    finally:
        await conn.close()

    logger.info("[%s] File tree saved (%d files)", pid, len(file_tree))
    return ProjectEnvelope(project=_to_response(_project_from_row(row)))
