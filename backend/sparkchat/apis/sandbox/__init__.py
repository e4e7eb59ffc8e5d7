"""Sandbox API - run a project's file tree and preview the server it starts.

Each project gets one sandbox: a workspace directory on the server where the
file tree is mounted, dependencies are installed and the app is started on
an allocated port.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, Field

from sparkchat.apis.projects import require_member, require_project_id
from sparkchat.auth import AuthError, AuthorizedUser, AuthUser, authenticate_token, security
from sparkchat.libs.database import fetch_file_tree, get_db_connection
from sparkchat.libs.file_tree import InvalidFileTreeError, normalize_file_tree
from sparkchat.libs.models import SandboxStatus
from sparkchat.libs.sandbox import (
    Sandbox,
    SandboxError,
    SandboxLimitError,
    UnsupportedProjectError,
    plan_run,
    sandbox_manager,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sandbox", tags=["sandbox"])

# Hop-by-hop headers are not forwarded by the preview proxy
HOP_BY_HOP_HEADERS = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade", "host", "content-length",
    "content-encoding", "authorization",
}

# Carries the preview token for requests an iframe page makes on its own
PREVIEW_COOKIE = "sparkchat_preview"

# ============================================================================
# MODELS
# ============================================================================

class RunRequest(BaseModel):
    """Optional tree to run; the stored project tree is used otherwise."""
    model_config = ConfigDict(populate_by_name=True)

    file_tree: Optional[Dict[str, Any]] = Field(default=None, alias="fileTree")

class RunResponse(BaseModel):
    success: bool
    message: str
    project_id: str
    project_type: str
    port: int
    setup: Optional[List[str]] = None
    install: Optional[List[str]] = None
    start: List[str]

class SandboxStatusResponse(BaseModel):
    project_id: str
    status: str
    project_type: Optional[str] = None
    port: Optional[int] = None
    url: Optional[str] = None
    pid: Optional[int] = None
    uptime_seconds: Optional[float] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    health: Optional[str] = None

# ============================================================================
# HELPERS
# ============================================================================

async def _load_tree(project_id: UUID, user: AuthUser) -> Dict[str, Any]:
    """Check membership and return the stored file tree."""
    conn = await get_db_connection()
    try:
        await require_member(conn, project_id, user)
        return await fetch_file_tree(conn, project_id) or {}
    finally:
        await conn.close()


async def _require_access(project_id: str, user: AuthUser) -> UUID:
    pid = require_project_id(project_id)
    conn = await get_db_connection()
    try:
        await require_member(conn, pid, user)
    finally:
        await conn.close()
    return pid


def _require_sandbox(project_id: UUID) -> Sandbox:
    sandbox = sandbox_manager.get(str(project_id))
    if sandbox is None:
        raise HTTPException(status_code=404, detail="Sandbox not started")
    return sandbox


async def _run_in_background(sandbox: Sandbox, file_tree: Dict[str, Any]) -> None:
    try:
        await sandbox.run(file_tree)
    except SandboxError:
        # status and error are recorded on the sandbox
        pass


def _preview_path(project_id: str) -> str:
    return f"{router.prefix}/{project_id}/preview/"


async def get_preview_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthUser:
    """Bearer header, ``?token=`` or the preview cookie.

    Iframes can't send headers: the page is loaded with ``?token=`` and its
    sub-resources (scripts, styles, fetches) carry the cookie set then.
    """
    if credentials:
        token = credentials.credentials
    else:
        token = request.query_params.get("token") or request.cookies.get(PREVIEW_COOKIE)
    try:
        return await authenticate_token(token)
    except AuthError as e:
        logger.info("Rejected preview token: %s", e)
        raise HTTPException(status_code=401, detail="Unauthorized")

# ============================================================================
# API ENDPOINTS
# ============================================================================

@router.post("/{project_id}/run", response_model=RunResponse, status_code=202)
async def run_project(
    project_id: str,
    background_tasks: BackgroundTasks,
    user: AuthorizedUser,
    request: Optional[RunRequest] = None,
):
    """
    Mount, install and start a project's files.

    The run continues in the background; follow it through `/output` and
    `/status`. The request body may carry a `fileTree` to run instead of the
    stored one.
    """
    pid = require_project_id(project_id)
    stored = await _load_tree(pid, user)

    raw_tree = request.file_tree if request and request.file_tree is not None else stored
    try:
        file_tree = normalize_file_tree(raw_tree)
    except InvalidFileTreeError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        plan = plan_run(file_tree)
    except UnsupportedProjectError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        sandbox = sandbox_manager.get_or_create(str(pid))
    except SandboxLimitError as e:
        raise HTTPException(status_code=503, detail=str(e))

    background_tasks.add_task(_run_in_background, sandbox, file_tree)
    logger.info("[%s] Run requested by %s (%s project)", pid, user.email, plan.project_type.value)

    return RunResponse(
        success=True,
        message="Run started",
        project_id=str(pid),
        project_type=plan.project_type.value,
        port=sandbox.port,
        setup=plan.setup,
        install=plan.install,
        start=plan.start,
    )


@router.post("/{project_id}/stop")
async def stop_project(project_id: str, user: AuthorizedUser) -> dict:
    """Stop the install step or running server of a project."""
    pid = await _require_access(project_id, user)
    sandbox = _require_sandbox(pid)

    stopped = await sandbox.stop()
    return {
        "success": True,
        "message": "Process stopped" if stopped else "Nothing was running",
        "project_id": str(pid),
        "status": sandbox.status.value,
    }


@router.get("/{project_id}/status", response_model=SandboxStatusResponse)
async def get_status(project_id: str, user: AuthorizedUser):
    pid = await _require_access(project_id, user)
    sandbox = sandbox_manager.get(str(pid))
    if sandbox is None:
        return SandboxStatusResponse(project_id=str(pid), status=SandboxStatus.NOT_STARTED.value)

    return SandboxStatusResponse(**sandbox.info(), health=await sandbox.check_health())


@router.get("/{project_id}/output")
async def get_output(project_id: str, user: AuthorizedUser, follow: bool = True):
    """
    Install and app output.

    With `follow` (default) this is a server-sent event stream: the buffered
    lines first, then live lines as they are produced. With `follow=false`
    the buffered lines are returned as JSON.
    """
    pid = await _require_access(project_id, user)
    sandbox = _require_sandbox(pid)

    if not follow:
        return {"output": sandbox.output()}

    async def event_stream():
        async for entry in sandbox.subscribe():
            yield f"data: {json.dumps(entry)}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.api_route(
    "/{project_id}/preview/{path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"],
)
async def preview(project_id: str, path: str, request: Request, user: AuthUser = Depends(get_preview_user)):
    """Reverse proxy to the server running in the project's sandbox."""
    pid = await _require_access(project_id, user)
    sandbox = sandbox_manager.get(str(pid))
    if sandbox is None or not sandbox.is_serving:
        raise HTTPException(status_code=409, detail="Project server is not running")

    headers = {
        k: v for k, v in request.headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() != "cookie"
    }
    app_cookies = {k: v for k, v in request.cookies.items() if k != PREVIEW_COOKIE}
    if app_cookies:
        headers["cookie"] = "; ".join(f"{k}={v}" for k, v in app_cookies.items())
    params = [(k, v) for k, v in request.query_params.multi_items() if k != "token"]

    try:
        async with httpx.AsyncClient(base_url=sandbox.url, timeout=30.0) as client:
            upstream = await client.request(
                request.method,
                f"/{path}",
                params=params,
                headers=headers,
                content=await request.body(),
            )
    except httpx.HTTPError as e:
        logger.warning("[%s] Preview request to /%s failed: %s", pid, path, e)
        raise HTTPException(status_code=502, detail="Project server did not respond")

    response_headers = {
        k: v for k, v in upstream.headers.items() if k.lower() not in HOP_BY_HOP_HEADERS
    }
    response = Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=response_headers,
    )
    if request.query_params.get("token") == user.token:
        response.set_cookie(
            PREVIEW_COOKIE,
            user.token,
            max_age=max(int((user.expires_at - datetime.now(timezone.utc)).total_seconds()), 0),
            path=_preview_path(project_id),
            httponly=True,
            samesite="lax",
            secure=request.url.scheme == "https",
        )
    return response
