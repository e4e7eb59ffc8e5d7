"""Project Sandbox Runtime

Runs a project's file tree in an isolated workspace directory:
- Mount the file tree into the workspace (stale files removed, node_modules kept)
- Scaffold what the tree is missing (static server, package.json, requirements.txt)
- Install dependencies, then start the app with PORT set to an allocated port
- Stream process output to subscribers and detect when the server is ready
- Tear down the whole process tree on stop/restart
"""

import asyncio
import json
import logging
import os
import re
import shutil
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Deque, Dict, List, Optional

import httpx
import psutil

from sparkchat.libs.config import (
    SANDBOX_BASE_PORT,
    SANDBOX_INSTALL_TIMEOUT,
    SANDBOX_MAX,
    SANDBOX_OUTPUT_LINES,
    SANDBOX_PYTHON,
    SANDBOX_ROOT,
)
from sparkchat.libs.file_tree import FileTree, get_file_contents, is_safe_path
from sparkchat.libs.models import ProjectType, SandboxStatus
from sparkchat.libs.package_detector import detect_packages_from_tree

logger = logging.getLogger(__name__)


class SandboxError(Exception):
    """A sandbox operation failed."""


class UnsupportedProjectError(SandboxError):
    """The file tree has nothing the sandbox knows how to start."""


class SandboxLimitError(SandboxError):
    """No free port for another sandbox."""


class SandboxStopped(SandboxError):
    """The run was cancelled by a stop request."""


# Python projects install into their own environment inside the workspace
VENV_DIR = ".venv"
VENV_PYTHON = f"{VENV_DIR}/bin/python"

# Directories that survive a re-mount
PRESERVED_DIRS = {"node_modules", VENV_DIR, "__pycache__"}

# Output is read in chunks; a line longer than this is emitted in pieces
READ_CHUNK_SIZE = 64 * 1024
MAX_LINE_LENGTH = 1024 * 1024

STATIC_SERVER_JS = """
const express = require('express');
const app = express();
const port = process.env.PORT || 3000;

// Middleware to parse JSON bodies
app.use(express.json());

// Serve static files
app.use(express.static('./'));

// Start the server
app.listen(port, () => {
  console.log(`Server listening on port ${port}`);
});
"""

# "listening on port 3000", "http://localhost:5173", "Running on http://127.0.0.1:8000"
SERVER_READY_PATTERN = re.compile(
    r"(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\bport)\s*[:=]?\s*(\d{2,5})\b",
    re.IGNORECASE,
)

# Port probing for apps that don't log their address
PROBE_INTERVAL = 0.5
PROBE_TIMEOUT = 60.0


# ============================================================================
# RUN PLANNING
# ============================================================================

@dataclass
class RunPlan:
    """How to install and start a file tree."""
    project_type: ProjectType
    install: Optional[List[str]]
    start: List[str]
    scaffold: Dict[str, str] = field(default_factory=dict)
    # creates the environment `install` runs in; skipped once it exists
    setup: Optional[List[str]] = None


def _has_requirements(text: str) -> bool:
    return any(
        line.strip() and not line.strip().startswith("#")
        for line in text.splitlines()
    )


def plan_run(file_tree: FileTree, python: str = SANDBOX_PYTHON) -> RunPlan:
    """Decide scaffolding and commands for a file tree.

    Raises:
        UnsupportedProjectError: if there is no web, JavaScript or Python code
    """
    file_names = list(file_tree)
    has_html = any(name.endswith(".html") for name in file_names)
    js_files = [name for name in file_names if name.endswith(".js") and name != "server.js"]
    has_js = bool(js_files)
    py_files = [name for name in file_names if name.endswith(".py")]
    has_package_json = "package.json" in file_names

    detected = detect_packages_from_tree(file_tree)
    scaffold: Dict[str, str] = {}

    # Simple server for HTML projects
    if has_html and "server.js" not in file_names:
        scaffold["server.js"] = STATIC_SERVER_JS

    if not has_package_json and (has_html or has_js):
        if has_html:
            start_script = "node server.js"
        else:
            start_script = f"node {js_files[0]}"

        dependencies = {"express": "^4.17.1"}
        for package in detected["npm"]:
            dependencies.setdefault(package, "latest")

        package_json = {
            "name": "web-project",
            "version": "1.0.0",
            "description": "Web project created in collaboration",
            "main": "server.js",
            "scripts": {"start": start_script},
            "dependencies": dependencies,
        }
        scaffold["package.json"] = json.dumps(package_json, indent=2)

    if py_files and "requirements.txt" not in file_names:
        # project modules aren't packages
        local_modules = {Path(name).parts[0].removesuffix(".py") for name in py_files}
        requirements = [pkg for pkg in detected["python"] if pkg not in local_modules]
        if requirements:
            scaffold["requirements.txt"] = "\n".join(requirements) + "\n"
        else:
            scaffold["requirements.txt"] = "# No requirements specified\n"

    if has_package_json or has_html or has_js:
        return RunPlan(
            project_type=ProjectType.NODE,
            install=["npm", "install"],
            start=["npm", "start"],
            scaffold=scaffold,
        )

    if py_files:
        requirements_text = scaffold.get("requirements.txt") or get_file_contents(file_tree, "requirements.txt")
        main_file = "main.py" if "main.py" in py_files else py_files[0]
        if not _has_requirements(requirements_text):
            return RunPlan(
                project_type=ProjectType.PYTHON,
                install=None,
                start=[python, "-u", main_file],
                scaffold=scaffold,
            )
        # never install into the server's own interpreter
        return RunPlan(
            project_type=ProjectType.PYTHON,
            setup=[python, "-m", "venv", VENV_DIR],
            install=[VENV_PYTHON, "-m", "pip", "install", "-r", "requirements.txt"],
            start=[VENV_PYTHON, "-u", main_file],
            scaffold=scaffold,
        )

    raise UnsupportedProjectError("Unsupported project type")


# ============================================================================
# PROCESS MANAGEMENT
# ============================================================================

def kill_process_tree(pid: int, timeout: float = 5.0) -> None:
    """Terminate a process and all its children, killing what won't exit."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    processes = parent.children(recursive=True) + [parent]
    for process in processes:
        try:
            process.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(processes, timeout=timeout)
    for process in alive:
        try:
            process.kill()
        except psutil.NoSuchProcess:
            pass
    if alive:
        psutil.wait_procs(alive, timeout=timeout)
        logger.warning("Process tree %s killed forcefully", pid)


class Sandbox:
    """Workspace and process state of one project."""

    def __init__(
        self,
        project_id: str,
        workspace: Path,
        port: int,
        output_lines: int = SANDBOX_OUTPUT_LINES,
        install_timeout: float = SANDBOX_INSTALL_TIMEOUT,
    ):
        self.project_id = project_id
        self.workspace = workspace
        self.port = port
        self.install_timeout = install_timeout

        self.status = SandboxStatus.NOT_STARTED
        self.project_type: Optional[ProjectType] = None
        self.url: Optional[str] = None
        self.error: Optional[str] = None
        self.exit_code: Optional[int] = None
        self.started_at: Optional[float] = None

        self.process: Optional[asyncio.subprocess.Process] = None
        self._install_process: Optional[asyncio.subprocess.Process] = None
        self._stop_requested = False
        self._ready = asyncio.Event()
        self._lock = asyncio.Lock()
        self._output: Deque[Dict[str, Any]] = deque(maxlen=output_lines)
        self._subscribers: List[asyncio.Queue] = []
        self._tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _emit(self, stream: str, text: str) -> None:
        entry = {"stream": stream, "text": text, "time": time.time()}
        self._output.append(entry)
        for queue in list(self._subscribers):
            # a slow subscriber loses its oldest lines, like the buffer
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(entry)

        if stream == "app" and not self._ready.is_set():
            match = SERVER_READY_PATTERN.search(text)
            if match:
                port = int(match.group(1))
                self.url = f"http://127.0.0.1:{port}"
                self._ready.set()
                logger.info("[%s] Server ready on port %s", self.project_id, port)

    def output(self) -> List[Dict[str, Any]]:
        return list(self._output)

    async def subscribe(self) -> AsyncIterator[Dict[str, Any]]:
        """Buffered output followed by live output until the caller stops."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._output.maxlen or 0)
        backlog = list(self._output)
        self._subscribers.append(queue)
        try:
            for entry in backlog:
                yield entry
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)

    def _emit_raw(self, stream: str, raw: bytes) -> None:
        self._emit(stream, raw.decode("utf-8", errors="replace").rstrip("\r\n"))

    async def _pump(self, process: asyncio.subprocess.Process, stream: str) -> None:
        """Emit a process's output line by line until it closes stdout."""
        if process.stdout is None:
            return
        pending = b""
        while True:
            chunk = await process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for raw in lines:
                self._emit_raw(stream, raw)
            if len(pending) > MAX_LINE_LENGTH:
                self._emit_raw(stream, pending)
                pending = b""
        if pending:
            self._emit_raw(stream, pending)

    # ------------------------------------------------------------------
    # Filesystem
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Create the workspace directory."""
        self.status = SandboxStatus.INITIALIZING
        try:
            self.workspace.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self.status = SandboxStatus.FAILED
            self.error = "Failed to initialize"
            raise SandboxError(f"Failed to initialize workspace: {e}") from e
        self.status = SandboxStatus.READY
        logger.info("[%s] Sandbox workspace ready at %s", self.project_id, self.workspace)

    def _target(self, path: str) -> Path:
        if not is_safe_path(path):
            raise SandboxError(f"Invalid file path '{path}'")
        target = (self.workspace / path).resolve()
        if not target.is_relative_to(self.workspace.resolve()):
            raise SandboxError(f"Invalid file path '{path}'")
        return target

    def write_files(self, files: Dict[str, str]) -> None:
        """Write files into the workspace.

        Raises:
            SandboxError: for unsafe paths and filesystem errors
        """
        for path, contents in files.items():
            target = self._target(path)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(contents, encoding="utf-8")
            except OSError as e:
                raise SandboxError(f"Failed to write '{path}': {e}") from e

    def mount(self, file_tree: FileTree) -> None:
        """Mirror a file tree into the workspace."""
        wanted = {self._target(path) for path in file_tree}
        try:
            self.workspace.mkdir(parents=True, exist_ok=True)
            self._remove_stale(wanted)
        except OSError as e:
            raise SandboxError(f"Failed to prepare workspace: {e}") from e
        self.write_files({path: get_file_contents(file_tree, path) for path in file_tree})

        logger.info("[%s] Mounted %d file(s)", self.project_id, len(file_tree))

    def _remove_stale(self, wanted: set) -> None:
        root = self.workspace.resolve()
        for child in sorted(root.rglob("*"), key=lambda p: len(p.parts), reverse=True):
            relative = child.relative_to(root)
            if relative.parts[0] in PRESERVED_DIRS:
                continue
            if child.is_file() and child not in wanted:
                child.unlink()
            elif child.is_dir() and not any(child.iterdir()):
                child.rmdir()

    def destroy(self) -> None:
        """Remove the workspace from disk."""
        shutil.rmtree(self.workspace, ignore_errors=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _spawn(self, command: List[str], env: Optional[Dict[str, str]] = None):
        logger.info("[%s] Command: %s", self.project_id, " ".join(command))
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.workspace),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env or os.environ.copy(),
                start_new_session=True,
            )
        except OSError as e:
            raise SandboxError(f"Failed to start '{command[0]}': {e}") from e

    async def _install(self, plan: RunPlan) -> None:
        if plan.install is None:
            self._emit("system", "No dependencies to install")
            return

        if plan.setup is not None and not (self.workspace / VENV_PYTHON).exists():
            await self._run_install_step(plan.setup, "Environment setup")
        await self._run_install_step(plan.install, "Install")

    async def _run_install_step(self, command: List[str], label: str) -> None:
        self._emit("system", f"$ {' '.join(command)}")
        process = await self._spawn(command)
        self._install_process = process
        try:
            await asyncio.wait_for(
                asyncio.gather(self._pump(process, "install"), process.wait()),
                timeout=self.install_timeout,
            )
        except asyncio.TimeoutError:
            await asyncio.to_thread(kill_process_tree, process.pid)
            await process.wait()
            raise SandboxError(f"{label} timed out after {self.install_timeout:.0f}s")
        finally:
            self._install_process = None

        if self._stop_requested:
            raise SandboxStopped(f"Stopped during {label.lower()}")

        logger.info("[%s] %s completed with exit code %s", self.project_id, label, process.returncode)
        if process.returncode != 0:
            raise SandboxError(f"{label} failed with exit code {process.returncode}")

    async def _start(self, plan: RunPlan) -> None:
        await self._stop_process()

        env = os.environ.copy()
        env["PORT"] = str(self.port)
        env["PYTHONUNBUFFERED"] = "1"

        self._emit("system", f"$ {' '.join(plan.start)}")
        process = await self._spawn(plan.start, env)
        self.process = process
        self.exit_code = None
        self.started_at = time.time()
        self.status = SandboxStatus.RUNNING
        self._tasks = [
            asyncio.create_task(self._watch(process)),
            asyncio.create_task(self._probe(process)),
        ]
        logger.info("[%s] Application started with PID %s", self.project_id, process.pid)

    async def _probe(self, process: asyncio.subprocess.Process) -> None:
        """Mark the sandbox ready once something answers on its port.

        Covers apps that serve without announcing a port in their output.
        """
        url = f"http://127.0.0.1:{self.port}"
        deadline = time.monotonic() + PROBE_TIMEOUT
        async with httpx.AsyncClient() as client:
            while self.process is process and not self._ready.is_set():
                if time.monotonic() > deadline:
                    return
                try:
                    await client.get(url, timeout=1.0)
                except httpx.HTTPError:
                    await asyncio.sleep(PROBE_INTERVAL)
                    continue
                if self.process is process and not self._ready.is_set():
                    self.url = url
                    self._ready.set()
                    logger.info("[%s] Server ready on port %s", self.project_id, self.port)
                return

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        try:
            await self._pump(process, "app")
        except (OSError, ValueError) as e:
            logger.error("[%s] Stopped reading application output: %s", self.project_id, e)
        code = await process.wait()
        self._emit("system", f"Process exited with code {code}")

        # a replaced or stopped process no longer owns the sandbox state
        if self.process is not process:
            return
        self.process = None
        self.exit_code = code
        self.url = None
        self._ready.clear()
        if code == 0:
            self.status = SandboxStatus.STOPPED
        else:
            self.status = SandboxStatus.FAILED
            self.error = f"Process exited with code {code}"
        logger.info("[%s] Application exited with code %s", self.project_id, code)

    async def _stop_process(self) -> bool:
        process, self.process = self.process, None
        self.url = None
        self._ready.clear()
        if process is None or process.returncode is not None:
            return False

        logger.info("[%s] Killing existing process (PID %s)", self.project_id, process.pid)
        await asyncio.to_thread(kill_process_tree, process.pid)
        await process.wait()
        self.exit_code = process.returncode
        return True

    async def run(self, file_tree: FileTree) -> RunPlan:
        """Mount, install and start a file tree.

        Raises:
            SandboxError: if any step fails (status becomes FAILED)
        """
        async with self._lock:
            self._stop_requested = False
            self.error = None
            try:
                if self.status in (SandboxStatus.NOT_STARTED, SandboxStatus.FAILED):
                    self.initialize()
                self.mount(file_tree)
                plan = plan_run(file_tree)
                self.project_type = plan.project_type
                self.write_files(plan.scaffold)

                self.status = SandboxStatus.INSTALLING
                await self._install(plan)
                await self._start(plan)
                return plan
            except SandboxStopped:
                self.status = SandboxStatus.STOPPED
                raise
            except (SandboxError, OSError) as e:
                self.status = SandboxStatus.FAILED
                self.error = str(e)
                self._emit("system", f"Error running project: {e}")
                logger.error("[%s] Error running the project: %s", self.project_id, e)
                if isinstance(e, SandboxError):
                    raise
                raise SandboxError(str(e)) from e

    async def stop(self) -> bool:
        """Stop the install step and/or the running app.

        Returns:
            True if a process was stopped
        """
        stopped = False
        if self._install_process is not None and self._install_process.returncode is None:
            self._stop_requested = True
            await asyncio.to_thread(kill_process_tree, self._install_process.pid)
            stopped = True

        if await self._stop_process():
            stopped = True

        if self.status in (SandboxStatus.RUNNING, SandboxStatus.INSTALLING):
            self.status = SandboxStatus.STOPPED
        if stopped:
            self._emit("system", "Process stopped")
        return stopped

    async def wait_until_ready(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    @property
    def is_serving(self) -> bool:
        return self.status == SandboxStatus.RUNNING and self.url is not None

    def is_alive(self) -> bool:
        if self.process is None or self.process.returncode is not None:
            return False
        try:
            return psutil.Process(self.process.pid).is_running()
        except psutil.NoSuchProcess:
            return False

    async def check_health(self) -> Optional[str]:
        """"healthy" when the app answers HTTP, "unhealthy" otherwise."""
        if not self.is_serving:
            return None
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(self.url, timeout=2.0)
            return "healthy" if response.status_code < 500 else "unhealthy"
        except httpx.HTTPError:
            return "unhealthy"

    def info(self) -> Dict[str, Any]:
        alive = self.is_alive()
        return {
            "project_id": self.project_id,
            "status": self.status.value,
            "project_type": self.project_type.value if self.project_type else None,
            "port": self.port,
            "url": self.url,
            "pid": self.process.pid if alive else None,
            "uptime_seconds": time.time() - self.started_at if alive and self.started_at else None,
            "exit_code": self.exit_code,
            "error": self.error,
        }


# ============================================================================
# REGISTRY
# ============================================================================

class SandboxManager:
    """Tracks one sandbox per project and hands out ports."""

    def __init__(
        self,
        root: Path = SANDBOX_ROOT,
        base_port: int = SANDBOX_BASE_PORT,
        max_sandboxes: int = SANDBOX_MAX,
    ):
        self.root = root
        self.base_port = base_port
        self.max_sandboxes = max_sandboxes
        self.sandboxes: Dict[str, Sandbox] = {}

    def allocate_port(self) -> int:
        """Allocate next available port for a sandbox."""
        used_ports = {sandbox.port for sandbox in self.sandboxes.values()}

        for i in range(self.max_sandboxes):
            candidate_port = self.base_port + i
            if candidate_port not in used_ports:
                return candidate_port

        raise SandboxLimitError(f"No available ports (max {self.max_sandboxes} sandboxes)")

    def get(self, project_id: str) -> Optional[Sandbox]:
        return self.sandboxes.get(project_id)

    def get_or_create(self, project_id: str) -> Sandbox:
        sandbox = self.sandboxes.get(project_id)
        if sandbox is None:
            sandbox = Sandbox(project_id, self.root / project_id, self.allocate_port())
            self.sandboxes[project_id] = sandbox
        return sandbox

    async def stop_all(self) -> List[str]:
        """Stop every sandbox; returns the ids that had a process running."""
        stopped = []
        for project_id, sandbox in list(self.sandboxes.items()):
            try:
                if await sandbox.stop():
                    stopped.append(project_id)
            except (OSError, psutil.Error) as e:
                logger.error("Failed to stop sandbox %s: %s", project_id, e)
        return stopped


sandbox_manager = SandboxManager()
