import asyncio
import json
import socket
import sys
from contextlib import aclosing
from unittest.mock import patch

import pytest

from sparkchat.libs.file_tree import file_node
from sparkchat.libs.models import ProjectType, SandboxStatus
from sparkchat.libs.sandbox import (
    RunPlan,
    Sandbox,
    SandboxError,
    SandboxLimitError,
    SandboxManager,
    UnsupportedProjectError,
    VENV_DIR,
    VENV_PYTHON,
    plan_run,
)

PYTHON = sys.executable


def free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def wait_for(predicate, timeout=10.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


async def finish(sandbox):
    await asyncio.wait_for(asyncio.gather(*sandbox._tasks), timeout=10)


# ============================================================================
# plan_run
# ============================================================================

class TestPlanRun:
    def test_html_project_gets_static_server(self):
        plan = plan_run({"index.html": file_node("<h1>Hi</h1>")}, python=PYTHON)

        assert plan.project_type == ProjectType.NODE
        assert plan.install == ["npm", "install"]
        assert plan.start == ["npm", "start"]
        assert "express.static" in plan.scaffold["server.js"]
        package = json.loads(plan.scaffold["package.json"])
        assert package["scripts"]["start"] == "node server.js"
        assert package["dependencies"] == {"express": "^4.17.1"}

    def test_js_project_detects_dependencies(self):
        plan = plan_run({"app.js": file_node("const axios = require('axios')")}, python=PYTHON)

        assert "server.js" not in plan.scaffold
        package = json.loads(plan.scaffold["package.json"])
        assert package["scripts"]["start"] == "node app.js"
        assert package["dependencies"] == {"express": "^4.17.1", "axios": "latest"}

    def test_existing_package_json_is_kept(self):
        files = {
            "package.json": file_node('{"scripts": {"start": "node index.js"}}'),
            "index.js": file_node("console.log(1)"),
        }

        plan = plan_run(files, python=PYTHON)

        assert plan.project_type == ProjectType.NODE
        assert "package.json" not in plan.scaffold

    def test_python_project_with_packages(self):
        files = {
            "main.py": file_node("import pandas\nimport utils\nfrom sklearn import svm"),
            "utils.py": file_node("import os"),
        }

        plan = plan_run(files, python=PYTHON)

        assert plan.project_type == ProjectType.PYTHON
        assert plan.scaffold["requirements.txt"] == "pandas\nscikit-learn\n"
        # packages go into a workspace environment, not the server's interpreter
        assert plan.setup == [PYTHON, "-m", "venv", VENV_DIR]
        assert plan.install == [VENV_PYTHON, "-m", "pip", "install", "-r", "requirements.txt"]
        assert plan.start == [VENV_PYTHON, "-u", "main.py"]

    def test_python_project_without_packages(self):
        plan = plan_run({"script.py": file_node("print('hi')")}, python=PYTHON)

        assert plan.scaffold["requirements.txt"] == "# No requirements specified\n"
        assert plan.setup is None
        assert plan.install is None
        assert plan.start == [PYTHON, "-u", "script.py"]

    def test_existing_requirements_with_only_comments(self):
        files = {
            "app.py": file_node("print('hi')"),
            "requirements.txt": file_node("# nothing yet\n\n"),
        }

        plan = plan_run(files, python=PYTHON)

        assert plan.scaffold == {}
        assert plan.install is None

    def test_unsupported_project(self):
        with pytest.raises(UnsupportedProjectError):
            plan_run({"README.md": file_node("# Notes")}, python=PYTHON)


# ============================================================================
# Filesystem
# ============================================================================

def test_mount_removes_stale_files_and_keeps_node_modules(tmp_path):
    sandbox = Sandbox("p1", tmp_path / "p1", port=free_port())
    sandbox.mount({"old.js": file_node("old"), "lib/util.js": file_node("u")})
    (sandbox.workspace / "node_modules" / "express").mkdir(parents=True)
    (sandbox.workspace / "node_modules" / "express" / "index.js").write_text("x")

    sandbox.mount({"index.js": file_node("new")})

    assert (sandbox.workspace / "index.js").read_text() == "new"
    assert not (sandbox.workspace / "old.js").exists()
    assert not (sandbox.workspace / "lib").exists()
    assert (sandbox.workspace / "node_modules" / "express" / "index.js").exists()


def test_mount_rejects_paths_outside_workspace(tmp_path):
    sandbox = Sandbox("p1", tmp_path / "p1", port=free_port())

    with pytest.raises(SandboxError):
        sandbox.mount({"../escape.js": file_node("x")})

    assert not (tmp_path / "escape.js").exists()


# ============================================================================
# Lifecycle
# ============================================================================

async def test_run_python_script_to_completion(tmp_path):
    sandbox = Sandbox("p1", tmp_path / "p1", port=free_port())

    plan = await sandbox.run({"main.py": file_node("print('hello from sandbox')")})
    await finish(sandbox)

    assert plan.project_type == ProjectType.PYTHON
    assert sandbox.status == SandboxStatus.STOPPED
    assert sandbox.exit_code == 0
    assert any(entry["text"] == "hello from sandbox" for entry in sandbox.output())
    assert (sandbox.workspace / "requirements.txt").exists()


async def test_failing_app_marks_sandbox_failed(tmp_path):
    sandbox = Sandbox("p1", tmp_path / "p1", port=free_port())

    await sandbox.run({"main.py": file_node("import sys\nsys.exit(3)")})
    await finish(sandbox)

    assert sandbox.status == SandboxStatus.FAILED
    assert sandbox.exit_code == 3
    assert sandbox.info()["error"] == "Process exited with code 3"


async def test_failed_install_stops_the_run(tmp_path):
    sandbox = Sandbox("p1", tmp_path / "p1", port=free_port())
    plan = RunPlan(
        project_type=ProjectType.PYTHON,
        install=[PYTHON, "-c", "import sys; print('resolving'); sys.exit(2)"],
        start=[PYTHON, "-u", "main.py"],
    )

    with patch("sparkchat.libs.sandbox.plan_run", return_value=plan):
        with pytest.raises(SandboxError):
            await sandbox.run({"main.py": file_node("print('never')")})

    assert sandbox.status == SandboxStatus.FAILED
    assert "exit code 2" in sandbox.error
    assert sandbox.process is None
    assert any(entry["stream"] == "install" and entry["text"] == "resolving" for entry in sandbox.output())


async def test_environment_setup_runs_once(tmp_path):
    sandbox = Sandbox("p1", tmp_path / "p1", port=free_port())
    make_env = (
        "import os; os.makedirs('.venv/bin'); "
        "open('.venv/bin/python', 'w').close(); print('created')"
    )
    plan = RunPlan(
        project_type=ProjectType.PYTHON,
        setup=[PYTHON, "-c", make_env],
        install=[PYTHON, "-c", "print('installed')"],
        start=[PYTHON, "-u", "main.py"],
    )
    files = {"main.py": file_node("print('hi')")}

    with patch("sparkchat.libs.sandbox.plan_run", return_value=plan):
        await sandbox.run(files)
        await finish(sandbox)
        await sandbox.run(files)
        await finish(sandbox)

    installs = [e["text"] for e in sandbox.output() if e["stream"] == "install"]
    assert installs == ["created", "installed", "installed"]


async def test_long_output_lines_are_streamed(tmp_path):
    sandbox = Sandbox("p1", tmp_path / "p1", port=free_port())

    await sandbox.run({"main.py": file_node("print('x' * 100000)\nprint('after')")})
    await finish(sandbox)

    assert sandbox.status == SandboxStatus.STOPPED
    assert sandbox.exit_code == 0
    app_lines = [e["text"] for e in sandbox.output() if e["stream"] == "app"]
    assert app_lines == ["x" * 100000, "after"]


async def test_long_install_line_completes_install(tmp_path):
    sandbox = Sandbox("p1", tmp_path / "p1", port=free_port())
    plan = RunPlan(
        project_type=ProjectType.PYTHON,
        install=[PYTHON, "-c", "print('y' * 100000); print('done')"],
        start=[PYTHON, "-u", "main.py"],
    )

    with patch("sparkchat.libs.sandbox.plan_run", return_value=plan):
        await sandbox.run({"main.py": file_node("print('hi')")})
    await finish(sandbox)

    assert sandbox.status == SandboxStatus.STOPPED
    installs = [e["text"] for e in sandbox.output() if e["stream"] == "install"]
    assert installs == ["y" * 100000, "done"]


async def test_file_and_directory_collision_fails_the_run(tmp_path):
    sandbox = Sandbox("p1", tmp_path / "p1", port=free_port())

    with pytest.raises(SandboxError):
        await sandbox.run({"lib.py": file_node("x = 1"), "lib.py/main.py": file_node("print(1)")})

    assert sandbox.status == SandboxStatus.FAILED
    assert "lib.py" in sandbox.error
    assert sandbox.process is None


async def test_filesystem_error_fails_the_run(tmp_path):
    sandbox = Sandbox("p1", tmp_path / "p1", port=free_port())

    with patch.object(Sandbox, "mount", side_effect=PermissionError("Permission denied")):
        with pytest.raises(SandboxError):
            await sandbox.run({"main.py": file_node("print(1)")})

    assert sandbox.status == SandboxStatus.FAILED
    assert sandbox.error == "Permission denied"


async def test_server_ready_health_and_stop(tmp_path):
    port = free_port()
    sandbox = Sandbox("p1", tmp_path / "p1", port=port)
    server = (
        "import http.server, os\n"
        "port = int(os.environ['PORT'])\n"
        "print(f'Serving on port {port}', flush=True)\n"
        "http.server.HTTPServer(('127.0.0.1', port), http.server.SimpleHTTPRequestHandler).serve_forever()\n"
    )

    await sandbox.run({"main.py": file_node(server)})
    try:
        assert await sandbox.wait_until_ready(10)
        assert sandbox.is_serving
        assert sandbox.url == f"http://127.0.0.1:{port}"
        assert sandbox.is_alive()
        assert await sandbox.check_health() == "healthy"
    finally:
        stopped = await sandbox.stop()
    await finish(sandbox)

    assert stopped is True
    assert sandbox.status == SandboxStatus.STOPPED
    assert not sandbox.is_alive()
    assert sandbox.url is None
    assert await sandbox.check_health() is None


async def test_rerun_replaces_running_process(tmp_path):
    sandbox = Sandbox("p1", tmp_path / "p1", port=free_port())
    sleeper = "import time\nprint('started', flush=True)\ntime.sleep(60)\n"

    await sandbox.run({"main.py": file_node(sleeper)})
    await wait_for(lambda: any(e["text"] == "started" for e in sandbox.output()))
    first = sandbox.process

    await sandbox.run({"main.py": file_node(sleeper)})
    try:
        assert first.returncode is not None
        assert sandbox.process is not first
        assert sandbox.status == SandboxStatus.RUNNING
    finally:
        await sandbox.stop()
    await finish(sandbox)


async def test_subscribe_replays_backlog_then_live(tmp_path):
    sandbox = Sandbox("p1", tmp_path / "p1", port=free_port())
    sandbox._emit("system", "first")
    received = []

    async def consume():
        async with aclosing(sandbox.subscribe()) as stream:
            async for entry in stream:
                received.append(entry["text"])
                if len(received) == 2:
                    return

    task = asyncio.create_task(consume())
    await asyncio.sleep(0)
    sandbox._emit("app", "second")
    await asyncio.wait_for(task, timeout=2)

    assert received == ["first", "second"]
    assert sandbox._subscribers == []


async def test_slow_subscriber_keeps_only_recent_lines(tmp_path):
    sandbox = Sandbox("p1", tmp_path / "p1", port=free_port(), output_lines=3)
    sandbox._emit("system", "first")

    async with aclosing(sandbox.subscribe()) as stream:
        assert (await anext(stream))["text"] == "first"
        for i in range(5):
            sandbox._emit("app", f"line {i}")

        assert sandbox._subscribers[0].qsize() == 3
        received = [(await anext(stream))["text"] for _ in range(3)]

    assert received == ["line 2", "line 3", "line 4"]


def test_output_buffer_is_bounded(tmp_path):
    sandbox = Sandbox("p1", tmp_path / "p1", port=free_port(), output_lines=3)
    for i in range(5):
        sandbox._emit("app", f"line {i}")

    assert [e["text"] for e in sandbox.output()] == ["line 2", "line 3", "line 4"]


# ============================================================================
# Manager
# ============================================================================

def test_manager_allocates_ports_and_enforces_limit(tmp_path):
    manager = SandboxManager(root=tmp_path, base_port=9300, max_sandboxes=2)

    first = manager.get_or_create("a")
    second = manager.get_or_create("b")

    assert (first.port, second.port) == (9300, 9301)
    assert manager.get_or_create("a") is first
    assert first.workspace == tmp_path / "a"
    with pytest.raises(SandboxLimitError):
        manager.get_or_create("c")


async def test_manager_stop_all(tmp_path):
    manager = SandboxManager(root=tmp_path, base_port=free_port(), max_sandboxes=1)
    sandbox = manager.get_or_create("a")
    await sandbox.run({"main.py": file_node("import time\ntime.sleep(60)\n")})

    assert await manager.stop_all() == ["a"]
    assert sandbox.status == SandboxStatus.STOPPED
