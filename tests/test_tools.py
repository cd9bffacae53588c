from __future__ import annotations

import asyncio
import os
import subprocess
import sys
import time
from pathlib import Path

import pytest

from warden_mcp.caching import CachedResourceManager
from warden_mcp.config import WardenSettings
from warden_mcp.execution import (
    AcquireResult,
    CommandResult,
    CommandRunnerError,
    OperationCoordinator,
    SessionSupervisor,
)
from warden_mcp.execution.runner import FakeCommandRunner
from warden_mcp.tools import register_tools


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


SCRIPTS = {
    "watch": "import time\nprint('watching', flush=True)\ntime.sleep(60)\n",
    "quick": "print('done')\n",
    "chatty": "import sys, time\nprint('out-1', flush=True)\nsys.stderr.write('err-1\\n')\nsys.stderr.flush()\ntime.sleep(60)\n",
}


def _python_launcher(args: tuple[str, ...], cwd: str | None) -> subprocess.Popen[str]:
    return subprocess.Popen(
        [sys.executable, "-c", SCRIPTS[args[0]]],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        cwd=cwd,
        start_new_session=os.name == "posix",
    )


def _wait_until(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _register(runner=None, **kwargs):
    server = StubServer()
    settings = WardenSettings()
    handles = register_tools(
        server,  # type: ignore[arg-type]
        settings=settings,
        command_runner=runner,
        **kwargs,
    )
    return server, handles


@pytest.fixture
def supervisor():
    sv = SessionSupervisor()
    yield sv
    sv.clear()


def test_register_tools_exposes_all_tools() -> None:
    server, _ = _register(FakeCommandRunner())

    assert set(server._tools) == {
        "run_command",
        "start_session",
        "stop_session",
        "session_logs",
        "list_sessions",
        "cli_info",
    }


def test_run_command_completes_and_releases_target(tmp_path: Path) -> None:
    runner = FakeCommandRunner(
        [CommandResult(args=("build",), returncode=0, stdout="Build succeeded", stderr="")]
    )
    _, handles = _register(runner)

    result = asyncio.run(
        handles.run_command.fn(  # type: ignore[attr-defined]
            operation="build",
            args=["build"],
            working_directory=str(tmp_path),
        )
    )

    assert result["status"] == "completed"
    assert result["returncode"] == 0
    assert result["stdout"] == "Build succeeded"
    assert runner.invocations == [("build",)]
    assert handles.coordinator.active_count == 0


def test_run_command_reports_failure_status(tmp_path: Path) -> None:
    runner = FakeCommandRunner(
        [CommandResult(args=("test",), returncode=1, stdout="", stderr="1 test failed")]
    )
    _, handles = _register(runner)

    result = asyncio.run(
        handles.run_command.fn(operation="test", args=["test"], project=str(tmp_path / "app.csproj"))  # type: ignore[attr-defined]
    )

    assert result["status"] == "failed"
    assert result["stderr"] == "1 test failed"
    assert handles.coordinator.active_count == 0


def test_run_command_conflict_names_holder(tmp_path: Path) -> None:
    coordinator = OperationCoordinator()
    runner = FakeCommandRunner()
    _, handles = _register(runner, coordinator=coordinator)
    coordinator.try_acquire("build", str(tmp_path))

    result = asyncio.run(
        handles.run_command.fn(operation="test", args=["test"], working_directory=str(tmp_path))  # type: ignore[attr-defined]
    )

    assert result["status"] == "conflict"
    assert "build" in result["conflict"]
    assert runner.invocations == []
    assert coordinator.is_reserved(str(tmp_path))


def test_run_command_different_projects_do_not_conflict(tmp_path: Path) -> None:
    coordinator = OperationCoordinator()
    _, handles = _register(FakeCommandRunner(), coordinator=coordinator)
    coordinator.try_acquire("build", str(tmp_path / "a.csproj"))

    result = asyncio.run(
        handles.run_command.fn(  # type: ignore[attr-defined]
            operation="build",
            project=str(tmp_path / "b.csproj"),
            working_directory=str(tmp_path),
        )
    )

    assert result["status"] == "completed"


def test_run_command_without_cli_raises() -> None:
    _, handles = _register(None)

    with pytest.raises(RuntimeError):
        asyncio.run(handles.run_command.fn(operation="build"))  # type: ignore[attr-defined]


def test_session_lifecycle_holds_and_releases_target(tmp_path: Path, supervisor: SessionSupervisor) -> None:
    runner = FakeCommandRunner(launch_factory=_python_launcher)
    _, handles = _register(runner, supervisor=supervisor)

    started = asyncio.run(
        handles.start_session.fn(operation="run", args=["watch"], working_directory=str(tmp_path))  # type: ignore[attr-defined]
    )

    assert started["status"] == "running"
    assert started["session_id"].startswith("run-")
    assert handles.coordinator.is_reserved(str(tmp_path))

    blocked = asyncio.run(
        handles.start_session.fn(operation="watch", args=["watch"], working_directory=str(tmp_path))  # type: ignore[attr-defined]
    )
    assert blocked["status"] == "conflict"
    assert len(runner.launches) == 1

    listing = handles.list_sessions.fn()  # type: ignore[attr-defined]
    assert listing["count"] == 1
    assert listing["sessions"][0]["session_id"] == started["session_id"]

    stopped = asyncio.run(handles.stop_session.fn(started["session_id"]))  # type: ignore[attr-defined]
    assert stopped == {"session_id": started["session_id"], "status": "stopped"}
    assert not handles.coordinator.is_reserved(str(tmp_path))

    again = asyncio.run(handles.stop_session.fn(started["session_id"]))  # type: ignore[attr-defined]
    assert again["status"] == "not_found"
    assert "not found" in again["error"]


def test_exited_session_is_swept_and_releases_target(tmp_path: Path, supervisor: SessionSupervisor) -> None:
    runner = FakeCommandRunner(launch_factory=_python_launcher)
    _, handles = _register(runner, supervisor=supervisor)

    started = asyncio.run(
        handles.start_session.fn(operation="run", args=["quick"], working_directory=str(tmp_path))  # type: ignore[attr-defined]
    )
    assert _wait_until(lambda: supervisor.try_get_session(started["session_id"]).is_running is False)

    listing = handles.list_sessions.fn()  # type: ignore[attr-defined]

    assert listing["count"] == 0
    assert listing["cleaned_up"] == 1
    assert not handles.coordinator.is_reserved(str(tmp_path))


def test_run_command_after_background_exit_is_not_blocked(
    tmp_path: Path, supervisor: SessionSupervisor
) -> None:
    runner = FakeCommandRunner(
        [CommandResult(args=("build",), returncode=0, stdout="Build succeeded", stderr="")],
        launch_factory=_python_launcher,
    )
    _, handles = _register(runner, supervisor=supervisor)

    started = asyncio.run(
        handles.start_session.fn(operation="run", args=["quick"], working_directory=str(tmp_path))  # type: ignore[attr-defined]
    )
    assert started["status"] == "running"
    assert _wait_until(lambda: not handles.coordinator.is_reserved(str(tmp_path)))

    result = asyncio.run(
        handles.run_command.fn(operation="build", args=["build"], working_directory=str(tmp_path))  # type: ignore[attr-defined]
    )

    assert result["status"] == "completed"
    assert supervisor.try_get_session(started["session_id"]) is not None


def test_start_session_launch_failure_releases_target(tmp_path: Path) -> None:
    _, handles = _register(FakeCommandRunner())

    with pytest.raises(CommandRunnerError):
        asyncio.run(
            handles.start_session.fn(operation="run", working_directory=str(tmp_path))  # type: ignore[attr-defined]
        )

    assert handles.coordinator.active_count == 0


def test_session_logs_returns_both_streams(tmp_path: Path, supervisor: SessionSupervisor) -> None:
    runner = FakeCommandRunner(launch_factory=_python_launcher)
    _, handles = _register(runner, supervisor=supervisor)
    started = asyncio.run(
        handles.start_session.fn(operation="run", args=["chatty"], working_directory=str(tmp_path))  # type: ignore[attr-defined]
    )
    session_id = started["session_id"]

    def _both_streams() -> bool:
        logs = handles.session_logs.fn(session_id)  # type: ignore[attr-defined]
        return bool(logs["stdout"]) and bool(logs["stderr"])

    assert _wait_until(_both_streams)
    logs = handles.session_logs.fn(session_id)  # type: ignore[attr-defined]

    assert [line["content"] for line in logs["stdout"]] == ["out-1"]
    assert [line["content"] for line in logs["stderr"]] == ["err-1"]
    assert logs["is_running"] is True
    assert logs["total_stdout_lines"] == 1

    tail = handles.session_logs.fn(session_id, tail_lines=1)  # type: ignore[attr-defined]
    assert len(tail["stdout"]) + len(tail["stderr"]) == 1

    future = handles.session_logs.fn(session_id, since="2999-01-01T00:00:00+00:00")  # type: ignore[attr-defined]
    assert future["stdout"] == [] and future["stderr"] == []


def test_session_logs_unknown_session() -> None:
    _, handles = _register(FakeCommandRunner())

    result = handles.session_logs.fn("missing")  # type: ignore[attr-defined]

    assert result["status"] == "not_found"


def test_cli_info_is_cached() -> None:
    runner = FakeCommandRunner(
        [CommandResult(args=("--version",), returncode=0, stdout="8.0.100\n", stderr="")]
    )
    _, handles = _register(runner)

    async def _scenario():
        first = await handles.cli_info.fn()  # type: ignore[attr-defined]
        second = await handles.cli_info.fn()  # type: ignore[attr-defined]
        return first, second

    first, second = asyncio.run(_scenario())

    assert first["data"]["version"] == "8.0.100"
    assert second["data"] == first["data"]
    assert runner.invocations == [("--version",)]
    assert second["cache"]["metrics"]["hits"] == 1
    assert second["cache"]["metrics"]["misses"] == 1


def test_cli_info_force_reload_refreshes() -> None:
    runner = FakeCommandRunner(
        [
            CommandResult(args=("--version",), returncode=0, stdout="8.0.100", stderr=""),
            CommandResult(args=("--version",), returncode=0, stdout="8.0.200", stderr=""),
        ]
    )
    cache: CachedResourceManager[dict] = CachedResourceManager("cli_info", default_ttl=300)
    _, handles = _register(runner, cli_info_cache=cache)

    async def _scenario():
        await handles.cli_info.fn()  # type: ignore[attr-defined]
        return await handles.cli_info.fn(force_reload=True)  # type: ignore[attr-defined]

    refreshed = asyncio.run(_scenario())

    assert refreshed["data"]["version"] == "8.0.200"
    assert cache.metrics.misses == 2


def test_cli_info_failure_is_not_cached() -> None:
    runner = FakeCommandRunner(
        [
            CommandResult(args=("--version",), returncode=1, stdout="", stderr="sdk missing"),
            CommandResult(args=("--version",), returncode=0, stdout="8.0.100", stderr=""),
        ]
    )
    _, handles = _register(runner)

    with pytest.raises(CommandRunnerError):
        asyncio.run(handles.cli_info.fn())  # type: ignore[attr-defined]

    recovered = asyncio.run(handles.cli_info.fn())  # type: ignore[attr-defined]
    assert recovered["data"]["version"] == "8.0.100"


def test_session_logs_rejects_malformed_since(tmp_path: Path, supervisor: SessionSupervisor) -> None:
    runner = FakeCommandRunner(launch_factory=_python_launcher)
    _, handles = _register(runner, supervisor=supervisor)
    started = asyncio.run(
        handles.start_session.fn(operation="run", args=["watch"], working_directory=str(tmp_path))  # type: ignore[attr-defined]
    )

    result = handles.session_logs.fn(started["session_id"], since="yesterday")  # type: ignore[attr-defined]

    assert result["status"] == "invalid_argument"
    assert "yesterday" in result["error"]


def test_start_session_rejects_grant_without_record(tmp_path: Path) -> None:
    class RecordlessCoordinator(OperationCoordinator):
        def try_acquire(self, operation_kind, target, operation_id=None):
            return AcquireResult(granted=True)

    runner = FakeCommandRunner(launch_factory=_python_launcher)
    _, handles = _register(runner, coordinator=RecordlessCoordinator())

    with pytest.raises(RuntimeError):
        asyncio.run(
            handles.start_session.fn(operation="run", args=["watch"], working_directory=str(tmp_path))  # type: ignore[attr-defined]
        )
    assert runner.launches == []
