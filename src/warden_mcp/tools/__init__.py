"""Tool registration for Warden MCP."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastmcp import Context, FastMCP

from ..caching import CachedResourceManager
from ..config import WardenSettings
from ..execution import (
    CommandRunner,
    CommandRunnerError,
    OperationConflictError,
    OperationCoordinator,
    OutputLine,
    SessionInfo,
    SessionSupervisor,
    resolve_operation_target,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    run_command: Any
    start_session: Any
    stop_session: Any
    session_logs: Any
    list_sessions: Any
    cli_info: Any
    coordinator: OperationCoordinator
    supervisor: SessionSupervisor
    cli_info_cache: CachedResourceManager[dict[str, Any]]


def _session_payload(info: SessionInfo) -> dict[str, Any]:
    return {
        "session_id": info.session_id,
        "pid": info.pid,
        "operation": info.operation_kind,
        "target": info.target,
        "started_at": info.started_at.isoformat(),
        "is_running": info.is_running,
    }


def _line_payload(line: OutputLine) -> dict[str, Any]:
    return {"timestamp": line.timestamp.isoformat(), "content": line.content}


def _conflict_payload(operation: str, exc: OperationConflictError) -> dict[str, Any]:
    return {
        "status": "conflict",
        "operation": operation,
        "target": exc.target,
        "conflict": exc.conflict,
        "error": str(exc),
    }


def register_tools(
    server: FastMCP,
    *,
    settings: WardenSettings,
    command_runner: CommandRunner | None,
    coordinator: OperationCoordinator | None = None,
    supervisor: SessionSupervisor | None = None,
    cli_info_cache: CachedResourceManager[dict[str, Any]] | None = None,
) -> ToolHandles:
    """Register Warden's MCP tools on the server."""

    coordinator = coordinator or OperationCoordinator(settings.global_operations)
    supervisor = supervisor or SessionSupervisor(
        max_output_lines=settings.session_output_lines,
        stop_timeout=settings.stop_timeout_seconds,
    )
    cli_info_cache = cli_info_cache or CachedResourceManager(
        "cli_info", default_ttl=settings.cache_ttl_seconds
    )

    def _require_runner() -> CommandRunner:
        if command_runner is None:
            raise RuntimeError("CLI runner is unavailable; configure WARDEN_CLI_PATH or WARDEN_CLI_NAME")
        return command_runner

    async def _run_command(
        operation: str,
        args: list[str] | None = None,
        project: str | None = None,
        working_directory: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run the CLI in the foreground while holding the operation's target."""

        runner = _require_runner()
        target = resolve_operation_target(project, working_directory)
        try:
            with coordinator.reserve(operation, target) as reservation:
                result = await runner.run(list(args or []), cwd=working_directory)
        except OperationConflictError as exc:
            _emit_log(
                context,
                "warning",
                "Operation conflict",
                extra={"operation": operation, "target": exc.target, "conflict": exc.conflict},
            )
            return _conflict_payload(operation, exc)

        _emit_log(
            context,
            "info",
            "Command finished",
            extra={"operation": operation, "target": reservation.target, "returncode": result.returncode},
        )
        return {
            "status": "completed" if result.ok else "failed",
            "operation": operation,
            "target": reservation.target,
            "returncode": result.returncode,
            "stdout": result.stdout,
            "stderr": result.stderr,
        }

    async def _start_session(
        operation: str,
        args: list[str] | None = None,
        project: str | None = None,
        working_directory: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Launch the CLI in the background and track it as a session.

        The target stays reserved until the process exits or the session is
        stopped.
        """

        runner = _require_runner()
        supervisor.cleanup_completed_sessions()

        target = resolve_operation_target(project, working_directory)
        acquired = coordinator.try_acquire(operation, target)
        if not acquired.granted:
            exc = OperationConflictError(operation, target, acquired.conflict or "unknown")
            _emit_log(
                context,
                "warning",
                "Operation conflict",
                extra={"operation": operation, "target": target, "conflict": acquired.conflict},
            )
            return _conflict_payload(operation, exc)

        reservation = acquired.reservation
        if reservation is None:
            raise RuntimeError(f"Granted reservation for '{operation}' carries no record")

        def _release() -> None:
            coordinator.release_reservation(reservation)

        try:
            process = runner.launch(list(args or []), cwd=working_directory)
        except (OSError, CommandRunnerError):
            _release()
            raise

        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        session_id = f"{operation}-{stamp}-{uuid4().hex[:6]}"
        if not supervisor.register_session(
            session_id, process, operation, reservation.target, on_close=_release
        ):
            process.kill()
            _release()
            raise RuntimeError(f"Session id collision for '{session_id}'")

        _emit_log(
            context,
            "info",
            "Started background session",
            extra={"session_id": session_id, "operation": operation, "pid": process.pid},
        )
        return {
            "status": "running",
            "session_id": session_id,
            "operation": operation,
            "target": reservation.target,
            "pid": process.pid,
        }

    async def _stop_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """Terminate a background session and its whole process tree."""

        result = await asyncio.to_thread(supervisor.try_stop_session, session_id)
        _emit_log(
            context,
            "info" if result.ok else "warning",
            "Stop session",
            extra={"session_id": session_id, "status": result.status.value},
        )
        payload: dict[str, Any] = {"session_id": session_id, "status": result.status.value}
        if result.message:
            payload["error"] = result.message
        return payload

    def _session_logs(
        session_id: str,
        tail_lines: int | None = None,
        since: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return buffered stdout/stderr lines for a session."""

        try:
            since_dt = datetime.fromisoformat(since) if since else None
        except ValueError:
            return {
                "session_id": session_id,
                "status": "invalid_argument",
                "error": f"'since' must be an ISO 8601 timestamp, got {since!r}",
            }
        logs = supervisor.get_session_logs(session_id, tail_lines=tail_lines, since=since_dt)
        if logs is None:
            return {
                "session_id": session_id,
                "status": "not_found",
                "error": f"Session '{session_id}' not found",
            }

        _emit_log(
            context,
            "debug",
            "Session logs",
            extra={
                "session_id": session_id,
                "stdout_lines": len(logs.output_lines),
                "stderr_lines": len(logs.error_lines),
            },
        )
        return {
            "session_id": logs.session_id,
            "operation": logs.operation_kind,
            "target": logs.target,
            "started_at": logs.started_at.isoformat(),
            "is_running": logs.is_running,
            "stdout": [_line_payload(line) for line in logs.output_lines],
            "stderr": [_line_payload(line) for line in logs.error_lines],
            "total_stdout_lines": logs.total_output_lines,
            "total_stderr_lines": logs.total_error_lines,
        }

    def _list_sessions(context: Context | None = None) -> dict[str, Any]:
        """List running background sessions, sweeping exited ones first."""

        removed = supervisor.cleanup_completed_sessions()
        sessions = [_session_payload(info) for info in supervisor.get_active_sessions()]
        _emit_log(
            context,
            "debug",
            "Listing sessions",
            extra={"count": len(sessions), "cleaned_up": removed},
        )
        return {"count": len(sessions), "cleaned_up": removed, "sessions": sessions}

    async def _cli_info(force_reload: bool = False, context: Context | None = None) -> dict[str, Any]:
        """Report the wrapped CLI's version, served from a time-limited cache."""

        runner = _require_runner()

        async def _load() -> dict[str, Any]:
            result = await runner.version()
            if not result.ok:
                raise CommandRunnerError(
                    result.stderr.strip() or f"Version command failed with exit code {result.returncode}"
                )
            return {"executable": str(runner.executable), "version": result.stdout.strip()}

        entry = await cli_info_cache.get_or_load(_load, force_reload=force_reload)
        _emit_log(
            context,
            "debug",
            "CLI info",
            extra={"force_reload": force_reload, "hit_ratio": cli_info_cache.metrics.hit_ratio},
        )
        return cli_info_cache.describe(entry)

    tool_run = server.tool(
        name="run_command",
        description=(
            "Run the wrapped CLI in the foreground. Operations on the same project, or on the same "
            "working directory when no project is given, are serialized; a conflict is reported "
            "instead of waiting."
        ),
    )(_run_command)

    tool_start = server.tool(
        name="start_session",
        description=(
            "Start a long-running CLI process in the background and return a session id. The "
            "target stays reserved until the session is stopped or has exited."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Background sessions keep running until stopped",
            }
        },
    )(_start_session)

    tool_stop = server.tool(
        name="stop_session",
        description="Stop a background session by killing its entire process tree.",
    )(_stop_session)

    tool_logs = server.tool(
        name="session_logs",
        description=(
            "Fetch buffered stdout/stderr for a session. tail_lines limits the result to the most "
            "recent lines across both streams; since (ISO timestamp) drops older lines."
        ),
    )(_session_logs)

    tool_list = server.tool(
        name="list_sessions",
        description="List running background sessions.",
    )(_list_sessions)

    tool_cli_info = server.tool(
        name="cli_info",
        description="Report the wrapped CLI version (cached; set force_reload=true to refresh).",
    )(_cli_info)

    return ToolHandles(
        run_command=tool_run,
        start_session=tool_start,
        stop_session=tool_stop,
        session_logs=tool_logs,
        list_sessions=tool_list,
        cli_info=tool_cli_info,
        coordinator=coordinator,
        supervisor=supervisor,
        cli_info_cache=cli_info_cache,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["register_tools", "ToolHandles"]
