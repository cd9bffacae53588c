"""FastMCP server bootstrap for Warden."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .caching import CachedResourceManager
from .config import WardenSettings, get_settings
from .execution import (
    CommandNotFoundError,
    CommandRunner,
    OperationCoordinator,
    SessionSupervisor,
)
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the Warden server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[WardenSettings] = None,
    command_runner: CommandRunner | None = None,
    *,
    coordinator: OperationCoordinator | None = None,
    supervisor: SessionSupervisor | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the coordination core wired in."""

    settings = settings or get_settings()

    coordinator = coordinator or OperationCoordinator(settings.global_operations)
    supervisor = supervisor or SessionSupervisor(
        max_output_lines=settings.session_output_lines,
        stop_timeout=settings.stop_timeout_seconds,
    )
    cli_info_cache: CachedResourceManager[dict[str, Any]] = CachedResourceManager(
        "cli_info", default_ttl=settings.cache_ttl_seconds
    )

    runner_provided = command_runner is not None
    cli_metadata: dict[str, Any] = {
        "available": False,
        "executable": None,
        "error": None,
    }

    if not runner_provided:
        try:
            command_runner = CommandRunner(
                Path(settings.cli_path) if settings.cli_path else None,
                name=settings.cli_name,
            )
        except CommandNotFoundError as exc:
            cli_metadata["error"] = str(exc)
            command_runner = None

    if command_runner is not None:
        cli_metadata["available"] = True
        cli_metadata["executable"] = str(command_runner.executable)

    server = FastMCP(
        name="Warden MCP",
        version=__version__,
        instructions=(
            "Warden runs a command-line tool on behalf of many callers. Conflicting operations "
            "on the same project are rejected rather than run concurrently. Use start_session "
            "for long-running processes, session_logs to watch them, and stop_session to "
            "terminate them."
        ),
    )

    handles = register_tools(
        server,
        settings=settings,
        command_runner=command_runner,
        coordinator=coordinator,
        supervisor=supervisor,
        cli_info_cache=cli_info_cache,
    )

    def status_payload(request_id: str | None = None) -> dict[str, Any]:
        """Summarize reservations, sessions and cache state."""

        reservations = [
            {
                "operation": reservation.operation_kind,
                "target": reservation.target,
                "operation_id": reservation.operation_id,
                "started_at": reservation.started_at.isoformat(),
            }
            for reservation in coordinator.reservations()
        ]
        sessions = [
            {
                "session_id": info.session_id,
                "operation": info.operation_kind,
                "target": info.target,
                "pid": info.pid,
                "started_at": info.started_at.isoformat(),
            }
            for info in supervisor.get_active_sessions()
        ]
        cached = cli_info_cache.peek()

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "cli": {
                "name": settings.cli_name,
                "path": settings.cli_path,
                "version": cached.data.get("version") if cached else None,
                **cli_metadata,
            },
            "reservations": {
                "count": len(reservations),
                "items": reservations,
                "global_operations": sorted(coordinator.global_operations),
            },
            "sessions": {
                "count": len(sessions),
                "items": sessions,
            },
            "cache": {
                "cli_info": {
                    "ttl_seconds": cli_info_cache.default_ttl,
                    "cached": cached is not None,
                    **cli_info_cache.metrics.as_dict(),
                },
            },
            "request_id": request_id,
        }

    @server.resource(
        "resource://warden/status",
        name="warden_status",
        title="Warden MCP Status",
        description="Reservations, background sessions and cache metrics for the Warden server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        return json.dumps(status_payload(getattr(context, "request_id", None)))

    setattr(server, "command_runner", command_runner)
    setattr(server, "cli_metadata", cli_metadata)
    setattr(server, "coordinator", coordinator)
    setattr(server, "supervisor", supervisor)
    setattr(server, "cli_info_cache", cli_info_cache)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_payload", status_payload)
    return server


def main() -> None:
    """Entry point for running the Warden MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Warden MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "cli_available": getattr(server, "cli_metadata", {}).get("available"),
        },
    )
    try:
        server.run()
    finally:
        logging.getLogger(__name__).info("Stopping background sessions")
        server.supervisor.clear()


if __name__ == "__main__":
    main()
