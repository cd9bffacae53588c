"""Warden MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
import time
from pathlib import Path

from warden_mcp.caching import CachedResourceManager
from warden_mcp.config import WardenSettings
from warden_mcp.execution import (
    CommandNotFoundError,
    CommandRunner,
    SessionSupervisor,
    normalize_target,
    resolve_operation_target,
)


def load_runner(settings: WardenSettings) -> CommandRunner:
    try:
        return CommandRunner(
            Path(settings.cli_path) if settings.cli_path else None,
            name=settings.cli_name,
        )
    except CommandNotFoundError as exc:
        print(f"CLI unavailable: {exc}")
        raise SystemExit(1)


def cmd_settings(args: argparse.Namespace) -> None:
    settings = WardenSettings()
    print(json.dumps(settings.model_dump(mode="json"), indent=2))


def cmd_target(args: argparse.Namespace) -> None:
    target = resolve_operation_target(args.project, args.working_directory)
    print(json.dumps({"target": target, "normalized": normalize_target(target)}, indent=2))


def cmd_cli_info(args: argparse.Namespace) -> None:
    settings = WardenSettings()
    runner = load_runner(settings)
    cache: CachedResourceManager[str] = CachedResourceManager(
        "cli_info", default_ttl=settings.cache_ttl_seconds
    )

    async def _load() -> str:
        result = await runner.version()
        if not result.ok:
            raise RuntimeError(result.stderr.strip() or f"exit code {result.returncode}")
        return result.stdout.strip()

    async def _load_cli_info() -> dict:
        entry = None
        for _ in range(max(args.repeat, 1)):
            entry = await cache.get_or_load(_load)
        return cache.describe(entry)

    try:
        payload = asyncio.run(_load_cli_info())
    except RuntimeError as exc:
        print(f"Version lookup failed: {exc}")
        raise SystemExit(1)
    print(json.dumps(payload, indent=2))


def cmd_session(args: argparse.Namespace) -> None:
    settings = WardenSettings()
    runner = load_runner(settings)
    supervisor = SessionSupervisor(
        max_output_lines=settings.session_output_lines,
        stop_timeout=settings.stop_timeout_seconds,
    )
    cli_args = list(args.cli_args)
    if cli_args and cli_args[0] == "--":
        cli_args = cli_args[1:]
    process = runner.launch(cli_args, cwd=args.working_directory)
    supervisor.register_session("diag", process, "diag", args.working_directory or ".")
    time.sleep(args.seconds)

    logs = supervisor.get_session_logs("diag", tail_lines=args.tail)
    stop = supervisor.try_stop_session("diag")
    payload = {
        "pid": process.pid,
        "stop_status": stop.status.value,
        "stop_error": stop.message,
        "lines": [
            {"stream": stream, "timestamp": line.timestamp.isoformat(), "content": line.content}
            for stream, line in (logs.merged() if logs else [])
        ],
    }
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Warden MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_settings = sub.add_parser("settings", help="Show resolved settings")
    p_settings.set_defaults(func=cmd_settings)

    p_target = sub.add_parser("target", help="Show the reservation target for a request")
    p_target.add_argument("--project")
    p_target.add_argument("--working-directory")
    p_target.set_defaults(func=cmd_target)

    p_cli = sub.add_parser("cli-info", help="Look up the CLI version through the cache")
    p_cli.add_argument(
        "--repeat",
        type=int,
        default=1,
        help="Number of lookups to perform (later ones are cache hits)",
    )
    p_cli.set_defaults(func=cmd_cli_info)

    p_session = sub.add_parser("session", help="Run the CLI briefly as a background session")
    p_session.add_argument("--seconds", type=float, default=2.0)
    p_session.add_argument("--tail", type=int, default=20)
    p_session.add_argument("--working-directory")
    p_session.add_argument("cli_args", nargs=argparse.REMAINDER)
    p_session.set_defaults(func=cmd_session)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
