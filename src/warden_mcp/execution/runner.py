"""Runner for the wrapped command-line tool."""

from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from .utils import sanitize_environment


class CommandRunnerError(RuntimeError):
    """Base class for command runner errors."""


class CommandNotFoundError(CommandRunnerError):
    """Raised when the CLI executable cannot be located."""


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of a foreground CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Execute CLI commands in the foreground or launch them in the background."""

    def __init__(self, executable: Path | None = None, *, name: str = "dotnet") -> None:
        self._executable_path = self._resolve_executable(executable, name)

    @staticmethod
    def _resolve_executable(explicit: Path | None, name: str) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise CommandNotFoundError(f"CLI executable not found at {candidate}")

        binary = shutil.which(name)
        if binary is None:
            raise CommandNotFoundError(f"CLI executable '{name}' not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def version(self) -> CommandResult:
        return await self._invoke("--version")

    async def run(self, args: Sequence[str], *, cwd: str | None = None) -> CommandResult:
        """Run the CLI to completion and capture its output."""

        return await self._invoke(*args, cwd=cwd)

    def launch(self, args: Sequence[str], *, cwd: str | None = None) -> subprocess.Popen[str]:
        """Start the CLI without waiting; stdout/stderr are piped for capture.

        The child leads its own process group so the whole tree can be
        signalled later.
        """

        cmd = [str(self._executable_path), *args]
        return subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=cwd,
            env=sanitize_environment(),
            start_new_session=os.name == "posix",
        )

    async def _invoke(self, *args: str, cwd: str | None = None) -> CommandResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=sanitize_environment(),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return CommandResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeCommandRunner(CommandRunner):
    """Test double that simulates CLI responses."""

    def __init__(  # type: ignore[override]
        self,
        responses: Iterable[CommandResult] | None = None,
        *,
        launch_factory=None,
    ) -> None:
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, ...]] = []
        self._launches: list[tuple[str, ...]] = []
        self._launch_factory = launch_factory
        self._executable_path = Path("/tmp/fake-cli")

    async def _invoke(self, *args: str, cwd: str | None = None) -> CommandResult:  # type: ignore[override]
        self._invocations.append(tuple(args))
        if self._responses:
            return self._responses.pop(0)
        return CommandResult(args=tuple(args), returncode=0, stdout="", stderr="")

    def launch(self, args: Sequence[str], *, cwd: str | None = None):  # type: ignore[override]
        self._launches.append(tuple(args))
        if self._launch_factory is None:
            raise CommandRunnerError("FakeCommandRunner has no launch factory configured")
        return self._launch_factory(tuple(args), cwd)

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations

    @property
    def launches(self) -> list[tuple[str, ...]]:
        return self._launches


__all__ = [
    "CommandNotFoundError",
    "CommandResult",
    "CommandRunner",
    "CommandRunnerError",
    "FakeCommandRunner",
]
