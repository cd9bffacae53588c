"""Supervisor for background CLI process sessions.

Tracks subprocesses by session id, captures their stdout/stderr into bounded
per-stream buffers, and terminates whole process trees on request.
"""

from __future__ import annotations

import itertools
import logging
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import IO, Any, Callable, Iterator, Protocol

import psutil

from .utils import kill_process_tree

logger = logging.getLogger(__name__)

MAX_OUTPUT_LINES = 1000
DEFAULT_STOP_TIMEOUT = 5.0
EXIT_POLL_INTERVAL = 0.05


class ProcessHandle(Protocol):
    """The subset of :class:`subprocess.Popen` the supervisor relies on."""

    pid: int
    stdout: IO[Any] | None
    stderr: IO[Any] | None

    def poll(self) -> int | None:
        ...

    def wait(self, timeout: float | None = None) -> int:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class OutputLine:
    timestamp: datetime
    content: str
    sequence: int


class OutputBuffer:
    """Bounded, thread-safe line buffer; the oldest lines are evicted first."""

    def __init__(self, max_lines: int = MAX_OUTPUT_LINES) -> None:
        if max_lines < 1:
            raise ValueError("max_lines must be at least 1")
        self._lines: deque[OutputLine] = deque(maxlen=max_lines)
        self._lock = threading.Lock()
        self._captured = 0

    @property
    def max_lines(self) -> int:
        return self._lines.maxlen or 0

    @property
    def captured(self) -> int:
        """Total number of lines ever appended, including evicted ones."""

        with self._lock:
            return self._captured

    def append(self, line: OutputLine) -> None:
        with self._lock:
            self._lines.append(line)
            self._captured += 1

    def snapshot(self) -> list[OutputLine]:
        with self._lock:
            return list(self._lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


class StopStatus(str, Enum):
    STOPPED = "stopped"
    NOT_FOUND = "not_found"
    TERMINATION_FAILED = "termination_failed"


@dataclass(frozen=True, slots=True)
class StopResult:
    session_id: str
    status: StopStatus
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is StopStatus.STOPPED


@dataclass(frozen=True, slots=True)
class SessionInfo:
    session_id: str
    pid: int | None
    operation_kind: str
    target: str
    started_at: datetime
    is_running: bool


@dataclass(frozen=True, slots=True)
class SessionLogs:
    session_id: str
    operation_kind: str
    target: str
    started_at: datetime
    is_running: bool
    output_lines: tuple[OutputLine, ...]
    error_lines: tuple[OutputLine, ...]
    total_output_lines: int
    total_error_lines: int
    captured_output_lines: int
    captured_error_lines: int

    def merged(self) -> list[tuple[str, OutputLine]]:
        """Interleave both streams in capture order as ``(stream, line)`` pairs."""

        pairs = [("stdout", line) for line in self.output_lines]
        pairs.extend(("stderr", line) for line in self.error_lines)
        pairs.sort(key=lambda pair: (pair[1].timestamp, pair[1].sequence))
        return pairs


@dataclass(slots=True)
class ProcessSession:
    session_id: str
    process: ProcessHandle
    operation_kind: str
    target: str
    started_at: datetime
    stdout_buf: OutputBuffer
    stderr_buf: OutputBuffer
    on_close: Callable[[], None] | None = None
    sequence: Iterator[int] = field(default_factory=itertools.count)
    threads: list[threading.Thread] = field(default_factory=list)
    close_lock: threading.Lock = field(default_factory=threading.Lock)
    completed: bool = False
    closed: bool = False


class SessionSupervisor:
    """Registry of background process sessions.

    Registry mutations are serialized by one lock. Output capture runs on
    reader threads that only touch their session's buffers.
    """

    def __init__(
        self,
        max_output_lines: int = MAX_OUTPUT_LINES,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._sessions: dict[str, ProcessSession] = {}
        self._lock = threading.Lock()
        self._max_output_lines = max_output_lines
        self._stop_timeout = stop_timeout
        self._clock = clock

    @property
    def stop_timeout(self) -> float:
        return self._stop_timeout

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_session(
        self,
        session_id: str,
        process: ProcessHandle,
        operation_kind: str,
        target: str,
        on_close: Callable[[], None] | None = None,
    ) -> bool:
        """Start tracking ``process`` under ``session_id``.

        Returns ``False`` without touching the existing session when the id is
        already registered. ``on_close`` runs once, as soon as the process
        exits or the session is disposed, whichever happens first. The
        session itself stays queryable until it is stopped or swept.
        """

        if not session_id or not session_id.strip():
            raise ValueError("Session ID cannot be empty")
        if process is None:
            raise TypeError("process must not be None")

        with self._lock:
            if session_id in self._sessions:
                logger.warning("Session id already registered", extra={"session_id": session_id})
                return False

            session = ProcessSession(
                session_id=session_id,
                process=process,
                operation_kind=operation_kind,
                target=target,
                started_at=self._clock(),
                stdout_buf=OutputBuffer(self._max_output_lines),
                stderr_buf=OutputBuffer(self._max_output_lines),
                on_close=on_close,
            )
            for name, stream, buffer in (
                ("stdout", process.stdout, session.stdout_buf),
                ("stderr", process.stderr, session.stderr_buf),
            ):
                if stream is None:
                    continue
                reader = threading.Thread(
                    target=self._pump,
                    args=(session, stream, buffer),
                    name=f"{session_id}-{name}",
                    daemon=True,
                )
                session.threads.append(reader)
            session.threads.append(
                threading.Thread(
                    target=self._watch,
                    args=(session,),
                    name=f"{session_id}-watch",
                    daemon=True,
                )
            )
            self._sessions[session_id] = session

        for thread in session.threads:
            thread.start()

        logger.info(
            "Registered session",
            extra={
                "session_id": session_id,
                "operation": operation_kind,
                "target": target,
                "pid": _safe_pid(process),
            },
        )
        return True

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def try_stop_session(self, session_id: str) -> StopResult:
        """Kill the session's process tree and forget the session.

        The session is removed before any signal is sent so concurrent stops
        cannot both act on it. A process that has already exited, or vanishes
        mid-kill, counts as stopped.
        """

        with self._lock:
            session = self._sessions.pop(session_id, None)

        if session is None:
            logger.warning("Stop requested for unknown session", extra={"session_id": session_id})
            return StopResult(
                session_id=session_id,
                status=StopStatus.NOT_FOUND,
                message=(
                    f"Session '{session_id}' not found. "
                    "It may have already completed or been stopped."
                ),
            )

        try:
            if not _is_running(session.process):
                logger.info(
                    "Session already exited",
                    extra={"session_id": session_id, "returncode": _safe_returncode(session.process)},
                )
                return StopResult(session_id=session_id, status=StopStatus.STOPPED)

            pid = session.process.pid
            logger.info("Stopping session", extra={"session_id": session_id, "pid": pid})
            kill_process_tree(pid)
            try:
                session.process.wait(timeout=self._stop_timeout)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "Session did not exit in time",
                    extra={"session_id": session_id, "timeout": self._stop_timeout},
                )
            return StopResult(session_id=session_id, status=StopStatus.STOPPED)
        except ProcessLookupError:
            logger.debug("Session exited during stop", extra={"session_id": session_id})
            return StopResult(session_id=session_id, status=StopStatus.STOPPED)
        except (psutil.AccessDenied, OSError) as exc:
            logger.error(
                "Failed to stop session",
                extra={"session_id": session_id, "error": str(exc)},
            )
            return StopResult(
                session_id=session_id,
                status=StopStatus.TERMINATION_FAILED,
                message=f"Failed to stop session '{session_id}': {exc}",
            )
        finally:
            self._dispose(session)

    def cleanup_completed_sessions(self) -> int:
        """Dispose and forget every session whose process has exited."""

        with self._lock:
            completed = [
                session_id
                for session_id, session in self._sessions.items()
                if not _is_running(session.process)
            ]
            removed = [self._sessions.pop(session_id) for session_id in completed]

        for session in removed:
            self._dispose(session)
            logger.debug("Cleaned up completed session", extra={"session_id": session.session_id})
        return len(removed)

    def clear(self) -> None:
        """Best-effort termination and disposal of every tracked session."""

        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()

        for session in sessions:
            if _is_running(session.process):
                try:
                    kill_process_tree(session.process.pid)
                    session.process.wait(timeout=self._stop_timeout)
                except (psutil.Error, OSError, subprocess.TimeoutExpired) as exc:
                    logger.debug(
                        "Ignoring termination failure during clear",
                        extra={"session_id": session.session_id, "error": str(exc)},
                    )
            self._dispose(session)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def try_get_session(self, session_id: str) -> SessionInfo | None:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return None
        return _info(session)

    def get_active_sessions(self) -> list[SessionInfo]:
        with self._lock:
            sessions = list(self._sessions.values())
        active = []
        for session in sessions:
            info = _info(session)
            if info.is_running:
                active.append(info)
        return active

    @property
    def active_session_count(self) -> int:
        with self._lock:
            sessions = list(self._sessions.values())
        return sum(1 for session in sessions if _is_running(session.process))

    def get_session_logs(
        self,
        session_id: str,
        tail_lines: int | None = None,
        since: datetime | None = None,
    ) -> SessionLogs | None:
        """Snapshot buffered output for ``session_id``.

        ``since`` keeps lines stamped at or after it. ``tail_lines`` keeps the
        most recent lines across both streams combined.
        """

        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return None

        output_lines = session.stdout_buf.snapshot()
        error_lines = session.stderr_buf.snapshot()

        if since is not None:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            output_lines = [line for line in output_lines if line.timestamp >= since]
            error_lines = [line for line in error_lines if line.timestamp >= since]

        if tail_lines is not None and tail_lines > 0:
            if len(output_lines) + len(error_lines) > tail_lines:
                combined = [(line, False) for line in output_lines]
                combined.extend((line, True) for line in error_lines)
                combined.sort(key=lambda pair: (pair[0].timestamp, pair[0].sequence))
                window = combined[-tail_lines:]
                output_lines = [line for line, is_error in window if not is_error]
                error_lines = [line for line, is_error in window if is_error]

        return SessionLogs(
            session_id=session.session_id,
            operation_kind=session.operation_kind,
            target=session.target,
            started_at=session.started_at,
            is_running=_is_running(session.process),
            output_lines=tuple(output_lines),
            error_lines=tuple(error_lines),
            total_output_lines=len(session.stdout_buf),
            total_error_lines=len(session.stderr_buf),
            captured_output_lines=session.stdout_buf.captured,
            captured_error_lines=session.stderr_buf.captured,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _pump(self, session: ProcessSession, stream: IO[Any], buffer: OutputBuffer) -> None:
        """Read ``stream`` line by line into ``buffer`` until EOF."""

        try:
            for raw in stream:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                buffer.append(
                    OutputLine(
                        timestamp=self._clock(),
                        content=raw.rstrip("\r\n"),
                        sequence=next(session.sequence),
                    )
                )
        except (OSError, ValueError) as exc:
            # The pipe was closed underneath us.
            logger.debug(
                "Output capture ended early",
                extra={"session_id": session.session_id, "error": str(exc)},
            )
        finally:
            try:
                stream.close()
            except (OSError, ValueError):
                pass

    def _watch(self, session: ProcessSession) -> None:
        """Block until the session's process exits, then run its close hook."""

        try:
            session.process.wait()
        except Exception as exc:
            logger.debug(
                "Waiting for session exit failed",
                extra={"session_id": session.session_id, "error": str(exc)},
            )
        # Handles whose wait() returns before exit are polled instead.
        while not session.closed and _is_running(session.process):
            time.sleep(EXIT_POLL_INTERVAL)

        if not session.closed:
            logger.info(
                "Session process exited",
                extra={
                    "session_id": session.session_id,
                    "returncode": _safe_returncode(session.process),
                },
            )
        self._complete(session)

    def _complete(self, session: ProcessSession) -> None:
        with session.close_lock:
            if session.completed:
                return
            session.completed = True
        if session.on_close is not None:
            try:
                session.on_close()
            except Exception:
                logger.exception("Session close callback failed", extra={"session_id": session.session_id})

    def _dispose(self, session: ProcessSession) -> None:
        if session.closed:
            return
        session.closed = True
        _is_running(session.process)  # reaps an exited child
        self._complete(session)


def _is_running(process: ProcessHandle) -> bool:
    # A handle that can no longer be queried is treated as exited.
    try:
        return process.poll() is None
    except Exception as exc:
        logger.debug("Process handle unavailable", extra={"error": str(exc)})
        return False


def _safe_pid(process: ProcessHandle) -> int | None:
    try:
        return process.pid
    except Exception:
        return None


def _safe_returncode(process: ProcessHandle) -> int | None:
    try:
        return process.poll()
    except Exception:
        return None


def _info(session: ProcessSession) -> SessionInfo:
    return SessionInfo(
        session_id=session.session_id,
        pid=_safe_pid(session.process),
        operation_kind=session.operation_kind,
        target=session.target,
        started_at=session.started_at,
        is_running=_is_running(session.process),
    )


__all__ = [
    "DEFAULT_STOP_TIMEOUT",
    "MAX_OUTPUT_LINES",
    "OutputBuffer",
    "OutputLine",
    "ProcessHandle",
    "SessionInfo",
    "SessionLogs",
    "SessionSupervisor",
    "StopResult",
    "StopStatus",
]
