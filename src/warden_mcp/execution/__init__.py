"""Operation coordination, process sessions and CLI execution."""

from .concurrency import (
    AcquireResult,
    OperationConflictError,
    OperationCoordinator,
    Reservation,
    normalize_target,
    resolve_operation_target,
)
from .runner import (
    CommandNotFoundError,
    CommandResult,
    CommandRunner,
    CommandRunnerError,
)
from .sessions import (
    OutputBuffer,
    OutputLine,
    SessionInfo,
    SessionLogs,
    SessionSupervisor,
    StopResult,
    StopStatus,
)

__all__ = [
    "AcquireResult",
    "CommandNotFoundError",
    "CommandResult",
    "CommandRunner",
    "CommandRunnerError",
    "OperationConflictError",
    "OperationCoordinator",
    "OutputBuffer",
    "OutputLine",
    "Reservation",
    "SessionInfo",
    "SessionLogs",
    "SessionSupervisor",
    "StopResult",
    "StopStatus",
    "normalize_target",
    "resolve_operation_target",
]
