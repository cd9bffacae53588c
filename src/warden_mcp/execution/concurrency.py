"""Per-target mutual exclusion for conflicting CLI operations."""

from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Iterator
from uuid import uuid4

logger = logging.getLogger(__name__)


class OperationConflictError(RuntimeError):
    """Raised by :meth:`OperationCoordinator.reserve` when the target is taken."""

    def __init__(self, operation_kind: str, target: str, conflict: str) -> None:
        super().__init__(
            f"Cannot run '{operation_kind}' on {target}: conflicting operation {conflict}"
        )
        self.operation_kind = operation_kind
        self.target = target
        self.conflict = conflict


@dataclass(frozen=True, slots=True)
class Reservation:
    operation_kind: str
    target: str
    operation_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def describe(self) -> str:
        return (
            f"{self.operation_kind} on {self.target or '<global>'} "
            f"(started at {self.started_at:%Y-%m-%d %H:%M:%S})"
        )


@dataclass(frozen=True, slots=True)
class AcquireResult:
    granted: bool
    conflict: str | None = None
    reservation: Reservation | None = None

    def __bool__(self) -> bool:
        return self.granted


def normalize_target(target: str | os.PathLike[str] | None) -> str:
    """Return the canonical comparison key for ``target``.

    Relative paths resolve against the current directory, symlinks are
    followed, separators become ``/`` and the result is lower-cased, so two
    spellings of the same location always collide.
    """

    if target is None:
        return ""
    raw = os.fspath(target).strip()
    if not raw:
        return ""
    try:
        resolved = os.path.realpath(os.path.abspath(os.path.expanduser(raw)))
    except (OSError, ValueError):
        resolved = raw
    return resolved.replace("\\", "/").lower()


def resolve_operation_target(
    project: str | os.PathLike[str] | None = None,
    working_directory: str | os.PathLike[str] | None = None,
) -> str:
    """Pick the target an operation should be serialized on.

    An explicit project path wins. Without one the working directory (or the
    process's current directory) becomes the target, so two operations that
    both fall back to a directory conflict even when their explicit projects
    would not have.
    """

    if project is not None and os.fspath(project).strip():
        return os.fspath(project)
    if working_directory is not None and os.fspath(working_directory).strip():
        return os.fspath(working_directory)
    return os.getcwd()


class OperationCoordinator:
    """In-memory registry of in-flight operations keyed by normalized target."""

    def __init__(self, global_operations: Iterable[str] | None = None) -> None:
        self._lock = threading.Lock()
        self._reservations: dict[str, Reservation] = {}
        self._global_operations = frozenset(global_operations or ())

    @property
    def global_operations(self) -> frozenset[str]:
        return self._global_operations

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._reservations)

    def try_acquire(
        self,
        operation_kind: str,
        target: str | os.PathLike[str] | None,
        operation_id: str | None = None,
    ) -> AcquireResult:
        """Reserve ``target`` for ``operation_kind`` if nothing else holds it.

        Any two operations on the same normalized target conflict, whatever
        their kinds. Global operation kinds additionally conflict with every
        reservation of the same kind.
        """

        key = normalize_target(target)
        with self._lock:
            existing = self._reservations.get(key)
            if existing is not None:
                return AcquireResult(granted=False, conflict=existing.describe())

            if operation_kind in self._global_operations:
                for reservation in self._reservations.values():
                    if reservation.operation_kind == operation_kind:
                        return AcquireResult(
                            granted=False,
                            conflict=f"{reservation.describe()} [global operation]",
                        )

            reservation = Reservation(
                operation_kind=operation_kind,
                target=key,
                operation_id=operation_id or uuid4().hex,
            )
            self._reservations[key] = reservation

        logger.debug(
            "Reserved target",
            extra={"operation": operation_kind, "target": key, "operation_id": reservation.operation_id},
        )
        return AcquireResult(granted=True, reservation=reservation)

    def release(self, target: str | os.PathLike[str] | None) -> bool:
        """Drop the reservation for ``target``; returns whether one existed."""

        key = normalize_target(target)
        with self._lock:
            removed = self._reservations.pop(key, None)
        if removed is not None:
            logger.debug(
                "Released target",
                extra={"operation": removed.operation_kind, "target": key},
            )
        return removed is not None

    def release_reservation(self, reservation: Reservation) -> bool:
        """Drop ``reservation`` only if it is still the one holding its target."""

        with self._lock:
            current = self._reservations.get(reservation.target)
            if current is None or current.operation_id != reservation.operation_id:
                return False
            del self._reservations[reservation.target]
        logger.debug(
            "Released target",
            extra={"operation": reservation.operation_kind, "target": reservation.target},
        )
        return True

    def is_reserved(self, target: str | os.PathLike[str] | None) -> bool:
        key = normalize_target(target)
        with self._lock:
            return key in self._reservations

    def reservations(self) -> list[Reservation]:
        with self._lock:
            return list(self._reservations.values())

    def clear(self) -> None:
        with self._lock:
            self._reservations.clear()

    @contextmanager
    def reserve(
        self,
        operation_kind: str,
        target: str | os.PathLike[str] | None,
    ) -> Iterator[Reservation]:
        """Hold ``target`` for the duration of the ``with`` block."""

        result = self.try_acquire(operation_kind, target)
        if not result.granted:
            raise OperationConflictError(
                operation_kind, normalize_target(target), result.conflict or "unknown"
            )
        reservation = result.reservation
        if reservation is None:
            raise RuntimeError(f"Granted reservation for '{operation_kind}' carries no record")
        try:
            yield reservation
        finally:
            self.release_reservation(reservation)


__all__ = [
    "AcquireResult",
    "OperationConflictError",
    "OperationCoordinator",
    "Reservation",
    "normalize_target",
    "resolve_operation_target",
]
