"""Process helpers shared by the runner and the session supervisor."""

from __future__ import annotations

import logging
import os
import signal
from typing import Mapping

import psutil

logger = logging.getLogger(__name__)

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def kill_process_tree(pid: int) -> int:
    """Forcefully kill ``pid`` and every descendant.

    Returns the number of processes signalled. Processes that vanish while the
    tree is being walked are skipped. ``psutil.AccessDenied`` and ``OSError``
    propagate: they mean the OS refused to signal a live process.
    """

    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return 0
    try:
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    killed = 0
    for child in children:
        try:
            child.kill()
            killed += 1
        except psutil.NoSuchProcess:
            continue

    try:
        parent.kill()
        killed += 1
    except psutil.NoSuchProcess:
        pass

    _kill_process_group(pid)
    return killed


def _kill_process_group(pid: int) -> None:
    # Children reparented away from the tree still share the leader's group.
    if not hasattr(os, "killpg"):
        return
    try:
        pgid = os.getpgid(pid)
    except (ProcessLookupError, OSError):
        return
    if pgid != pid or pgid == os.getpgrp():
        return
    try:
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError as exc:
        logger.debug("Could not signal process group", extra={"pgid": pgid, "error": str(exc)})


__all__ = ["kill_process_tree", "sanitize_environment"]
