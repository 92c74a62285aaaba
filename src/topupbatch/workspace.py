"""
Scratch workspaces keyed by the full task identity.

A workspace directory holds fixed intermediate file names, so at most one
running task may own it. ``WorkspaceRegistry.acquire`` blocks until the
directory is free.
"""

from __future__ import annotations

import contextlib
import threading
from pathlib import Path
from typing import Dict, Iterator

from topupbatch.scan import Task

WORKSPACE_PREFIX = "topup_work_"


class WorkspaceError(OSError):
    """Raised when a workspace directory cannot be created."""


def workspace_path(work_root: Path, task: Task) -> Path:
    return Path(work_root) / f"{WORKSPACE_PREFIX}{task.key}"


class WorkspaceRegistry:
    def __init__(self, work_root: Path):
        self.work_root = Path(work_root)
        self._guard = threading.Lock()
        self._locks: Dict[Path, threading.Lock] = {}

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(path, threading.Lock())

    @contextlib.contextmanager
    def acquire(self, task: Task) -> Iterator[Path]:
        """Yield the task's workspace, created if needed, held exclusively for the block."""
        path = workspace_path(self.work_root, task)
        lock = self._lock_for(path)
        with lock:
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as err:
                raise WorkspaceError(f"Cannot create workspace {path}: {err}") from err
            yield path
