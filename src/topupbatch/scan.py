"""
Dataset scanning: subject/session discovery and task list expansion.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

SUBJECT_PREFIX = "sub-"
SESSION_PREFIX = "ses-"


class DatasetScanError(ValueError):
    """Raised when the dataset root holds no usable subjects."""


@dataclass(frozen=True)
class Task:
    """One (subject, session, run) work item. ``session`` is "" for sessionless datasets."""

    subject: str
    session: str
    run: str

    @property
    def label(self) -> str:
        return f"{self.subject} {self.session or '(nos)'} {self.run}"

    @property
    def key(self) -> str:
        return f"{self.subject}_{self.session or 'nos'}_{self.run}"


def scan_tasks(root: Path, runs: Iterable[str]) -> List[Task]:
    """
    Expand the dataset tree into an ordered task list.

    Subjects and sessions are enumerated in sorted name order; run labels keep
    their configured order inside each subject/session.

    Raises:
        DatasetScanError: when no ``sub-*`` directory exists under ``root``.
    """
    root = Path(root)
    run_labels = list(runs)
    subjects = _list_dirs(root, SUBJECT_PREFIX)
    if not subjects:
        raise DatasetScanError(f"No {SUBJECT_PREFIX}* under {root}")

    tasks: List[Task] = []
    for sub_path in subjects:
        sessions = _list_dirs(sub_path, SESSION_PREFIX)
        session_names: List[str] = [p.name for p in sessions] or [""]
        for session in session_names:
            for run in run_labels:
                tasks.append(Task(subject=sub_path.name, session=session, run=run))
    return tasks


def subject_session_dir(root: Path, subject: str, session: Optional[str]) -> Path:
    if session:
        return Path(root) / subject / session
    return Path(root) / subject


def _list_dirs(parent: Path, prefix: str) -> List[Path]:
    if not parent.is_dir():
        return []
    return sorted(p for p in parent.iterdir() if p.is_dir() and p.name.startswith(prefix))
