"""
Append-only status ledger (JSON Lines), one record per finished task.

Only the scheduler's aggregator writes to a ledger; the lock guards against a
second writer sharing the same instance.
"""

from __future__ import annotations

import json
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from jsonschema import Draft7Validator

from topupbatch.scan import Task

OUTCOMES = ("OK", "SKIP", "FAIL")

LEDGER_RECORD_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["timestamp", "status", "subject", "session", "run", "bold", "output", "summary", "reason"],
    "properties": {
        "timestamp": {"type": "string", "minLength": 1},
        "status": {"enum": list(OUTCOMES)},
        "subject": {"type": "string", "minLength": 1},
        "session": {"type": "string"},
        "run": {"type": "string", "minLength": 1},
        "bold": {"type": ["string", "null"]},
        "output": {"type": ["string", "null"]},
        "summary": {"type": ["string", "null"]},
        "reason": {"type": ["string", "null"]},
        "attempts": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["configuration", "ok", "message"],
                "properties": {
                    "configuration": {"type": "string", "minLength": 1},
                    "ok": {"type": "boolean"},
                    "message": {"type": "string"},
                },
            },
        },
    },
    "allOf": [
        {
            "if": {"properties": {"status": {"enum": ["SKIP", "FAIL"]}}},
            "then": {"properties": {"reason": {"type": "string", "minLength": 1}}},
        }
    ],
    "additionalProperties": True,
}

_VALIDATOR = Draft7Validator(LEDGER_RECORD_SCHEMA)


@dataclass
class ExecutionResult:
    task: Task
    outcome: str
    reason: Optional[str] = None
    bold: Optional[Path] = None
    output: Optional[Path] = None
    summary: Optional[Path] = None
    # One entry per engine configuration tried, in order.
    attempts: List[dict] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.outcome not in OUTCOMES:
            raise ValueError(f"Unknown outcome: {self.outcome}")
        if self.outcome != "OK" and not self.reason:
            raise ValueError(f"{self.outcome} results require a reason")

    def as_record(self, timestamp: Optional[str] = None) -> dict:
        return {
            "timestamp": timestamp or datetime.now().astimezone().isoformat(timespec="seconds"),
            "status": self.outcome,
            "subject": self.task.subject,
            "session": self.task.session,
            "run": self.task.run,
            "bold": _str_or_none(self.bold),
            "output": _str_or_none(self.output),
            "summary": _str_or_none(self.summary),
            "reason": self.reason,
            "attempts": list(self.attempts),
        }


class LedgerError(ValueError):
    """Raised when a ledger record fails validation."""


def validate_record(record: dict) -> None:
    errors = sorted(_VALIDATOR.iter_errors(record), key=lambda e: list(e.path))
    if errors:
        raise LedgerError("; ".join(error.message for error in errors))


class StatusLedger:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)
        self._lock = threading.Lock()
        self._counts: Counter = Counter()

    def record(self, result: ExecutionResult) -> dict:
        record = result.as_record()
        validate_record(record)
        line = json.dumps(record, sort_keys=True) + "\n"
        with self._lock:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
            self._counts[result.outcome] += 1
        return record

    def tally(self) -> Dict[str, int]:
        with self._lock:
            return {outcome: self._counts.get(outcome, 0) for outcome in OUTCOMES}


def read_ledger(path: Path) -> List[dict]:
    records = []
    with Path(path).open("r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            records.append(json.loads(line))
    return records


def check_ledger(path: Path) -> Dict[str, int]:
    """
    Validate every record of an existing ledger and return its tally.

    Raises:
        LedgerError: on unparsable lines or records failing the schema.
    """
    path = Path(path)
    if not path.is_file():
        raise LedgerError(f"Ledger not found: {path}")
    counts: Counter = Counter()
    with path.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as err:
                raise LedgerError(f"{path}:{lineno}: invalid JSON: {err}") from err
            try:
                validate_record(record)
            except LedgerError as err:
                raise LedgerError(f"{path}:{lineno}: {err}") from err
            counts[record["status"]] += 1
    return {outcome: counts.get(outcome, 0) for outcome in OUTCOMES}


def ledger_path(root: Path, stamp: str) -> Path:
    return Path(root) / f"topup_batch_status_{stamp}.jsonl"


def _str_or_none(path: Optional[Path]) -> Optional[str]:
    return str(path) if path is not None else None
