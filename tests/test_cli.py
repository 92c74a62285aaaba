import json
import logging
from pathlib import Path
from unittest.mock import patch

import pytest

from topupbatch.cli import main
from topupbatch.config import ENV_VARS

from test_pipeline import FakeEngine, _make_task_inputs


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("FSLDIR", raising=False)
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


def _ledgers(root: Path) -> list:
    return sorted(root.glob("topup_batch_status_*.jsonl"))


def test_help_exits_zero(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--help"])

    assert exc.value.code == 0
    assert "--pedir-override" in capsys.readouterr().out


def test_unknown_flag_exits_non_zero(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--bogus"])

    assert exc.value.code != 0
    assert "usage" in capsys.readouterr().err


def test_missing_root_is_fatal(tmp_path):
    assert main(["--root", str(tmp_path / "missing"), "--log-dir", str(tmp_path)]) == 1


def test_dataset_without_subjects_is_fatal(tmp_path):
    root = tmp_path / "bids"
    root.mkdir()

    assert main(["--root", str(root), "--log-dir", str(tmp_path / "logs")]) == 1
    assert _ledgers(root) == []


def test_dry_run_plans_without_engine_or_ledger(tmp_path):
    root = tmp_path / "bids"
    _make_task_inputs(root, "sub-S1", "", "taskA")
    log_dir = tmp_path / "logs"
    engine = FakeEngine()

    with patch("topupbatch.engine._run_command", side_effect=engine):
        code = main(["--root", str(root), "--runs", "taskA", "--dry-run", "--log-dir", str(log_dir)])

    assert code == 0
    assert engine.calls == []
    assert _ledgers(root) == []
    assert not list(root.glob("topup_work_*"))
    log_text = next(log_dir.glob("topup_batch_*.log")).read_text(encoding="utf-8")
    assert "[DRY] sub-S1 (nos) taskA" in log_text


def test_full_run_records_every_task(tmp_path, capsys):
    root = tmp_path / "bids"
    _make_task_inputs(root, "sub-S1", "", "taskA")
    _make_task_inputs(root, "sub-S2", "", "taskA", ap=False)
    (root / "sub-S3").mkdir()
    log_dir = tmp_path / "logs"

    with patch("topupbatch.engine._run_command", side_effect=FakeEngine()):
        code = main(
            ["--root", str(root), "--runs", "taskA", "--workers", "3", "--log-dir", str(log_dir)]
        )

    assert code == 0
    (ledger,) = _ledgers(root)
    records = {r["subject"]: r for r in map(json.loads, ledger.read_text(encoding="utf-8").splitlines())}
    assert {k: r["status"] for k, r in records.items()} == {"sub-S1": "OK", "sub-S2": "SKIP", "sub-S3": "SKIP"}
    assert records["sub-S3"]["reason"] == "no primary series"
    assert (root / "sub-S1" / "func" / "sub-S1_task-taskA_bold_blipUp_blipDown.nii.gz").is_file()

    capsys.readouterr()
    assert main(["--check-ledger", str(ledger)]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["counts"] == {"OK": 1, "SKIP": 2, "FAIL": 0}


def test_environment_supplies_configuration(tmp_path, monkeypatch):
    root = tmp_path / "bids"
    _make_task_inputs(root, "sub-S1", "", "taskA")
    monkeypatch.setenv("ROOT", str(root))
    monkeypatch.setenv("BOLD_RUNS", "taskA")
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("DRY_RUN", "1")

    assert main([]) == 0
    assert _ledgers(root) == []


def test_check_ledger_missing_file(tmp_path, capsys):
    assert main(["--check-ledger", str(tmp_path / "none.jsonl")]) == 1
    assert json.loads(capsys.readouterr().out)["status"] == "FAIL"


def test_no_dry_run_flag_overrides_environment(tmp_path, monkeypatch):
    root = tmp_path / "bids"
    _make_task_inputs(root, "sub-S1", "", "taskA")
    monkeypatch.setenv("DRY_RUN", "1")
    monkeypatch.setenv("PEDIR_OVERRIDE", "j")
    engine = FakeEngine()

    with patch("topupbatch.engine._run_command", side_effect=engine):
        code = main(
            [
                "--root", str(root),
                "--runs", "taskA",
                "--no-dry-run",
                "--pedir-override", "auto",
                "--log-dir", str(tmp_path / "logs"),
            ]
        )

    assert code == 0
    (ledger,) = _ledgers(root)
    (record,) = map(json.loads, ledger.read_text(encoding="utf-8").splitlines())
    assert record["status"] == "OK"
    assert record["attempts"][-1]["ok"] is True
    assert "--inindex=1" in engine.bold_apply_call()
