from pathlib import Path

import pytest

from topupbatch.config import DEFAULT_AP_KEYS, DEFAULT_RUNS, ConfigError, load_config


def test_defaults_apply_when_only_root_given(tmp_path):
    config = load_config({"root": tmp_path}, environ={})

    assert config.root == tmp_path
    assert config.runs == DEFAULT_RUNS
    assert config.ap_keys == DEFAULT_AP_KEYS
    assert config.workers == 1
    assert config.engine_threads == 1
    assert config.pedir_override is None
    assert config.dry_run is False
    assert config.workspace_root == tmp_path


def test_cli_takes_precedence_over_environment(tmp_path):
    environ = {"ROOT": str(tmp_path), "N_WORKERS": "3", "BOLD_RUNS": "rs", "TOPUP_NTHR": "4"}

    config = load_config({"workers": 2, "runs": None}, environ=environ)

    assert config.workers == 2
    assert config.runs == ("rs",)
    assert config.engine_threads == 4


def test_environment_overrides_yaml(tmp_path):
    config_file = tmp_path / "batch.yaml"
    config_file.write_text(
        f"root: {tmp_path}\nruns: [doors1, rs]\nworkers: 5\nap_keys: ap\n",
        encoding="utf-8",
    )

    config = load_config({}, config_path=config_file, environ={"N_WORKERS": "2"})

    assert config.runs == ("doors1", "rs")
    assert config.workers == 2
    assert config.ap_keys == ("ap",)


def test_run_labels_are_deduplicated_in_order(tmp_path):
    config = load_config({"root": tmp_path, "runs": "rs doors1 rs"}, environ={})

    assert config.runs == ("rs", "doors1")


def test_missing_root_is_fatal():
    with pytest.raises(ConfigError, match="required"):
        load_config({}, environ={})


def test_nonexistent_root_is_fatal(tmp_path):
    with pytest.raises(ConfigError, match="ROOT not found"):
        load_config({"root": tmp_path / "nope"}, environ={})


@pytest.mark.parametrize("workers", ["0", "-1", "two"])
def test_invalid_worker_count_is_fatal(tmp_path, workers):
    with pytest.raises(ConfigError):
        load_config({"root": tmp_path}, environ={"N_WORKERS": workers})


def test_unknown_pedir_override_is_fatal(tmp_path):
    with pytest.raises(ConfigError, match="PEDIR"):
        load_config({"root": tmp_path}, environ={"PEDIR_OVERRIDE": "i"})


def test_dry_run_from_environment(tmp_path):
    config = load_config({"root": tmp_path}, environ={"DRY_RUN": "1"})

    assert config.dry_run is True


def test_unknown_yaml_key_is_fatal(tmp_path):
    config_file = tmp_path / "batch.yaml"
    config_file.write_text(f"root: {tmp_path}\nbogus: 1\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="bogus"):
        load_config({}, config_path=config_file, environ={})


def test_work_root_expands_user(tmp_path):
    config = load_config({"root": tmp_path, "work_root": Path("~/scratch")}, environ={})

    assert config.workspace_root == Path.home() / "scratch"


def test_cli_can_clear_environment_overrides(tmp_path):
    environ = {"ROOT": str(tmp_path), "PEDIR_OVERRIDE": "j", "DRY_RUN": "1"}

    config = load_config({"pedir_override": "auto", "dry_run": False}, environ=environ)

    assert config.pedir_override is None
    assert config.dry_run is False
