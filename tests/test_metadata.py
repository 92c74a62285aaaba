import json
import logging
from pathlib import Path

from topupbatch.metadata import (
    DEFAULT_READOUT_TIME,
    SidecarMetadata,
    extract_acquisition_params,
    phase_encode_index,
    read_sidecar,
)


def _write_json(path: Path, payload) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_read_sidecar_parses_fields(tmp_path):
    sidecar = _write_json(tmp_path / "ap.json", {"TotalReadoutTime": 0.045, "PhaseEncodingDirection": "j-"})

    meta = read_sidecar(sidecar)

    assert meta == SidecarMetadata(total_readout_time=0.045, phase_encoding_direction="j-")


def test_read_sidecar_rejects_malformed_readout(tmp_path):
    for value in ("0.05", -1, 0, True, None):
        sidecar = _write_json(tmp_path / "ap.json", {"TotalReadoutTime": value})
        assert read_sidecar(sidecar).total_readout_time is None


def test_read_sidecar_tolerates_invalid_json(tmp_path):
    sidecar = tmp_path / "ap.json"
    sidecar.write_text("{not json", encoding="utf-8")

    assert read_sidecar(sidecar) == SidecarMetadata()


def test_phase_encode_index_precedence():
    positive = SidecarMetadata(phase_encoding_direction="j")

    assert phase_encode_index("j-", positive) == 1
    assert phase_encode_index("j", SidecarMetadata(phase_encoding_direction="j-")) == 2
    assert phase_encode_index(None, positive) == 2
    assert phase_encode_index(None, SidecarMetadata(phase_encoding_direction="i")) == 1
    assert phase_encode_index(None, SidecarMetadata()) == 1
    assert phase_encode_index(None, None) == 1


def test_extract_uses_sidecars(tmp_path):
    bold = tmp_path / "sub-01_task-rs_bold.nii.gz"
    ap = tmp_path / "sub-01_dir-ap_task-rs_epi.nii.gz"
    _write_json(tmp_path / "sub-01_task-rs_bold.json", {"PhaseEncodingDirection": "j"})
    _write_json(tmp_path / "sub-01_dir-ap_task-rs_epi.json", {"TotalReadoutTime": 0.045})

    params = extract_acquisition_params(bold, ap)

    assert params.readout_time == 0.045
    assert params.phase_encode_index == 2
    assert not params.readout_defaulted


def test_override_wins_over_bold_sidecar(tmp_path):
    bold = tmp_path / "sub-01_task-rs_bold.nii"
    ap = tmp_path / "ap.nii"
    _write_json(tmp_path / "sub-01_task-rs_bold.json", {"PhaseEncodingDirection": "j"})

    params = extract_acquisition_params(bold, ap, pedir_override="j-")

    assert params.phase_encode_index == 1


def test_missing_readout_defaults_and_is_logged(tmp_path, caplog):
    bold = tmp_path / "bold.nii.gz"
    ap = tmp_path / "ap.nii.gz"
    _write_json(tmp_path / "ap.json", {"PhaseEncodingDirection": "j-"})

    with caplog.at_level(logging.WARNING, logger="topupbatch.metadata"):
        params = extract_acquisition_params(bold, ap)

    assert params.readout_time == DEFAULT_READOUT_TIME == 0.050
    assert params.readout_defaulted
    assert params.phase_encode_index == 1
    assert "defaulting to 0.050" in caplog.text
