"""
Acquisition parameters from BIDS JSON sidecars.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from topupbatch.resolve import sidecar_for

logger = logging.getLogger(__name__)

DEFAULT_READOUT_TIME = 0.050

# PhaseEncodingDirection -> applytopup --inindex (row of acqp.txt).
PEDIR_TO_INDEX = {"j-": 1, "j": 2}
DEFAULT_INDEX = 1


@dataclass(frozen=True)
class SidecarMetadata:
    total_readout_time: Optional[float] = None
    phase_encoding_direction: Optional[str] = None


@dataclass(frozen=True)
class AcquisitionParams:
    readout_time: float
    phase_encode_index: int
    readout_defaulted: bool = False


def read_sidecar(path: Path) -> SidecarMetadata:
    """Parse a sidecar; a missing, unreadable or malformed file yields empty metadata."""
    path = Path(path)
    if not path.is_file():
        return SidecarMetadata()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as err:
        logger.warning("Unreadable sidecar %s: %s", path, err)
        return SidecarMetadata()
    if not isinstance(raw, dict):
        return SidecarMetadata()

    readout = raw.get("TotalReadoutTime")
    if isinstance(readout, bool) or not isinstance(readout, (int, float)) or readout <= 0:
        readout = None
    pedir = raw.get("PhaseEncodingDirection")
    if not isinstance(pedir, str):
        pedir = None
    return SidecarMetadata(
        total_readout_time=float(readout) if readout is not None else None,
        phase_encoding_direction=pedir,
    )


def phase_encode_index(override: Optional[str], bold_meta: Optional[SidecarMetadata]) -> int:
    if override:
        return PEDIR_TO_INDEX.get(override, DEFAULT_INDEX)
    if bold_meta is not None and bold_meta.phase_encoding_direction:
        return PEDIR_TO_INDEX.get(bold_meta.phase_encoding_direction, DEFAULT_INDEX)
    return DEFAULT_INDEX


def extract_acquisition_params(
    bold: Path,
    ap: Path,
    pedir_override: Optional[str] = None,
    log_prefix: str = "",
) -> AcquisitionParams:
    ap_meta = read_sidecar(sidecar_for(ap))
    readout = ap_meta.total_readout_time
    defaulted = readout is None
    if readout is None:
        logger.warning(
            "%sTotalReadoutTime not in %s; defaulting to %.3f s",
            log_prefix,
            sidecar_for(ap).name,
            DEFAULT_READOUT_TIME,
        )
        readout = DEFAULT_READOUT_TIME

    bold_meta = None if pedir_override else read_sidecar(sidecar_for(bold))
    index = phase_encode_index(pedir_override, bold_meta)
    return AcquisitionParams(readout_time=readout, phase_encode_index=index, readout_defaulted=defaulted)
