"""
FSL TOPUP / applytopup invocation.

The correction engine is opaque: this module only builds its command lines,
runs them, and reports which parameter configuration succeeded.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

DEGRADED_ARGS = ("--warpres=6", "--subsamp=1")
CONFIG_NAME = "b02b0.cnf"


@dataclass(frozen=True)
class EngineConfiguration:
    name: str
    args: tuple[str, ...]


@dataclass
class EngineAttempt:
    configuration: str
    ok: bool
    message: str

    def as_dict(self) -> dict:
        return {"configuration": self.configuration, "ok": self.ok, "message": _tail(self.message)}


@dataclass
class TopupOutputs:
    """Output prefixes/paths written by one topup call, all inside the workspace."""

    work_dir: Path

    @property
    def coefficients(self) -> Path:
        return self.work_dir / "topup_results"

    @property
    def field_hz(self) -> Path:
        return self.work_dir / "field_Hz.nii.gz"

    @property
    def unwarped(self) -> Path:
        return self.work_dir / "unwarped_blips"

    @property
    def warpfield(self) -> Path:
        return self.work_dir / "warpfield_mm"

    @property
    def jacobian(self) -> Path:
        return self.work_dir / "jac_det"

    @property
    def log(self) -> Path:
        return self.work_dir / "topup_run.log"


@dataclass
class TopupResult:
    ok: bool
    attempts: List[EngineAttempt] = field(default_factory=list)

    @property
    def configuration(self) -> Optional[str]:
        for attempt in self.attempts:
            if attempt.ok:
                return attempt.configuration
        return None


def config_candidates() -> List[Path]:
    fsldir = os.environ.get("FSLDIR", "")
    return [
        Path(f"{fsldir}/etc/flirtsch/{CONFIG_NAME}"),
        Path(f"{fsldir}/etc/{CONFIG_NAME}"),
        Path(f"/usr/share/fsl/etc/flirtsch/{CONFIG_NAME}"),
        Path(f"/usr/local/fsl/etc/flirtsch/{CONFIG_NAME}"),
    ]


def find_topup_config() -> Optional[Path]:
    for candidate in config_candidates():
        if candidate.is_file():
            return candidate
    return None


def engine_configurations(config_file: Optional[Path]) -> List[EngineConfiguration]:
    """Parameter sets to try in order: the bundled profile when present, then the degraded set."""
    configurations = []
    if config_file is not None:
        configurations.append(EngineConfiguration(name=f"config:{config_file}", args=(f"--config={config_file}",)))
    configurations.append(EngineConfiguration(name="degraded", args=DEGRADED_ARGS))
    return configurations


def topup_command(
    blips: Path,
    acqp: Path,
    outputs: TopupOutputs,
    configuration: EngineConfiguration,
    threads: int,
) -> List[str]:
    return [
        "topup",
        f"--imain={blips}",
        f"--datain={acqp}",
        *configuration.args,
        f"--nthr={threads}",
        f"--out={outputs.coefficients}",
        f"--fout={outputs.field_hz}",
        f"--iout={outputs.unwarped}",
        f"--dfout={outputs.warpfield}",
        f"--jacout={outputs.jacobian}",
        f"--logout={outputs.log}",
        "-v",
    ]


def run_topup(
    blips: Path,
    acqp: Path,
    outputs: TopupOutputs,
    configurations: Sequence[EngineConfiguration],
    threads: int = 1,
    log_prefix: str = "",
) -> TopupResult:
    """Try each configuration in order until one succeeds."""
    result = TopupResult(ok=False)
    for configuration in configurations:
        logger.info("%sRunning topup [%s] (nthr=%d)", log_prefix, configuration.name, threads)
        ok, message = _run_command(topup_command(blips, acqp, outputs, configuration, threads))
        result.attempts.append(EngineAttempt(configuration=configuration.name, ok=ok, message=message))
        if ok:
            result.ok = True
            return result
        logger.warning("%stopup [%s] failed: %s", log_prefix, configuration.name, _tail(message))
    return result


def applytopup_command(
    inputs: Sequence[Path],
    acqp: Path,
    indices: Sequence[int],
    coefficients: Path,
    out: Path,
) -> List[str]:
    return [
        "applytopup",
        f"--imain={','.join(str(p) for p in inputs)}",
        f"--datain={acqp}",
        f"--inindex={','.join(str(i) for i in indices)}",
        f"--topup={coefficients}",
        "--method=jac",
        f"--out={out}",
    ]


def run_applytopup(
    inputs: Sequence[Path],
    acqp: Path,
    indices: Sequence[int],
    coefficients: Path,
    out: Path,
) -> tuple[bool, str]:
    """Run applytopup; ``out`` is a prefix, the image lands at ``<out>.nii.gz``."""
    return _run_command(applytopup_command(inputs, acqp, indices, coefficients, out))


def _run_command(cmd: List[str]) -> tuple[bool, str]:
    logger.debug("-> %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, text=True, capture_output=True, check=True)
    except FileNotFoundError:
        return False, f"Command not found: {cmd[0]}"
    except subprocess.CalledProcessError as err:
        output = "\n".join(part for part in [err.stdout, err.stderr] if part)
        return False, output.strip()
    output = "\n".join(part for part in [result.stdout, result.stderr] if part)
    return True, output.strip()


def _tail(message: str, lines: int = 3) -> str:
    return " | ".join(message.splitlines()[-lines:]) or "(no output)"
