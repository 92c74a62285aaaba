"""
Per-task TOPUP pipeline: resolve inputs, prepare blips, run the engine,
apply the correction to the BOLD series, compute QA metrics, and place the
outputs next to the original BOLD.

Every task ends in exactly one ExecutionResult (OK, SKIP or FAIL). Step
failures raise TaskFailure internally and are converted at the task boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from shutil import copy2
from typing import List, Optional, Sequence

from topupbatch import imageops
from topupbatch.config import BatchConfig
from topupbatch.engine import (
    TopupOutputs,
    engine_configurations,
    find_topup_config,
    run_applytopup,
    run_topup,
)
from topupbatch.imageops import ImageGridError, ImageReadError
from topupbatch.ledger import ExecutionResult
from topupbatch.metadata import AcquisitionParams, extract_acquisition_params
from topupbatch.resolve import ResolvedInputs, nifti_stem, resolve_inputs
from topupbatch.scan import Task
from topupbatch.workspace import WorkspaceError, WorkspaceRegistry

logger = logging.getLogger(__name__)

CORRECTED_SUFFIX = "_blipUp_blipDown"
SUMMARY_SUFFIX = "_blipAnB"
MISSING_REPORT_PREFIX = "blipMissing_"

# acqp.txt rows: row 1 is the AP blip (j-), row 2 the PA blip (j).
ACQP_VECTORS = ("0 -1 0", "0 1 0")


class TaskFailure(Exception):
    """A required processing step failed; ``reason`` goes to the ledger."""

    def __init__(self, reason: str, attempts: Optional[List[dict]] = None):
        super().__init__(reason)
        self.reason = reason
        self.attempts = attempts or []


@dataclass
class PipelineSettings:
    root: Path
    workspaces: WorkspaceRegistry
    ap_keys: Sequence[str]
    pa_keys: Sequence[str]
    pedir_override: Optional[str] = None
    engine_threads: int = 1
    topup_config: Optional[Path] = None

    @classmethod
    def from_config(cls, config: BatchConfig) -> "PipelineSettings":
        return cls(
            root=config.root,
            workspaces=WorkspaceRegistry(config.workspace_root),
            ap_keys=config.ap_keys,
            pa_keys=config.pa_keys,
            pedir_override=config.pedir_override,
            engine_threads=config.engine_threads,
            topup_config=find_topup_config(),
        )


@dataclass
class QAMetrics:
    field_stats: dict = field(default_factory=dict)
    vsm_vox_stats: dict = field(default_factory=dict)
    vsm_mm_stats: dict = field(default_factory=dict)
    before_stats: dict = field(default_factory=dict)
    after_stats: Optional[dict] = None
    after_note: str = ""


def corrected_name(bold: Path) -> str:
    return f"{nifti_stem(bold)}{CORRECTED_SUFFIX}.nii.gz"


def summary_name(bold: Path) -> str:
    return f"{nifti_stem(bold)}{SUMMARY_SUFFIX}.txt"


def format_seconds(value: float) -> str:
    return f"{value:.10g}"


def process_task(task: Task, settings: PipelineSettings) -> ExecutionResult:
    """Run one task to a terminal outcome; never raises for per-task problems."""
    inputs = resolve_inputs(settings.root, task, settings.ap_keys, settings.pa_keys)
    if inputs.bold is None:
        logger.info("SKIP [%s] no BOLD", task.label)
        return ExecutionResult(task=task, outcome="SKIP", reason="no primary series")

    try:
        with settings.workspaces.acquire(task) as work_dir:
            missing = inputs.missing_sides
            if missing:
                report = write_missing_report(work_dir, task, inputs, settings.ap_keys, settings.pa_keys)
                logger.info("SKIP [%s] missing %s fmap -> %s", task.label, "/".join(missing), report)
                return ExecutionResult(
                    task=task,
                    outcome="SKIP",
                    reason=f"missing auxiliary image(s): {', '.join(missing)}",
                    bold=inputs.bold,
                    output=report,
                )
            return _correct(task, inputs, work_dir, settings)
    except WorkspaceError as err:
        logger.error("FAIL [%s] %s", task.label, err)
        return ExecutionResult(task=task, outcome="FAIL", reason=f"workspace unavailable: {err}", bold=inputs.bold)
    except TaskFailure as err:
        logger.error("FAIL [%s] %s", task.label, err.reason)
        return ExecutionResult(
            task=task, outcome="FAIL", reason=err.reason, bold=inputs.bold, attempts=err.attempts
        )


def describe_plan(task: Task, settings: PipelineSettings) -> List[str]:
    """Dry-run view of a task: the detected BOLD and blips, nothing is written."""
    inputs = resolve_inputs(settings.root, task, settings.ap_keys, settings.pa_keys)
    return [
        f"[DRY] {task.label}",
        f"      BOLD: {inputs.bold or '<none>'}",
        f"      AP?: {inputs.ap or '<none>'}",
        f"      PA?: {inputs.pa or '<none>'}",
    ]


def write_missing_report(
    work_dir: Path,
    task: Task,
    inputs: ResolvedInputs,
    ap_keys: Sequence[str],
    pa_keys: Sequence[str],
) -> Path:
    stem = nifti_stem(inputs.bold) if inputs.bold is not None else task.key
    report = work_dir / f"{MISSING_REPORT_PREFIX}{stem}.txt"
    lines = [
        f"Timestamp: {datetime.now().astimezone().isoformat(timespec='seconds')}",
        f"Subject: {task.subject}",
        f"Session: {task.session}",
        f"Run: {task.run}",
        f"BOLD: {inputs.bold}",
        "",
        "Missing fmap(s):",
    ]
    for side in inputs.missing_sides:
        lines.append(f"  - {side} (or {side}-keyword match) is missing")
    lines.extend(
        [
            "",
            f"Searched in: {inputs.fmap_dir if inputs.fmap_dir.is_dir() else '<no fmap dir>'}",
            f"AP keywords: {' '.join(ap_keys)}",
            f"PA keywords: {' '.join(pa_keys)}",
        ]
    )
    report.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return report


def write_acqp(path: Path, readout_time: float) -> Path:
    rows = [f"{vector} {format_seconds(readout_time)}" for vector in ACQP_VECTORS]
    with path.open("w", encoding="utf-8", newline="\n") as f:
        f.write("\n".join(rows) + "\n")
    return path


def _correct(task: Task, inputs: ResolvedInputs, work_dir: Path, settings: PipelineSettings) -> ExecutionResult:
    bold, ap, pa = inputs.bold, inputs.ap, inputs.pa
    if bold is None or ap is None or pa is None:
        raise TaskFailure(f"missing auxiliary image(s): {', '.join(inputs.missing_sides) or 'BOLD'}")
    prefix = f"[{task.label}] "
    logger.info("---- %s ----", task.label)
    logger.info("%sBOLD : %s", prefix, bold)
    logger.info("%sBLIPA: %s", prefix, ap)
    logger.info("%sBLIPB: %s", prefix, pa)

    params = extract_acquisition_params(bold, ap, settings.pedir_override, log_prefix=prefix)
    logger.info("%sTRT=%ss", prefix, format_seconds(params.readout_time))
    _log_headers(prefix, {"AP": ap, "PA": pa, "BOLD": bold})

    blip_a = work_dir / "blipA_1vol.nii.gz"
    blip_b = work_dir / "blipB_1vol.nii.gz"
    for side, source, dest in (("AP", ap, blip_a), ("PA", pa, blip_b)):
        try:
            count = imageops.reduce_to_single_volume(source, dest)
        except ImageReadError as err:
            raise TaskFailure(f"cannot read input: {side} ({err})") from err
        if count > 1:
            logger.info("%s%s has %d vols -> mean -> %s", prefix, source.name, count, dest.name)

    try:
        before_abs = imageops.abs_difference(blip_a, blip_b, work_dir / "before_diff_abs.nii.gz")
        acqp = write_acqp(work_dir / "acqp.txt", params.readout_time)
        blips = imageops.merge_volumes([blip_a, blip_b], work_dir / "blips.nii.gz")
        blip_count = imageops.n_volumes(blips)
    except ImageGridError as err:
        raise TaskFailure(f"volume-count mismatch: {err}") from err
    except ImageReadError as err:
        raise TaskFailure(f"cannot read input: {err}") from err
    if blip_count != 2:
        raise TaskFailure(f"volume-count mismatch: blips has {blip_count} vols, expected 2")

    outputs = TopupOutputs(work_dir)
    _remove_stale(outputs.field_hz)
    configurations = engine_configurations(settings.topup_config)
    topup = run_topup(blips, acqp, outputs, configurations, settings.engine_threads, log_prefix=prefix)
    attempts = [attempt.as_dict() for attempt in topup.attempts]
    if not topup.ok:
        if len(topup.attempts) > 1:
            raise TaskFailure("engine failed after retry", attempts)
        raise TaskFailure("engine failed", attempts)
    if not outputs.field_hz.is_file():
        raise TaskFailure(f"missing expected output file: {outputs.field_hz.name}", attempts)
    logger.info("%stopup succeeded with [%s]", prefix, topup.configuration)

    try:
        qa = _field_metrics(outputs, blip_a, params, work_dir)
        qa.before_stats = imageops.abs_percentile_stats(before_abs, percentiles=(95, 99))
    except ImageReadError as err:
        raise TaskFailure(f"cannot read engine output: {err}", attempts) from err

    logger.info("%sUsing inindex=%d", prefix, params.phase_encode_index)
    final_prefix = work_dir / f"{nifti_stem(bold)}{CORRECTED_SUFFIX}"
    final_image = work_dir / corrected_name(bold)
    _remove_stale(final_image)
    ok, message = run_applytopup([bold], acqp, [params.phase_encode_index], outputs.coefficients, final_prefix)
    if not ok:
        logger.error("%sapplytopup BOLD failed: %s", prefix, message)
        raise TaskFailure("apply step failed", attempts)
    if not final_image.is_file():
        raise TaskFailure("apply step failed: no corrected output file", attempts)

    qa.after_stats, qa.after_note = _after_divergence(blip_a, blip_b, acqp, outputs, work_dir, prefix)

    func_dir = bold.parent
    placed_image = func_dir / final_image.name
    summary = work_dir / summary_name(bold)
    write_summary(summary, inputs, params, qa, placed_image, topup.configuration)

    copy2(final_image, placed_image)
    placed_summary = func_dir / summary.name
    copy2(summary, placed_summary)

    logger.info("OK  [%s] -> %s", task.label, placed_image.name)
    return ExecutionResult(
        task=task, outcome="OK", bold=bold, output=placed_image, summary=placed_summary, attempts=attempts
    )


def _field_metrics(outputs: TopupOutputs, blip_a: Path, params: AcquisitionParams, work_dir: Path) -> QAMetrics:
    qa = QAMetrics()
    qa.field_stats = imageops.range_mean_std(outputs.field_hz)
    pe_spacing = imageops.pixel_spacing(blip_a, axis=1)
    vsm_vox = imageops.scale_image(outputs.field_hz, params.readout_time, work_dir / "vsm_vox.nii.gz")
    vsm_mm = imageops.scale_image(vsm_vox, pe_spacing, work_dir / "vsm_mm.nii.gz")
    qa.vsm_vox_stats = imageops.abs_percentile_stats(vsm_vox)
    qa.vsm_mm_stats = imageops.abs_percentile_stats(vsm_mm)
    return qa


def _after_divergence(
    blip_a: Path,
    blip_b: Path,
    acqp: Path,
    outputs: TopupOutputs,
    work_dir: Path,
    prefix: str,
) -> tuple[Optional[dict], str]:
    """QA only: |A-B| after correcting both blips. Problems mark the metric, never the task."""
    pair = work_dir / "hifi_b0_pair.nii.gz"
    _remove_stale(pair)
    ok, message = run_applytopup([blip_a, blip_b], acqp, [1, 2], outputs.coefficients, work_dir / "hifi_b0_pair")
    if not ok:
        logger.warning("%sapplytopup on blip pair failed (QA only): %s", prefix, message)
    if not pair.is_file():
        return None, "(missing)"
    try:
        count = imageops.n_volumes(pair)
        if count < 2:
            return None, f"(skipped: {count} vol)"
        hifi0 = imageops.extract_volume(pair, 0, work_dir / "hifi0.nii.gz")
        hifi1 = imageops.extract_volume(pair, 1, work_dir / "hifi1.nii.gz")
        after_abs = imageops.abs_difference(hifi0, hifi1, work_dir / "after_diff_abs.nii.gz")
        return imageops.abs_percentile_stats(after_abs, percentiles=(95, 99)), ""
    except (ImageReadError, OSError) as err:
        logger.warning("%safter-correction QA skipped: %s", prefix, err)
        return None, "(missing)"


def write_summary(
    path: Path,
    inputs: ResolvedInputs,
    params: AcquisitionParams,
    qa: QAMetrics,
    corrected: Path,
    engine_configuration: Optional[str] = None,
) -> Path:
    after = imageops.format_stats(qa.after_stats) if qa.after_stats is not None else qa.after_note
    lines = [
        f"BOLD: {inputs.bold}",
        f"AP blip: {inputs.ap}",
        f"PA blip: {inputs.pa}",
        f"TRT (s): {format_seconds(params.readout_time)}",
        f"TOPUP configuration: {engine_configuration or '(unknown)'}",
        f"Field_Hz stats (min max mean std): {imageops.format_stats(qa.field_stats)}",
        f"VSM_vox abs (mean median P95 P99 min max): {imageops.format_stats(qa.vsm_vox_stats)}",
        f"VSM_mm  abs (mean median P95 P99 min max):  {imageops.format_stats(qa.vsm_mm_stats)}",
        f"Before |A-B| abs (mean P95 P99 min max):    {imageops.format_stats(qa.before_stats)}",
        f"After  |A-B| abs (mean P95 P99 min max):    {after}",
        f"Corrected BOLD: {corrected.resolve()}",
    ]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _log_headers(prefix: str, images: dict) -> None:
    for label, path in images.items():
        try:
            header = imageops.header_summary(path)
        except ImageReadError as err:
            logger.warning("%s%s header unreadable: %s", prefix, label, err)
            continue
        logger.info("%s%5s: dim=%s pixdim=%s", prefix, label, header["dim"], header["pixdim"])


def _remove_stale(path: Path) -> None:
    if path.exists():
        path.unlink()
