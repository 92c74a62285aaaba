"""
topupbatch command line interface.

Runs FSL TOPUP over every (subject, session, run) of a BIDS dataset with a
bounded worker pool, or validates an existing status ledger.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from functools import partial
from importlib import metadata
from pathlib import Path

from topupbatch.config import (
    DEFAULT_AP_KEYS,
    DEFAULT_PA_KEYS,
    DEFAULT_RUNS,
    PEDIR_AUTO,
    PEDIR_VALUES,
    BatchConfig,
    ConfigError,
    load_config,
)
from topupbatch.environment import log_environment
from topupbatch.ledger import LedgerError, StatusLedger, check_ledger, ledger_path
from topupbatch.logs import batch_log_path, setup_logging, timestamp
from topupbatch.pipeline import PipelineSettings, describe_plan, process_task
from topupbatch.scan import DatasetScanError, scan_tasks
from topupbatch.scheduler import run_batch

logger = logging.getLogger(__name__)

EPILOG = f"""
Env overrides (CLI wins): ROOT, BOLD_RUNS, N_WORKERS, TOPUP_NTHR, PEDIR_OVERRIDE,
AP_KEYS, PA_KEYS, DRY_RUN, WORK_ROOT, LOG_DIR

Defaults: runs "{' '.join(DEFAULT_RUNS)}", AP keys "{' '.join(DEFAULT_AP_KEYS)}", PA keys "{' '.join(DEFAULT_PA_KEYS)}"

Examples:
  ROOT=/data/BIDS N_WORKERS=4 topupbatch
  topupbatch --root /data/BIDS --runs "doors1 rs" --workers 6 --topup-nthr 2
  topupbatch --check-ledger /data/BIDS/topup_batch_status_20250101_120000.jsonl
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="topupbatch",
        description="Batch FSL TOPUP for BIDS datasets (AP/PA), with flexible blip detection.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit.")
    parser.add_argument("--root", type=Path, help="BIDS root")
    parser.add_argument("--runs", help='Space-separated task labels, e.g. "doors1 rs"')
    parser.add_argument("--workers", type=int, help="Parallel tasks (subject/session/run)")
    parser.add_argument(
        "--topup-nthr",
        dest="engine_threads",
        type=int,
        help="Threads per TOPUP job (avoid oversubscription)",
    )
    parser.add_argument(
        "--pedir-override",
        choices=[*PEDIR_VALUES, PEDIR_AUTO],
        help=f"Force BOLD PhaseEncodingDirection for applytopup ('{PEDIR_AUTO}': use the BOLD sidecar)",
    )
    parser.add_argument("--ap-keys", help='Keywords for the AP fallback scan, e.g. "ap blipa"')
    parser.add_argument("--pa-keys", help='Keywords for the PA fallback scan, e.g. "pa blipb"')
    parser.add_argument(
        "--dry-run",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="List planned tasks and detected blips, do not run TOPUP",
    )
    parser.add_argument("--work-root", type=Path, help="Parent of per-task scratch workspaces (default: BIDS root)")
    parser.add_argument("--log-dir", type=Path, help="Directory for the full-run log (default: home)")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level (the log file always records DEBUG)",
    )
    parser.add_argument("--config", type=Path, help="YAML file with configuration defaults")
    parser.add_argument(
        "--check-ledger",
        type=Path,
        metavar="LEDGER",
        help="Validate an existing status ledger, print its tally and exit",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("topupbatch")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        return 0

    if args.check_ledger is not None:
        return _check_ledger(args.check_ledger)

    cli_values = {
        "root": args.root,
        "runs": args.runs,
        "workers": args.workers,
        "engine_threads": args.engine_threads,
        "pedir_override": args.pedir_override,
        "ap_keys": args.ap_keys,
        "pa_keys": args.pa_keys,
        "dry_run": args.dry_run,
        "work_root": args.work_root,
        "log_dir": args.log_dir,
        "log_level": args.log_level,
    }
    try:
        config = load_config(cli_values, config_path=args.config)
    except ConfigError as err:
        setup_logging(None)
        logger.error("ERROR: %s", err)
        return 1

    return run(config)


def run(config: BatchConfig) -> int:
    stamp = timestamp()
    log_file = batch_log_path(config.log_dir, stamp)
    setup_logging(log_file, config.log_level)
    log_environment()
    _log_config(config)

    try:
        tasks = scan_tasks(config.root, config.runs)
    except DatasetScanError as err:
        logger.error("ERROR: %s", err)
        return 1

    settings = PipelineSettings.from_config(config)
    logger.info("Total tasks: %d (N_WORKERS=%d)  DRY_RUN=%d", len(tasks), config.workers, int(config.dry_run))

    if config.dry_run:
        for task in tasks:
            for line in describe_plan(task, settings):
                logger.info(line)
        logger.info("Master log: %s", log_file)
        return 0

    ledger = StatusLedger(ledger_path(config.root, stamp))
    run_batch(tasks, partial(process_task, settings=settings), ledger, max_workers=config.workers)

    counts = ledger.tally()
    logger.info("== BATCH SUMMARY (from %s) ==", ledger.path)
    for outcome, count in counts.items():
        logger.info("  %-5s: %d", outcome, count)
    logger.info("Status ledger: %s", ledger.path)
    logger.info("Master log: %s", log_file)
    return 0


def _check_ledger(path: Path) -> int:
    try:
        counts = check_ledger(path)
    except LedgerError as err:
        print(json.dumps({"status": "FAIL", "failure_message": str(err)}, indent=2))
        return 1
    print(json.dumps({"status": "PASS", "failure_message": None, "counts": counts}, indent=2))
    return 0


def _log_config(config: BatchConfig) -> None:
    logger.info("ROOT=%s", config.root)
    logger.info("RUNS=%s", " ".join(config.runs))
    logger.info("N_WORKERS=%d  TOPUP_NTHR=%d", config.workers, config.engine_threads)
    logger.info("AP_KEYS=%s  PA_KEYS=%s", " ".join(config.ap_keys), " ".join(config.pa_keys))
    logger.info("PEDIR_OVERRIDE=%s", config.pedir_override or "(unset)")
    logger.info("WORK_ROOT=%s", config.workspace_root)


if __name__ == "__main__":
    sys.exit(main())
