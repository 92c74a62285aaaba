"""
Logging setup for a batch run.

One console handler and one timestamped full-run log file; every module logs
through ``logging.getLogger(__name__)``.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def timestamp() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def setup_logging(log_file: Optional[Path], level: str = "INFO") -> logging.Logger:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if log_file else lvl)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    sh = logging.StreamHandler(sys.stdout)
    sh.setLevel(lvl)
    sh.setFormatter(fmt)
    logger.addHandler(sh)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    logging.captureWarnings(True)
    return logger


def batch_log_path(log_dir: Path, stamp: Optional[str] = None) -> Path:
    return Path(log_dir) / f"topup_batch_{stamp or timestamp()}.log"
