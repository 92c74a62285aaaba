"""
Host checks for the external FSL tools, logged at startup and never fatal.
"""

from __future__ import annotations

import logging
import os
import platform
from dataclasses import dataclass
from shutil import which
from typing import Dict, List

from topupbatch.engine import find_topup_config

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("topup", "applytopup")


@dataclass
class EnvCheck:
    name: str
    passed: bool
    message: str
    info: Dict[str, str]


def environment_checks() -> List[EnvCheck]:
    checks: List[EnvCheck] = []
    for tool in REQUIRED_TOOLS:
        location = which(tool)
        checks.append(
            EnvCheck(
                name=f"command:{tool}",
                passed=location is not None,
                message="Command available" if location else f"{tool} not found in PATH",
                info={"path": location or ""},
            )
        )
    config = find_topup_config()
    checks.append(
        EnvCheck(
            name="topup_config",
            passed=config is not None,
            message="TOPUP config found" if config else "No TOPUP config found; degraded parameters only",
            info={"path": str(config) if config else ""},
        )
    )
    return checks


def log_environment() -> List[EnvCheck]:
    logger.info("== FSL check ==")
    logger.info("FSLDIR=%s", os.environ.get("FSLDIR") or "(unset)")
    logger.debug("PATH=%s", os.environ.get("PATH", ""))
    logger.info("Host: %s", " ".join(platform.uname()))
    checks = environment_checks()
    for check in checks:
        if check.passed:
            logger.info("%s: %s %s", check.name, check.message, check.info.get("path", ""))
        else:
            logger.warning("%s: %s", check.name, check.message)
    return checks
