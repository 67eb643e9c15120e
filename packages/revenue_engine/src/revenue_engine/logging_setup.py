"""Loguru configuration for the revenue engine."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from loguru import logger

# Registered at import time so logger.log("AUDIT", ...) works even
# without setup_logging().
AUDIT_LEVEL = "AUDIT"
try:
    logger.level(AUDIT_LEVEL, no=25, color="<cyan>", icon="@")
except TypeError:
    pass  # Already registered


def get_username() -> str:
    """Current OS username, for the audit trail."""
    try:
        return os.getlogin()
    except OSError:
        return os.environ.get("USERNAME", os.environ.get("USER", "unknown"))


def setup_logging(
    log_dir: Path,
    verbose: bool = False,
    level: str = "INFO",
    rotation: str = "10 MB",
    retention_days: int = 30,
) -> None:
    """Install console, rotated file, error and audit sinks."""
    logger.remove()

    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else level,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level:<8}</level> | "
            "<level>{message}</level>"
        ),
        colorize=True,
    )

    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_dir / "revenue_{time:YYYY-MM-DD}.log",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} | {message}",
        rotation=rotation,
        retention=f"{retention_days} days",
        encoding="utf-8",
    )

    logger.add(
        log_dir / "errors.log",
        level="ERROR",
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {name}:{function}:{line} | {message}",
        rotation="5 MB",
        retention="90 days",
        backtrace=True,
        diagnose=False,  # leaks local variables (customer emails) into the file
        encoding="utf-8",
    )

    logger.add(
        log_dir / "audit.log",
        level=AUDIT_LEVEL,
        filter=lambda record: record["level"].name == AUDIT_LEVEL,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
        rotation="10 MB",
        retention="365 days",
        encoding="utf-8",
    )
