"""Run history logger -- the sync log.

One record per pipeline step plus one for the whole run, stored as JSON
Lines in ``<log_dir>/run_history.jsonl`` for append-only writes.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path

from loguru import logger

HISTORY_FILE = "run_history.jsonl"


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    timestamp: str
    step: str
    status: str  # "ok" or "error"
    rows_in: int = 0
    rows_out: int = 0
    seconds: float = 0.0
    error: str = ""


def generate_run_id() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S_%f")


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def log_run(record: RunRecord, log_dir: Path) -> Path:
    """Append a run record to the history file. Returns the file path."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / HISTORY_FILE

    with open(log_file, "a", encoding="utf-8") as f:
        f.write(json.dumps(asdict(record), default=str) + "\n")

    logger.debug("Run {run_id} step '{step}' logged to {path}", run_id=record.run_id, step=record.step, path=log_file)
    return log_file


def load_history(log_dir: Path, limit: int = 100) -> list[RunRecord]:
    """Load recent run records (newest first)."""
    log_file = log_dir / HISTORY_FILE
    if not log_file.exists():
        return []

    records: list[RunRecord] = []
    for line in log_file.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            records.append(RunRecord(**json.loads(line)))
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Skipping malformed log line: {err}", err=e)

    return list(reversed(records[-limit:]))
