"""JSON lines journal for session data capture.

Records are grouped into a few daily families:
- decisions: ensemble decisions and their realized outcomes
- trades: opens, closes, stop adjustments
- risk: risk snapshots and kill-switch transitions
- training: training jobs and promotions

Critical families (trades, risk) use fsync so a record survives a crash
immediately after the write.
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from core.config import settings

CRITICAL_FAMILIES = {"trades", "risk"}


def utc_date_str(ts: datetime = None) -> str:
    """Return YYYY-MM-DD in UTC."""
    if ts is None:
        ts = datetime.now(timezone.utc)
    elif ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.strftime("%Y-%m-%d")


def utc_iso_str(ts: datetime = None) -> str:
    """Return ISO 8601 timestamp with Z suffix."""
    if ts is None:
        ts = datetime.now(timezone.utc)
    elif ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class Journal:
    """Append-only JSONL writer scoped to one session."""

    def __init__(self, session_id: str, base_dir: Optional[Path] = None):
        self.session_id = session_id
        self.base_dir = Path(base_dir or settings.logs_dir) / session_id

    def path_for(self, family: str, ts: datetime = None) -> Path:
        return self.base_dir / f"{family}_{utc_date_str(ts)}.jsonl"

    def append(self, family: str, record: dict, ts: datetime = None) -> Path:
        path = self.path_for(family, ts)
        append_jsonl(path, record, critical=family in CRITICAL_FAMILIES)
        return path

    def decision(self, record: dict) -> None:
        self.append("decisions", record)

    def trade(self, record: dict) -> None:
        self.append("trades", record)

    def risk(self, record: dict) -> None:
        self.append("risk", record)

    def training(self, record: dict) -> None:
        self.append("training", record)

    def read(self, family: str, ts: datetime = None) -> list[dict]:
        path = self.path_for(family, ts)
        if not path.exists():
            return []
        with open(path, "r") as f:
            return [json.loads(line) for line in f if line.strip()]


def append_jsonl(path: Path, record: dict, critical: bool = False):
    """
    Append a JSON record as a single line.

    Args:
        path: Target log file path
        record: Dictionary to log as JSON
        critical: If True, fsync after the write (slower but crash-safe)
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, separators=(",", ":"), default=str) + "\n"

    if critical:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
        try:
            os.write(fd, line.encode("utf-8"))
            os.fsync(fd)
        finally:
            os.close(fd)
    else:
        with open(path, "a") as f:
            f.write(line)
