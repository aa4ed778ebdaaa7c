"""
Run Ledger -- append-only JSONL history of sync runs.

Every time a sync finishes (successfully or not), a single JSON line is
appended to ``logs/ledger.jsonl``::

    tail -5 logs/ledger.jsonl | python -m json.tool

Per-run log directories are pruned; the ledger is never truncated, so it is
the durable record of which files were loaded when.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pipeline.report import RunSummary


def append_to_ledger(summary: RunSummary, run_id: str, ledger_path: Path) -> Path:
    """Append a one-line JSON record summarising *summary* to the ledger."""
    files: dict[str, Any] = {}
    for stats in summary.file_stats:
        entry: dict[str, Any] = {
            "status": stats.status,
            "rows": stats.rows_loaded,
            "checksum": stats.checksum or None,
        }
        if stats.last_modified:
            entry["last_modified"] = stats.last_modified
        if stats.error:
            entry["error"] = stats.error
        files[stats.file_name] = entry

    record = {
        "run_id": run_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_seconds": round(summary.duration_seconds, 1),
        "success": summary.success,
        "fatal": summary.fatal,
        "files": files,
        "stages": dict(summary.stages),
        "error_count": len(summary.errors),
    }

    ledger_path = Path(ledger_path)
    ledger_path.parent.mkdir(parents=True, exist_ok=True)
    with open(ledger_path, "a") as f:
        f.write(json.dumps(record, separators=(",", ":")) + "\n")
    return ledger_path


def read_ledger(ledger_path: Path, last: int | None = None) -> list[dict[str, Any]]:
    """Return ledger records, oldest first (optionally only the *last* N)."""
    ledger_path = Path(ledger_path)
    if not ledger_path.exists():
        return []
    with open(ledger_path) as f:
        records = [json.loads(line) for line in f if line.strip()]
    return records[-last:] if last else records
