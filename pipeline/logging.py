"""
Per-run log directories for the sync.

Each trigger() gets ``<log_dir>/pipeline/<run_id>/`` holding:

    run.log                 every record emitted during the run (mailed as
                            the attachment of the summary email)
    <step>.log              records emitted while that step was open, closed
                            with a STEP SUMMARY block
    summary.json            StepReports plus the RunSummary, written last

Steps are the two table loads (``variant_summary``, ``submission_summary``)
and the two derived stages (``component_parts``, ``gene_counts``).

Run directories are disposable; prune_run_dirs() keeps the newest N.
``componentPartFailures.log`` and ``ledger.jsonl`` sit one level above
``pipeline/`` and nothing here touches them.

Skip categories recorded on a StepReport:
    already_active     file registered by an overlapping trigger
    not_listed         required file absent from the remote index
    checksum_skipped   ``.md5`` unreachable, verification failed open
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

_FILE_FORMAT = "%(asctime)s  %(levelname)-7s  %(name)s  %(message)s"
_RULE = "=" * 60
_MAX_LISTED_ERRORS = 20


@dataclass
class SkipRecord:
    category: str
    detail: str
    item: str = ""


@dataclass
class StepReport:
    """What one step did. ``status`` moves started -> completed | failed | skipped."""

    step_name: str
    status: str = "started"
    elapsed_seconds: float = 0.0
    items_processed: int = 0
    skips: list[SkipRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)

    def add_skip(self, category: str, detail: str, item: str = "") -> None:
        self.skips.append(SkipRecord(category, detail, item))

    def fail(self, message: str) -> None:
        self.errors.append(message)
        self.status = "failed"

    def summary_lines(self) -> list[str]:
        lines = [
            f"STEP SUMMARY: {self.step_name}",
            f"  Status:    {self.status}",
            f"  Elapsed:   {self.elapsed_seconds:.1f}s",
            f"  Processed: {self.items_processed:,}",
            f"  Skipped:   {len(self.skips)}",
            f"  Errors:    {len(self.errors)}",
        ]
        for skip in self.skips:
            lines.append(f"  skip [{skip.category}] {skip.item}: {skip.detail}")
        for err in self.errors[:_MAX_LISTED_ERRORS]:
            lines.append(f"  error: {err}")
        if len(self.errors) > _MAX_LISTED_ERRORS:
            lines.append(f"  ... and {len(self.errors) - _MAX_LISTED_ERRORS} more")
        return lines

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["elapsed_seconds"] = round(self.elapsed_seconds, 2)
        return d


def _file_handler(path: Path) -> logging.FileHandler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%H:%M:%S"))
    return handler


class PipelineLogger:
    """Owns one run directory and the root-logger handlers writing into it."""

    def __init__(self, logs_dir: Path | str = "logs/pipeline") -> None:
        self.logs_root = Path(logs_dir)
        self.run_id = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
        # two triggers inside the same second get distinct directories
        self.run_dir = self.logs_root / self.run_id
        n = 1
        while self.run_dir.exists():
            n += 1
            self.run_dir = self.logs_root / f"{self.run_id}_{n}"
        self.run_dir.mkdir(parents=True)

        self._root = logging.getLogger()
        self._run_handler: logging.FileHandler | None = None
        self._open_steps: dict[str, tuple[logging.FileHandler, float]] = {}
        self._reports: dict[str, StepReport] = {}
        self._t0 = time.monotonic()

    @property
    def run_log_path(self) -> Path:
        return self.run_dir / "run.log"

    @property
    def summary_path(self) -> Path:
        return self.run_dir / "summary.json"

    def open_run_log(self) -> Path:
        if self._run_handler is None:
            self._run_handler = _file_handler(self.run_log_path)
            self._root.addHandler(self._run_handler)
        return self.run_log_path

    def start_step(self, step_name: str) -> StepReport:
        handler = _file_handler(self.run_dir / f"{step_name}.log")
        self._root.addHandler(handler)
        self._open_steps[step_name] = (handler, time.monotonic())
        report = StepReport(step_name=step_name)
        self._reports[step_name] = report
        return report

    def finish_step(self, step_name: str, report: StepReport | None = None) -> StepReport:
        """Close *step_name*'s log with its STEP SUMMARY and return the report."""
        report = report or self._reports.get(step_name) or StepReport(step_name)
        handler, started = self._open_steps.pop(step_name, (None, self._t0))
        report.elapsed_seconds = time.monotonic() - started
        if report.status == "started":
            report.status = "completed"
        self._reports[step_name] = report

        if handler is not None:
            handler.stream.write("\n" + "\n".join([_RULE, *report.summary_lines(), _RULE]) + "\n")
            self._root.removeHandler(handler)
            handler.close()
        return report

    def record_skip(self, step_name: str, category: str, detail: str) -> StepReport:
        """Record a step that never started."""
        report = StepReport(step_name=step_name, status="skipped")
        report.add_skip(category, detail, item=step_name)
        self._reports[step_name] = report
        return report

    def write_summary(self, extra: dict[str, Any] | None = None) -> Path:
        data: dict[str, Any] = {
            "run_id": self.run_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "total_elapsed_seconds": round(time.monotonic() - self._t0, 2),
            "steps": {name: r.to_dict() for name, r in self._reports.items()},
        }
        data.update(extra or {})
        with open(self.summary_path, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, default=str)
        return self.summary_path

    def close(self) -> None:
        for handler, _ in self._open_steps.values():
            self._root.removeHandler(handler)
            handler.close()
        self._open_steps.clear()
        if self._run_handler is not None:
            self._root.removeHandler(self._run_handler)
            self._run_handler.close()
            self._run_handler = None


def prune_run_dirs(logs_root: Path, keep: int, current: Path | None = None) -> list[Path]:
    """Remove all but the newest *keep* run directories; never *current*.

    Run ids sort chronologically, so name order is age order.
    """
    logs_root = Path(logs_root)
    if not logs_root.is_dir():
        return []
    newest_first = sorted((p for p in logs_root.iterdir() if p.is_dir()),
                          key=lambda p: p.name, reverse=True)
    keep_path = Path(current).resolve() if current is not None else None
    removed = []
    for old in newest_first[max(keep, 0):]:
        if old.resolve() == keep_path:
            continue
        shutil.rmtree(old)
        removed.append(old)
    return removed
