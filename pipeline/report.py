"""
Run Reporter & Cleanup.

RunSummary accumulates what happened during one sync as it happens. At the
end of the run (clean, partial or fatal) RunReporter renders it into the
fixed plain-text report, hands that to the injected Notifier, and then
clears the download and temp directories and prunes old per-run log
directories. The parse-failure log and the run ledger are never touched.
"""

from __future__ import annotations

import base64
import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import requests

from pipeline.errors import NetworkFailure
from pipeline.logging import prune_run_dirs
from utils import format_bytes

logger = logging.getLogger(__name__)

JOB_NAME = "Weekly ClinVar Update"
SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


# ── Run summary ──────────────────────────────────────────────────────────────


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FileStats:
    file_name: str
    table: str = ""
    status: str = "pending"                 # succeeded | failed | skipped
    last_modified: str = ""
    download_ok: bool | None = None
    bytes_downloaded: int = 0
    checksum: str = ""                      # verified | unverified
    rows_loaded: int = 0
    download_seconds: float = 0.0
    decompress_seconds: float = 0.0
    load_seconds: float = 0.0
    error: str = ""


@dataclass
class RunSummary:
    start_time: datetime = field(default_factory=_now)
    end_time: datetime | None = None
    file_stats: list[FileStats] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    stages: dict[str, str] = field(default_factory=dict)
    stage_details: dict[str, dict[str, Any]] = field(default_factory=dict)
    fatal: bool = False

    def file(self, file_name: str) -> FileStats:
        for stats in self.file_stats:
            if stats.file_name == file_name:
                return stats
        stats = FileStats(file_name=file_name)
        self.file_stats.append(stats)
        return stats

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def mark_file_failed(self, file_name: str, message: str) -> None:
        stats = self.file(file_name)
        stats.status = "failed"
        stats.error = message
        self.add_error(f"{file_name}: {message}")

    def finish(self) -> None:
        if self.end_time is None:
            self.end_time = _now()

    @property
    def duration_seconds(self) -> float:
        end = self.end_time or _now()
        return (end - self.start_time).total_seconds()

    @property
    def failed_files(self) -> list[str]:
        return [s.file_name for s in self.file_stats if s.status == "failed"]

    @property
    def success(self) -> bool:
        return (
            not self.fatal
            and not self.failed_files
            and all(status != "failed" for status in self.stages.values())
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": round(self.duration_seconds, 2),
            "success": self.success,
            "fatal": self.fatal,
            "files": [asdict(s) for s in self.file_stats],
            "stages": dict(self.stages),
            "stage_details": self.stage_details,
            "errors": list(self.errors),
        }


# ── Notification ─────────────────────────────────────────────────────────────


class Notifier(ABC):
    """Delivery capability for the end-of-run report."""

    @abstractmethod
    def send(self, subject: str, success: bool, body: str,
             attachment: Path | None = None) -> None:
        """Deliver one message; raise on failure."""


class LoggingNotifier(Notifier):
    """Writes the report to the log; used when no mail API is configured."""

    def send(self, subject: str, success: bool, body: str,
             attachment: Path | None = None) -> None:
        level = logging.INFO if success else logging.ERROR
        logger.log(level, "%s\n%s", subject, body)


class SendGridNotifier(Notifier):
    """Sends the report through the SendGrid v3 mail API."""

    def __init__(self, api_key: str, from_email: str, to_email: str,
                 session: requests.Session | None = None, timeout: int = 30) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.to_email = to_email
        self.session = session or requests.Session()
        self.timeout = timeout

    def build_payload(self, subject: str, body: str,
                      attachment: Path | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": self.to_email}]}],
            "from": {"email": self.from_email},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        if attachment is not None and Path(attachment).is_file():
            raw = Path(attachment).read_bytes()
            payload["attachments"] = [{
                "content": base64.b64encode(raw).decode("ascii"),
                "filename": Path(attachment).name,
                "type": "text/plain",
                "disposition": "attachment",
            }]
        return payload

    def send(self, subject: str, success: bool, body: str,
             attachment: Path | None = None) -> None:
        payload = self.build_payload(subject, body, attachment)
        try:
            resp = self.session.post(
                SENDGRID_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise NetworkFailure(f"SendGrid delivery failed: {exc}", url=SENDGRID_URL) from exc
        logger.info("Summary email sent to %s", self.to_email)


def notifier_from_config(config) -> Notifier:
    """SendGrid when fully configured, otherwise the log."""
    if config.sendgrid_api_key and config.sendgrid_from_email and config.notification_email:
        return SendGridNotifier(
            config.sendgrid_api_key,
            config.sendgrid_from_email,
            config.notification_email,
        )
    logger.info("SendGrid not configured; run summaries go to the log only")
    return LoggingNotifier()


# ── Reporter ─────────────────────────────────────────────────────────────────


class RunReporter:
    """Renders and delivers the run summary, then cleans up."""

    def __init__(self, notifier: Notifier, download_dir: Path, temp_dir: Path,
                 pipeline_log_dir: Path, keep_runs: int = 5, job_name: str = JOB_NAME) -> None:
        self.notifier = notifier
        self.download_dir = Path(download_dir)
        self.temp_dir = Path(temp_dir)
        self.pipeline_log_dir = Path(pipeline_log_dir)
        self.keep_runs = keep_runs
        self.job_name = job_name

    def subject(self, summary: RunSummary) -> str:
        return f"ClinVar Update {'Success' if summary.success else 'Failed'}: {self.job_name}"

    def render(self, summary: RunSummary) -> str:
        summary.finish()
        lines = [
            "ClinVar Update Processing Summary",
            "--------------------------------",
            f"Start Time: {summary.start_time.isoformat()}",
            f"End Time: {summary.end_time.isoformat()}",
            f"Total Duration: {summary.duration_seconds:.2f} seconds",
            f"Status: {'Success' if summary.success else 'Failed'}",
            "",
            "Download Summary:",
            "----------------",
        ]
        for s in summary.file_stats:
            if s.download_ok:
                detail = format_bytes(s.bytes_downloaded)
                if s.checksum:
                    detail += f", MD5 {s.checksum}"
                lines.append(f"{s.file_name}: Success - {detail}")
            elif s.status == "skipped":
                lines.append(f"{s.file_name}: Skipped - {s.error}")
            else:
                lines.append(f"{s.file_name}: Failed - {s.error or 'not downloaded'}")

        loaded = [s for s in summary.file_stats if s.status == "succeeded"]
        lines += [
            "",
            "Processing Summary:",
            "------------------",
            f"Files Loaded: {len(loaded)} of {len(summary.file_stats)}",
            f"Total Rows Loaded: {sum(s.rows_loaded for s in loaded):,}",
            "",
            "Individual File Results:",
            "----------------------",
        ]
        for s in summary.file_stats:
            lines += [
                f"{s.file_name} -> {s.table or 'N/A'}:",
                f"  Status: {s.status}",
                f"  Rows Loaded: {s.rows_loaded:,}",
                f"  Download Time: {s.download_seconds:.2f} seconds",
                f"  Decompress Time: {s.decompress_seconds:.2f} seconds",
                f"  Database Load Time: {s.load_seconds:.2f} seconds",
            ]
            if s.last_modified:
                lines.append(f"  Source Last Modified: {s.last_modified}")
            if s.error:
                lines.append(f"  Error: {s.error}")
            lines.append("")

        lines += ["Derived Tables:", "--------------"]
        for stage in ("component_parts", "gene_counts"):
            status = summary.stages.get(stage, "not run")
            details = summary.stage_details.get(stage, {})
            extra = ", ".join(f"{k}={v}" for k, v in details.items() if not isinstance(v, dict))
            lines.append(f"{stage}: {status}" + (f" - {extra}" if extra else ""))

        if summary.errors:
            lines += ["", "Errors:", "-------"]
            lines += summary.errors
        return "\n".join(lines) + "\n"

    def notify(self, summary: RunSummary, attachment: Path | None = None) -> bool:
        body = self.render(summary)
        try:
            self.notifier.send(self.subject(summary), summary.success, body, attachment)
            return True
        except Exception:
            logger.exception("Could not deliver run summary")
            return False

    def cleanup(self, current_run_dir: Path | None = None) -> list[Path]:
        """Empty the working directories and prune old per-run logs."""
        removed: list[Path] = []
        for directory in (self.download_dir, self.temp_dir):
            if directory.is_dir():
                for child in directory.iterdir():
                    if child.is_dir():
                        shutil.rmtree(child)
                    else:
                        child.unlink()
                    removed.append(child)
        removed += prune_run_dirs(self.pipeline_log_dir, self.keep_runs, current_run_dir)
        logger.info("Cleanup removed %d paths", len(removed))
        return removed

    def finish(self, summary: RunSummary, attachment: Path | None = None,
               current_run_dir: Path | None = None) -> bool:
        """Notify, then clean up. Returns whether delivery succeeded."""
        delivered = self.notify(summary, attachment)
        try:
            self.cleanup(current_run_dir)
        except OSError:
            logger.exception("Cleanup after run failed")
        return delivered
