"""
Orchestrator -- one full ClinVar synchronization per trigger().

Sequence::

    list index ──► for each required file, in order:
                       download ─► verify ─► decompress ─► load (stage + promote)
               ──► component_parts rebuild
               ──► gene count enrichment
               ──► report, ledger, cleanup

Failure isolation:
  - a file whose chain fails is recorded and the next file still runs;
  - the component build and enrichment always run, each in its own guard;
  - anything escaping all of that marks the run fatal, and the report is
    still attempted from the ``finally`` block.

ActiveProcessRegistry keys re-entry by file name: a file already registered
(by an overlapping trigger on the same orchestrator) is skipped and logged,
never queued.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import requests

from downloader.core import download_file, get_session
from downloader.sources import RemoteFileDescriptor, list_remote_files
from downloader.verify import verify_checksum
from pipeline.components import build_component_parts
from pipeline.decompress import decompress_file
from pipeline.errors import IntegrityMismatch, NetworkFailure
from pipeline.gene_counts import (
    GeneCountClient,
    read_gene_symbols,
    refresh_gene_counts,
    seed_gene_symbols,
)
from pipeline.loader import TABLE_SPECS, load_file
from pipeline.logging import PipelineLogger, StepReport
from pipeline.report import FileStats, Notifier, RunReporter, RunSummary, notifier_from_config
from pipeline.run_ledger import append_to_ledger, read_ledger
from pipeline.scheduler import CronTrigger
from utils.config import FILE_TABLE_MAP, SyncConfig
from utils.database import connect

logger = logging.getLogger(__name__)


class ActiveProcessRegistry:
    """Map of file name -> start time for files currently being processed."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, datetime] = {}

    def try_register(self, file_name: str) -> bool:
        """Register *file_name*; False if it is already active."""
        with self._lock:
            if file_name in self._active:
                return False
            self._active[file_name] = datetime.now(timezone.utc)
            return True

    def deregister(self, file_name: str) -> None:
        with self._lock:
            self._active.pop(file_name, None)

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return {name: started.isoformat() for name, started in self._active.items()}

    def __contains__(self, file_name: str) -> bool:
        with self._lock:
            return file_name in self._active

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)


class Orchestrator:
    """Runs the sync pipeline against one database and one set of directories."""

    def __init__(self, config: SyncConfig | None = None,
                 session: requests.Session | None = None,
                 notifier: Notifier | None = None,
                 gene_client: GeneCountClient | None = None,
                 registry: ActiveProcessRegistry | None = None,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.config = config or SyncConfig.from_env()
        self.session = session or get_session()
        self.notifier = notifier or notifier_from_config(self.config)
        self.gene_client = gene_client or GeneCountClient(
            self.session, api_key=self.config.ncbi_api_key
        )
        # an empty registry is falsy (__len__), so test for None explicitly
        self.registry = registry if registry is not None else ActiveProcessRegistry()
        self.sleep = sleep
        self.reporter = RunReporter(
            self.notifier,
            download_dir=self.config.download_dir,
            temp_dir=self.config.temp_dir,
            pipeline_log_dir=self.config.pipeline_log_dir,
            keep_runs=self.config.log_retention_runs,
        )

    # ── public entry points ──────────────────────────────────────────────

    def trigger(self) -> RunSummary:
        """Run one full synchronization and return its summary."""
        summary = RunSummary()
        pl = PipelineLogger(self.config.pipeline_log_dir)
        pl.open_run_log()
        conn = None
        logger.info("=" * 60)
        logger.info("CLINVAR SYNC %s", pl.run_id)
        logger.info("=" * 60)
        try:
            conn = connect(self.config.db_path)
            self._seed_genes(conn)

            descriptors, listing_error = self._list_files()
            for file_name in self.config.required_files:
                stats = summary.file(file_name)
                stats.table = FILE_TABLE_MAP.get(file_name, "")
                if listing_error:
                    summary.mark_file_failed(file_name, listing_error)
                    continue
                descriptor = descriptors.get(file_name)
                if descriptor is None:
                    summary.mark_file_failed(file_name, "not listed in remote index")
                    pl.record_skip(stats.table, "not_listed", f"{file_name} missing from index")
                    continue
                stats.last_modified = descriptor.last_modified
                self._run_file(descriptor, stats, summary, conn, pl)

            self._run_stage(summary, pl, "component_parts", lambda: build_component_parts(
                conn,
                self.config.failure_log_path,
                page_size=self.config.component_page_size,
            ).to_dict())
            self._run_stage(summary, pl, "gene_counts", lambda: refresh_gene_counts(
                conn,
                self.gene_client,
                delay=self.config.enrich_delay,
                sleep=self.sleep,
            ).to_dict())
        except Exception as exc:
            logger.exception("Sync aborted")
            summary.fatal = True
            summary.add_error(f"Fatal: {exc}")
        finally:
            summary.finish()
            self._report(summary, pl)
            if conn is not None:
                conn.close()
            pl.close()
        return summary

    def health_check(self) -> dict[str, Any]:
        """Report the registry and schedules; moves no data."""
        now = datetime.now()
        schedules = {
            "sync": self.config.sync_schedule,
            "health": self.config.health_schedule,
        }
        next_runs = {}
        for name, expr in schedules.items():
            next_runs[name] = CronTrigger.parse(expr).next_after(now).isoformat()
        last = read_ledger(self.config.ledger_path, last=1)
        info = {
            "timestamp": now.isoformat(),
            "active_processes": self.registry.snapshot(),
            "schedules": schedules,
            "next_runs": next_runs,
            "last_run": last[0] if last else None,
        }
        logger.info("Health check: %d active file(s), next sync %s",
                    len(info["active_processes"]), next_runs["sync"])
        return info

    # ── stages ───────────────────────────────────────────────────────────

    def _seed_genes(self, conn) -> None:
        path = self.config.gene_symbols_file
        if path is None:
            return
        if not Path(path).is_file():
            logger.warning("Gene symbol file %s not found; skipping seed", path)
            return
        seed_gene_symbols(conn, read_gene_symbols(path))

    def _list_files(self) -> tuple[dict[str, RemoteFileDescriptor], str]:
        try:
            found = list_remote_files(self.session, self.config.base_url,
                                      self.config.required_files)
        except NetworkFailure as exc:
            logger.error("Listing failed: %s", exc)
            return {}, str(exc)
        return {d.name: d for d in found}, ""

    def _run_file(self, descriptor: RemoteFileDescriptor, stats: FileStats,
                  summary: RunSummary, conn, pl: PipelineLogger) -> None:
        name = descriptor.name
        if not self.registry.try_register(name):
            logger.warning("%s is already being processed; skipping", name)
            stats.status = "skipped"
            stats.error = "already being processed"
            pl.record_skip(stats.table, "already_active", f"{name} registered elsewhere")
            return
        try:
            self._process_file(descriptor, stats, conn, pl)
        except Exception as exc:
            logger.error("%s failed: %s", name, exc)
            summary.mark_file_failed(name, str(exc))
        finally:
            self.registry.deregister(name)

    def _process_file(self, descriptor: RemoteFileDescriptor, stats: FileStats,
                      conn, pl: PipelineLogger) -> None:
        spec = TABLE_SPECS[stats.table]
        report = pl.start_step(spec.table)
        try:
            downloaded = download_file(
                self.session, descriptor.url, self.config.download_dir / descriptor.name
            )
            stats.download_ok = True
            stats.bytes_downloaded = downloaded.bytes_written
            stats.download_seconds = downloaded.seconds

            try:
                verification = verify_checksum(self.session, descriptor.url, downloaded.path)
            except IntegrityMismatch:
                stats.download_ok = False
                raise
            stats.checksum = "verified" if verification.verified else "unverified"
            if not verification.verified:
                report.add_skip("checksum_skipped", verification.detail, descriptor.name)

            t0 = time.time()
            plain = decompress_file(downloaded.path, self.config.temp_dir)
            stats.decompress_seconds = time.time() - t0

            result = load_file(conn, plain, spec, batch_size=self.config.load_batch_size)
            stats.rows_loaded = result.rows_loaded
            stats.load_seconds = result.seconds
            stats.status = "succeeded"
            report.items_processed = result.rows_loaded
            report.metrics["lines_skipped"] = result.lines_skipped
            plain.unlink(missing_ok=True)
        except Exception as exc:
            report.fail(str(exc))
            raise
        finally:
            pl.finish_step(spec.table, report)

    def _run_stage(self, summary: RunSummary, pl: PipelineLogger, name: str,
                   fn: Callable[[], dict[str, Any]]) -> None:
        report: StepReport = pl.start_step(name)
        try:
            details = fn()
            summary.stages[name] = "completed"
            summary.stage_details[name] = details
            report.metrics.update(
                {k: v for k, v in details.items() if isinstance(v, (int, float))}
            )
        except Exception as exc:
            logger.exception("Stage %s failed", name)
            summary.stages[name] = "failed"
            summary.add_error(f"{name}: {exc}")
            report.fail(str(exc))
        finally:
            pl.finish_step(name, report)

    def _report(self, summary: RunSummary, pl: PipelineLogger) -> None:
        try:
            pl.write_summary(extra={"sync": summary.to_dict()})
            append_to_ledger(summary, pl.run_id, self.config.ledger_path)
            self.reporter.finish(summary, attachment=pl.run_log_path,
                                 current_run_dir=pl.run_dir)
        except Exception:
            logger.exception("Reporting after sync failed")
        status = "SUCCESS" if summary.success else "FAILED"
        logger.info("Sync %s in %.1fs (%d error(s))",
                    status, summary.duration_seconds, len(summary.errors))
