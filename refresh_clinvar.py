#!/usr/bin/env python3
"""
ClinVar refresh entry point.

Runs the synchronization pipeline once (the default), on its cron schedule,
or just reports health:

1. List the tab-delimited dumps on the NCBI mirror
2. Download, MD5-verify and decompress each required file
3. Stage and atomically promote variant_summary / submission_summary
4. Rebuild component_parts from variant names
5. Refresh per-gene ClinVar variant counts from E-utilities
6. Email the run summary, purge working files, rotate run logs

Usage:
    python refresh_clinvar.py                      # one sync now; exit 0/1
    python refresh_clinvar.py --schedule           # weekly sync + daily health check
    python refresh_clinvar.py --health-check       # print registry/schedule JSON
    python refresh_clinvar.py --seed-genes Gene_Symbol.txt   # load gene list only
    python refresh_clinvar.py --db other.sqlite -v

Configuration comes from environment variables (see utils/config.py);
command-line flags override the database path and schedules.

Exit codes:
    0 -- every file loaded and both derived stages completed
    1 -- any file failed, a derived stage failed, or the run aborted
"""

import argparse
import json
import logging
import sys
import traceback
from pathlib import Path

from downloader.core import close_session
from pipeline.gene_counts import read_gene_symbols, seed_gene_symbols
from pipeline.orchestrator import Orchestrator
from pipeline.scheduler import CronTrigger, run_scheduled
from utils.config import SyncConfig
from utils.database import connect

logger = logging.getLogger("refresh_clinvar")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    # urllib3 logs every retry at DEBUG; keep it at WARNING even with -v
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Synchronize the local ClinVar tables with the NCBI dumps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python refresh_clinvar.py
  python refresh_clinvar.py --schedule
  python refresh_clinvar.py --schedule --sync-schedule "0 3 * * 0"
  python refresh_clinvar.py --health-check
        """,
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--schedule",
        action="store_true",
        help="Stay resident: weekly sync plus daily health check",
    )
    mode.add_argument(
        "--health-check",
        action="store_true",
        help="Print the active registry and schedules, then exit",
    )
    mode.add_argument(
        "--seed-genes",
        metavar="PATH",
        type=Path,
        default=None,
        help="Load gene symbols (one per line) into gene_variant_counts and exit",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to SQLite database (default: $CLINVAR_DB_PATH or clinvar.sqlite)",
    )
    parser.add_argument(
        "--sync-schedule",
        metavar="CRON",
        default=None,
        help="Cron expression for the full sync (default: $SYNC_SCHEDULE or '45 21 * * 5')",
    )
    parser.add_argument(
        "--health-schedule",
        metavar="CRON",
        default=None,
        help="Cron expression for the heartbeat (default: $HEALTH_SCHEDULE or '0 9 * * *')",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Debug-level logging",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> SyncConfig:
    config = SyncConfig.from_env()
    if args.db is not None:
        config.db_path = args.db
    if args.sync_schedule:
        config.sync_schedule = args.sync_schedule
    if args.health_schedule:
        config.health_schedule = args.health_schedule
    return config


def run_once(orchestrator: Orchestrator) -> int:
    """Run one sync; return the process exit code."""
    try:
        summary = orchestrator.trigger()
    except Exception:
        # trigger() reports its own failures; this only catches a broken setup
        print("FATAL: sync could not start", file=sys.stderr)
        traceback.print_exc()
        return 1
    status = "OK" if summary.success else "FAIL"
    print(f"\n[{status}] ClinVar sync finished in {summary.duration_seconds:.1f}s")
    for stats in summary.file_stats:
        mark = {"succeeded": "OK", "skipped": "SKIP"}.get(stats.status, "FAIL")
        print(f"  [{mark}] {stats.file_name}: {stats.rows_loaded:,} rows"
              + (f" ({stats.error})" if stats.error else ""))
    for stage, stage_status in summary.stages.items():
        print(f"  [{'OK' if stage_status == 'completed' else 'FAIL'}] {stage}")
    return 0 if summary.success else 1


def main(argv=None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = build_config(args)
        sync_trigger = CronTrigger.parse(config.sync_schedule)
        health_trigger = CronTrigger.parse(config.health_schedule)
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2

    if args.seed_genes is not None:
        conn = connect(config.db_path)
        try:
            added = seed_gene_symbols(conn, read_gene_symbols(args.seed_genes))
        finally:
            conn.close()
        print(f"Seeded {added} new gene symbol(s) into {config.db_path}")
        return 0

    orchestrator = Orchestrator(config)
    try:
        if args.health_check:
            print(json.dumps(orchestrator.health_check(), indent=2))
            return 0

        if args.schedule:
            print("Scheduled ClinVar sync")
            print(f"  Sync:   {sync_trigger.expression}")
            print(f"  Health: {health_trigger.expression}")
            print("  Press Ctrl+C to stop.")
            try:
                run_scheduled({
                    "sync": (sync_trigger, orchestrator.trigger),
                    "health_check": (health_trigger, orchestrator.health_check),
                })
            except KeyboardInterrupt:
                print("\nScheduler stopped.")
            return 0

        return run_once(orchestrator)
    finally:
        close_session()


if __name__ == "__main__":
    sys.exit(main())
