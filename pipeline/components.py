"""
Derived-Table Builder -- component parts of ClinVar variant names.

ClinVar names coding variants as::

    NM_000059.4(BRCA2):c.1763_1766del (p.Lys588SerfsTer6)
    ^^^^^^^^^^^ ^^^^^  ^^^^^^^^^^^^^^   ^^^^^^^^^^^^^^^^^
    transcript  gene   DNA change       protein change (optional)

build_component_parts() rebuilds ``component_parts`` from ``variant_summary``:

  - the table is cleared and repopulated inside one transaction, so readers
    keep the previous contents until the rebuild commits;
  - ``variant_summary`` is walked with keyset pagination on the integer
    VariationID (never OFFSET), which keeps page cost flat over tens of
    millions of rows;
  - names that do not parse are appended to the persistent parse-failure
    log with a reason, and the walk continues;
  - rows are deduplicated by VariationID within the run and inserted with
    INSERT OR IGNORE, so a rerun over unchanged data yields the same table.

The grammar is deliberately narrow: only names starting with one of
TRANSCRIPT_PREFIXES are considered.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from pipeline.errors import ParseFailure
from utils.database import table_exists

logger = logging.getLogger(__name__)

TRANSCRIPT_PREFIXES = ("NM_",)

DEFAULT_PAGE_SIZE = 10000
DEFAULT_BATCH_SIZE = 5000

_TRANSCRIPT_GENE = re.compile(r"^([^:]+)\(([^)]+)\)")
_DNA_CHANGE = re.compile(r":(c\.[^ ]+)")
_PROTEIN_CHANGE = re.compile(r"\(p\.([^)]+)\)$")

COMPONENT_PARTS_DDL = """
CREATE TABLE IF NOT EXISTS component_parts (
    variation_id   INTEGER PRIMARY KEY,
    gene_symbol    TEXT,
    transcript_id  TEXT,
    dna_change     TEXT,
    protein_change TEXT
)
"""


@dataclass(frozen=True)
class ParsedComponents:
    transcript_id: str
    gene_symbol: str
    dna_change: str
    protein_change: str | None = None


@dataclass(frozen=True)
class DerivedComponentRecord:
    variation_id: int
    components: ParsedComponents

    def as_row(self) -> tuple:
        c = self.components
        return (self.variation_id, c.gene_symbol, c.transcript_id,
                c.dna_change, c.protein_change)


def parse_variant_name(name: str | None) -> ParsedComponents:
    """Split a ClinVar variant name into its component parts.

    Raises:
        ParseFailure: with a reason code when the name does not match.
    """
    if not name or not name.strip():
        raise ParseFailure("empty_name", name)
    name = name.strip()
    if (":" not in name or "(" not in name or ")" not in name
            or not name.startswith(TRANSCRIPT_PREFIXES)):
        raise ParseFailure("invalid_structure", name)

    head = _TRANSCRIPT_GENE.match(name)
    if head is None:
        raise ParseFailure("no_transcript_gene", name)

    transcript_id = head.group(1).strip()
    gene_symbol = head.group(2).strip()
    if not transcript_id or not gene_symbol:
        raise ParseFailure("no_transcript_gene", name)

    dna = _DNA_CHANGE.search(name)
    if dna is None:
        raise ParseFailure("no_dna_change", name)

    protein = _PROTEIN_CHANGE.search(name)
    return ParsedComponents(
        transcript_id=transcript_id,
        gene_symbol=gene_symbol,
        dna_change=dna.group(1),
        protein_change=protein.group(1) if protein else None,
    )


def try_parse_variant_name(name: str | None) -> ParsedComponents | None:
    """Like parse_variant_name() but returns None instead of raising."""
    try:
        return parse_variant_name(name)
    except ParseFailure:
        return None


class ParseFailureLog:
    """Append-only log of names that did not parse.

    This file lives in the logs directory but is never rotated or purged;
    it accumulates across runs so data-quality problems upstream stay
    visible.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._fh = None
        self.count = 0

    def __enter__(self) -> "ParseFailureLog":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = open(self.path, "a", encoding="utf-8")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def record(self, failure: ParseFailure) -> None:
        stamp = datetime.now(timezone.utc).isoformat()
        self._fh.write(
            f"[{stamp}] Reason: {failure.message} | Variant Name: {failure.name}\n"
        )
        self.count += 1


@dataclass
class BuildResult:
    rows_scanned: int = 0
    inserted: int = 0
    failures: int = 0
    duplicates: int = 0
    pages: int = 0
    seconds: float = 0.0
    failure_reasons: Counter = field(default_factory=Counter)

    def to_dict(self) -> dict:
        return {
            "rows_scanned": self.rows_scanned,
            "inserted": self.inserted,
            "failures": self.failures,
            "duplicates": self.duplicates,
            "pages": self.pages,
            "seconds": round(self.seconds, 2),
            "failure_reasons": dict(self.failure_reasons),
        }


def ensure_component_table(conn: sqlite3.Connection) -> None:
    conn.execute(COMPONENT_PARTS_DDL)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_component_parts_gene "
        "ON component_parts (gene_symbol)"
    )


def _prefix_clause() -> tuple[str, list[str]]:
    clauses = []
    params = []
    for prefix in TRANSCRIPT_PREFIXES:
        clauses.append("substr(Name, 1, ?) = ?")
        params.extend([len(prefix), prefix])
    return "(" + " OR ".join(clauses) + ")", params


_PAGE_SQL = """
SELECT DISTINCT Name, CAST(VariationID AS INTEGER) AS vid
FROM variant_summary
WHERE {prefix}
  AND (CAST(VariationID AS INTEGER) > ?
       OR (CAST(VariationID AS INTEGER) = ? AND Name > ?))
ORDER BY vid, Name
LIMIT ?
"""

_INSERT_SQL = """
INSERT OR IGNORE INTO component_parts
    (variation_id, gene_symbol, transcript_id, dna_change, protein_change)
VALUES (?, ?, ?, ?, ?)
"""


def build_component_parts(conn: sqlite3.Connection, failure_log_path: Path,
                          page_size: int = DEFAULT_PAGE_SIZE,
                          batch_size: int = DEFAULT_BATCH_SIZE) -> BuildResult:
    """Rebuild ``component_parts`` from the canonical ``variant_summary``.

    Args:
        conn: Autocommit-mode connection.
        failure_log_path: Persistent parse-failure log (appended to).
        page_size: Rows per keyset page.
        batch_size: Rows per INSERT OR IGNORE batch.

    Returns:
        BuildResult counters for the run summary.
    """
    result = BuildResult()
    t0 = time.time()
    ensure_component_table(conn)
    if not table_exists(conn, "variant_summary"):
        logger.warning("variant_summary does not exist yet; component_parts left empty")
        return result

    prefix_sql, prefix_params = _prefix_clause()
    page_sql = _PAGE_SQL.format(prefix=prefix_sql)
    seen: set[int] = set()
    pending: list[tuple] = []
    # keyset cursor over (VariationID, Name); one VariationID can carry several names
    last_id, last_name = -1, ""

    def flush() -> None:
        if pending:
            before = conn.total_changes
            conn.executemany(_INSERT_SQL, pending)
            result.inserted += conn.total_changes - before
            pending.clear()

    with ParseFailureLog(failure_log_path) as failure_log:
        conn.execute("BEGIN")
        try:
            conn.execute("DELETE FROM component_parts")
            while True:
                page = conn.execute(
                    page_sql, (*prefix_params, last_id, last_id, last_name, page_size)
                ).fetchall()
                if not page:
                    break
                result.pages += 1
                for name, vid in page:
                    result.rows_scanned += 1
                    if vid in seen:
                        result.duplicates += 1
                        continue
                    try:
                        parsed = parse_variant_name(name)
                    except ParseFailure as failure:
                        failure_log.record(failure)
                        result.failures += 1
                        result.failure_reasons[failure.reason] += 1
                        continue
                    seen.add(vid)
                    pending.append(DerivedComponentRecord(vid, parsed).as_row())
                    if len(pending) >= batch_size:
                        flush()
                last_name, last_id = page[-1]
                logger.debug("component_parts: page %d ends at VariationID %s",
                             result.pages, last_id)
            flush()
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    result.seconds = time.time() - t0
    logger.info(
        "component_parts rebuilt: %d inserted, %d parse failures, %d duplicates "
        "from %d rows in %.1fs",
        result.inserted, result.failures, result.duplicates,
        result.rows_scanned, result.seconds,
    )
    return result
