"""
Bulk Loader -- stage a decompressed dump and atomically promote it.

Load protocol for one file:

    1. create_staging(columns)    fresh ``<table>__staging_<token>``, all TEXT
    2. append_batch(rows) ...      one short transaction per batch
    3. promote()                   index staging, then in ONE transaction:
                                   DROP canonical; RENAME staging -> canonical
    4. rollback()                  on any failure: drop staging, canonical untouched

Readers only ever query the canonical name. Under WAL they keep reading
their snapshot of the old table until the promotion commits, and from then
on they see the complete new table; no reader observes a missing table or a
partially loaded one.

The ClinVar dumps are tab-delimited with ``#``-prefixed comment lines. The
column header is itself a ``#`` line (``#AlleleID ...`` for variant_summary,
``#VariationID ...`` for submission_summary, which is preceded by a block of
free-text comments). Everything before the header marker is skipped; after
it, every non-blank line that does not start with ``#`` is a data row.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence, TextIO

from pipeline.errors import LoadError
from utils.common import sanitize_column
from utils.database import list_tables_like, quote_ident, table_exists

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 25000
COMMENT_MARKER = "#"

SUBMISSION_COLUMNS = (
    "VariationID",
    "ClinicalSignificance",
    "DateLastEvaluated",
    "Description",
    "SubmittedPhenotypeInfo",
    "ReportedPhenotypeInfo",
    "ReviewStatus",
    "CollectionMethod",
    "OriginCounts",
    "Submitter",
    "SCV",
    "SubmittedGeneSymbol",
    "ExplanationOfInterpretation",
    "SomaticClinicalImpact",
    "Oncogenicity",
)


@dataclass(frozen=True)
class TableSpec:
    """How one dump maps onto one canonical table.

    ``columns=None`` means the column set is taken from the file's own
    header line. ``indexes`` are SQL expressions indexed on the staging
    table before promotion.
    """

    table: str
    header_marker: str
    columns: tuple[str, ...] | None = None
    indexes: tuple[str, ...] = ()


VARIANT_SUMMARY = TableSpec(
    table="variant_summary",
    header_marker="#AlleleID",
    # keyset pagination in the component builder walks this expression
    indexes=('CAST("VariationID" AS INTEGER)',),
)

SUBMISSION_SUMMARY = TableSpec(
    table="submission_summary",
    header_marker="#VariationID",
    columns=SUBMISSION_COLUMNS,
    indexes=('"VariationID"',),
)

TABLE_SPECS = {spec.table: spec for spec in (VARIANT_SUMMARY, SUBMISSION_SUMMARY)}


@dataclass
class LoadResult:
    table: str
    rows_loaded: int = 0
    lines_read: int = 0
    lines_skipped: int = 0
    seconds: float = 0.0
    columns: list[str] = field(default_factory=list)


# ── Loader interface ─────────────────────────────────────────────────────────


class BulkLoader(ABC):
    """Backend-neutral staging/promotion protocol."""

    @abstractmethod
    def create_staging(self, columns: Sequence[str]) -> None:
        """Create an empty staging table with *columns*."""

    @abstractmethod
    def append_batch(self, rows: Sequence[Sequence[str | None]]) -> int:
        """Push one batch of rows into staging; return rows written."""

    @abstractmethod
    def promote(self) -> None:
        """Atomically replace the canonical table with staging."""

    @abstractmethod
    def rollback(self) -> None:
        """Discard staging; leave the canonical table untouched."""


class SqliteBulkLoader(BulkLoader):
    """BulkLoader on SQLite.

    The connection must be in autocommit mode (``isolation_level=None``,
    see utils.database.connect): every transaction boundary here is explicit.
    """

    def __init__(self, conn: sqlite3.Connection, spec: TableSpec) -> None:
        self.conn = conn
        self.spec = spec
        self.staging: str | None = None
        self.columns: list[str] = []
        self._insert_sql = ""

    @property
    def staging_prefix(self) -> str:
        return f"{self.spec.table}__staging_"

    def drop_stale_staging(self) -> list[str]:
        """Remove staging tables left behind by a crashed run."""
        stale = list(list_tables_like(self.conn, self.staging_prefix))
        for name in stale:
            logger.warning("Dropping stale staging table %s", name)
            self.conn.execute(f"DROP TABLE IF EXISTS {quote_ident(name)}")
        return stale

    def create_staging(self, columns: Sequence[str]) -> None:
        if not columns:
            raise LoadError(f"{self.spec.table}: no columns to stage")
        self.drop_stale_staging()
        self.staging = f"{self.staging_prefix}{uuid.uuid4().hex[:8]}"
        self.columns = list(columns)
        col_defs = ", ".join(f"{quote_ident(c)} TEXT" for c in self.columns)
        try:
            self.conn.execute(f"CREATE TABLE {quote_ident(self.staging)} ({col_defs})")
        except sqlite3.Error as exc:
            raise LoadError(f"Could not create staging for {self.spec.table}: {exc}") from exc
        placeholders = ", ".join("?" * len(self.columns))
        self._insert_sql = f"INSERT INTO {quote_ident(self.staging)} VALUES ({placeholders})"
        logger.debug("Created %s with %d columns", self.staging, len(self.columns))

    def append_batch(self, rows: Sequence[Sequence[str | None]]) -> int:
        if self.staging is None:
            raise LoadError("append_batch() called before create_staging()")
        if not rows:
            return 0
        try:
            self.conn.execute("BEGIN")
            self.conn.executemany(self._insert_sql, rows)
            self.conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise LoadError(f"Batch insert into {self.staging} failed: {exc}") from exc
        return len(rows)

    def _build_indexes(self) -> None:
        for i, expr in enumerate(self.spec.indexes):
            index_name = f"idx_{self.staging}_{i}"
            self.conn.execute(
                f"CREATE INDEX {quote_ident(index_name)} "
                f"ON {quote_ident(self.staging)} ({expr})"
            )

    def promote(self) -> None:
        if self.staging is None:
            raise LoadError("promote() called before create_staging()")
        canonical = quote_ident(self.spec.table)
        try:
            self._build_indexes()
            self.conn.execute("BEGIN IMMEDIATE")
            self.conn.execute(f"DROP TABLE IF EXISTS {canonical}")
            self.conn.execute(f"ALTER TABLE {quote_ident(self.staging)} RENAME TO {canonical}")
            self.conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise LoadError(f"Promotion of {self.spec.table} failed: {exc}") from exc
        logger.info("Promoted %s -> %s", self.staging, self.spec.table)
        self.staging = None

    def rollback(self) -> None:
        if self.conn.in_transaction:
            self.conn.execute("ROLLBACK")
        if self.staging is not None:
            self.conn.execute(f"DROP TABLE IF EXISTS {quote_ident(self.staging)}")
            logger.warning("Rolled back %s; %s left as it was", self.staging, self.spec.table)
            self.staging = None


# ── File streaming ───────────────────────────────────────────────────────────


def _dedupe(names: Iterable[str]) -> list[str]:
    seen: dict[str, int] = {}
    out = []
    for name in names:
        key = name.lower()
        if key in seen:
            seen[key] += 1
            name = f"{name}_{seen[key]}"
        else:
            seen[key] = 1
        out.append(name)
    return out


def read_header(fh: TextIO, spec: TableSpec) -> list[str]:
    """Consume *fh* up to and including the header marker line.

    Returns the column names: the fixed set from *spec*, or the header
    fields sanitized into identifiers.

    Raises:
        LoadError: if the marker never appears.
    """
    for line in fh:
        fields = line.rstrip("\r\n").split("\t")
        if fields[0].strip() != spec.header_marker:
            continue
        if spec.columns is not None:
            return list(spec.columns)
        return _dedupe(sanitize_column(f) for f in fields)
    raise LoadError(f"Header marker {spec.header_marker!r} not found for {spec.table}")


def _to_row(line: str, width: int, line_no: int) -> list[str | None]:
    fields: list[str | None] = list(line.split("\t"))
    if len(fields) > width:
        if any(f.strip() for f in fields[width:]):
            raise LoadError(
                f"Line {line_no} after header: {len(fields)} fields, expected {width}"
            )
        fields = fields[:width]
    if len(fields) < width:
        fields.extend([None] * (width - len(fields)))
    return fields


def load_file(conn: sqlite3.Connection, path: Path, spec: TableSpec,
              batch_size: int = DEFAULT_BATCH_SIZE,
              loader: BulkLoader | None = None) -> LoadResult:
    """Stage *path* into ``spec.table`` and promote it, or roll back.

    Args:
        conn: Autocommit-mode connection.
        path: Decompressed tab-delimited dump.
        spec: Target table description.
        batch_size: Rows per append_batch() call.
        loader: BulkLoader to drive (default: SqliteBulkLoader on *conn*).

    Raises:
        LoadError: on any staging or promotion failure. The canonical table
            is unchanged when this is raised.
    """
    path = Path(path)
    loader = loader or SqliteBulkLoader(conn, spec)
    result = LoadResult(table=spec.table)
    t0 = time.time()

    logger.info("Loading %s into %s (batch size %d)", path.name, spec.table, batch_size)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            columns = read_header(fh, spec)
            result.columns = columns
            loader.create_staging(columns)

            width = len(columns)
            batch: list[list[str | None]] = []
            for line_no, raw in enumerate(fh, start=1):
                result.lines_read += 1
                line = raw.rstrip("\r\n")
                if not line.strip() or line.startswith(COMMENT_MARKER):
                    result.lines_skipped += 1
                    continue
                batch.append(_to_row(line, width, line_no))
                if len(batch) >= batch_size:
                    result.rows_loaded += loader.append_batch(batch)
                    logger.debug("%s: %d rows staged", spec.table, result.rows_loaded)
                    batch = []
            if batch:
                result.rows_loaded += loader.append_batch(batch)

        loader.promote()
    except (LoadError, OSError, UnicodeDecodeError, sqlite3.Error) as exc:
        loader.rollback()
        if isinstance(exc, LoadError):
            raise
        raise LoadError(f"Loading {path.name} into {spec.table} failed: {exc}") from exc

    result.seconds = time.time() - t0
    logger.info("Loaded %d rows into %s in %.1fs", result.rows_loaded, spec.table, result.seconds)
    return result


def canonical_ready(conn: sqlite3.Connection, spec: TableSpec) -> bool:
    """True once a canonical table has been published at least once."""
    return table_exists(conn, spec.table)
