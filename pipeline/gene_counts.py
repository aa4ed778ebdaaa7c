"""
Enrichment Client -- per-gene ClinVar variant counts from NCBI E-utilities.

For every gene in ``gene_variant_counts`` the client asks esearch how many
ClinVar records match. The field-tagged query (``BRCA2[gene]``) is tried
first; when it returns zero, the untagged free-text query (``BRCA2``) is
tried before zero is accepted, because some genes are under-indexed on the
gene field upstream.

Calls are strictly sequential with a fixed pause before every request after the first, to stay
inside the E-utilities rate limit (3 req/s without an API key). A failure
for one gene is logged and counted; the loop moves on to the next gene.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

import requests
from bs4 import BeautifulSoup

from downloader.sources import PARSER
from pipeline.errors import EnrichmentFailure
from utils.database import batch_insert

logger = logging.getLogger(__name__)

ESEARCH_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/esearch.fcgi"
DEFAULT_DELAY = 0.5
REQUEST_TIMEOUT = 30

GENE_COUNTS_DDL = """
CREATE TABLE IF NOT EXISTS gene_variant_counts (
    gene_symbol   TEXT PRIMARY KEY,
    variant_count INTEGER DEFAULT 0,
    last_updated  TIMESTAMP
)
"""


@dataclass(frozen=True)
class GeneCount:
    gene_symbol: str
    count: int
    last_updated: str


@dataclass
class EnrichmentResult:
    genes_total: int = 0
    updated: int = 0
    failed: int = 0
    fallback_used: int = 0
    seconds: float = 0.0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "genes_total": self.genes_total,
            "updated": self.updated,
            "failed": self.failed,
            "fallback_used": self.fallback_used,
            "seconds": round(self.seconds, 2),
        }


def ensure_gene_table(conn: sqlite3.Connection) -> None:
    conn.execute(GENE_COUNTS_DDL)


def read_gene_symbols(path: Path) -> list[str]:
    """Read a gene symbol list, one per line.

    Blank lines and lines containing ``(`` (annotated entries such as
    ``ABC1 (withdrawn)``) are skipped.
    """
    symbols = []
    with open(path, "r", encoding="utf-8") as fh:
        for line in fh:
            symbol = line.strip()
            if not symbol or "(" in symbol:
                continue
            symbols.append(symbol)
    return symbols


def seed_gene_symbols(conn: sqlite3.Connection, symbols: Iterable[str]) -> int:
    """Insert any new gene symbols with a zero count; return how many were new."""
    ensure_gene_table(conn)
    rows = [(s,) for s in dict.fromkeys(symbols)]
    if not rows:
        return 0
    added = batch_insert(
        conn,
        "INSERT OR IGNORE INTO gene_variant_counts (gene_symbol, variant_count) VALUES (?, 0)",
        rows,
        batch_size=5000,
    )
    logger.info("Seeded %d new gene symbols (%d listed)", added, len(rows))
    return added


class GeneCountClient:
    """Thin esearch wrapper returning ClinVar record counts."""

    def __init__(self, session: requests.Session, api_key: str | None = None,
                 base_url: str = ESEARCH_URL, timeout: int = REQUEST_TIMEOUT) -> None:
        self.session = session
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.fallbacks = 0

    def search_count(self, gene_symbol: str, term: str) -> int:
        """Run one esearch query and return its ``<Count>``.

        Raises:
            EnrichmentFailure: on request errors or an unreadable response.
        """
        params = {"db": "clinvar", "term": term, "retmax": 0}
        if self.api_key:
            params["api_key"] = self.api_key
        try:
            resp = self.session.get(self.base_url, params=params, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise EnrichmentFailure(gene_symbol, f"esearch request failed: {exc}") from exc

        soup = BeautifulSoup(resp.text, PARSER)
        count = soup.find("count")
        if count is None:
            error = soup.find("error")
            detail = error.get_text(strip=True) if error else "no <Count> in response"
            raise EnrichmentFailure(gene_symbol, detail)
        try:
            return int(count.get_text(strip=True))
        except ValueError as exc:
            raise EnrichmentFailure(gene_symbol, f"bad count {count.get_text()!r}") from exc

    def count_variants(self, gene_symbol: str,
                       pause: Callable[[], None] | None = None) -> int:
        """Tagged query first, then free text if that found nothing.

        *pause* runs before the second request so both stay rate limited.
        """
        count = self.search_count(gene_symbol, f"{gene_symbol}[gene]")
        if count == 0:
            logger.debug("%s: tagged query returned 0, trying free text", gene_symbol)
            self.fallbacks += 1
            if pause is not None:
                pause()
            count = self.search_count(gene_symbol, gene_symbol)
        return count


def update_gene_count(conn: sqlite3.Connection, gene_symbol: str, count: int) -> GeneCount:
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    conn.execute(
        "UPDATE gene_variant_counts SET variant_count = ?, last_updated = ? "
        "WHERE gene_symbol = ?",
        (count, stamp, gene_symbol),
    )
    return GeneCount(gene_symbol=gene_symbol, count=count, last_updated=stamp)


def refresh_gene_counts(conn: sqlite3.Connection, client: GeneCountClient,
                        delay: float = DEFAULT_DELAY,
                        sleep: Callable[[float], None] = time.sleep) -> EnrichmentResult:
    """Refresh the count of every known gene, one call at a time."""
    result = EnrichmentResult()
    t0 = time.time()
    ensure_gene_table(conn)
    genes = [r[0] for r in conn.execute(
        "SELECT gene_symbol FROM gene_variant_counts ORDER BY gene_symbol"
    ).fetchall()]
    result.genes_total = len(genes)
    if not genes:
        logger.warning("gene_variant_counts is empty; nothing to enrich")
        return result

    fallbacks_before = client.fallbacks
    for i, gene in enumerate(genes):
        if i:
            sleep(delay)
        try:
            count = client.count_variants(gene, pause=lambda: sleep(delay))
            update_gene_count(conn, gene, count)
            result.updated += 1
        except EnrichmentFailure as exc:
            logger.warning("Gene count failed: %s", exc)
            result.failed += 1
            result.errors.append(str(exc))
        if (i + 1) % 500 == 0:
            logger.info("Gene counts: %d/%d processed", i + 1, len(genes))

    result.fallback_used = client.fallbacks - fallbacks_before
    result.seconds = time.time() - t0
    logger.info("Gene counts refreshed: %d updated, %d failed of %d in %.1fs",
                result.updated, result.failed, result.genes_total, result.seconds)
    return result
