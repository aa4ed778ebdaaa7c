"""
Pytest fixtures for the ClinVar sync tests.

Provides small but realistic dump fixtures, a temporary SQLite database,
MagicMock HTTP sessions that route by URL, and a recording Notifier.
"""

import gzip
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

_PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from pipeline.report import Notifier  # noqa: E402
from utils.config import DEFAULT_HEALTH_SCHEDULE, DEFAULT_SYNC_SCHEDULE, SyncConfig  # noqa: E402
from utils.database import connect  # noqa: E402

BASE_URL = "https://example.test/pub/clinvar/tab_delimited/"

VARIANT_SUMMARY_TXT = (
    "#AlleleID\tType\tName\tGeneSymbol\tVariationID\tAssembly\n"
    "15041\tDeletion\tNM_000059.4(BRCA2):c.1763_1766del (p.Lys588SerfsTer6)\tBRCA2\t9\tGRCh37\n"
    "15041\tDeletion\tNM_000059.4(BRCA2):c.1763_1766del (p.Lys588SerfsTer6)\tBRCA2\t9\tGRCh38\n"
    "15042\tDeletion\tNM_007294.4(BRCA1):c.68_69del (p.Glu23fs)\tBRCA1\t17\tGRCh38\n"
    "15043\tcopy number gain\tGRCh38/hg38 1p36.33(chr1:1-2)x3\t-\t20\tGRCh38\n"
    "15044\tDeletion\tNM_000492.4(CFTR):c.1521_1523del\tCFTR\t35\tGRCh38\n"
    "15045\tsingle nucleotide variant\tNM_000001.1:c.5del\t-\t41\tGRCh38\n"
)

SUBMISSION_SUMMARY_TXT = (
    "##Overview of interpretation, phenotypes, observations, and methods reported\n"
    "##Explanation of the columns in this report\n"
    "#VariationID\tClinicalSignificance\tDateLastEvaluated\tDescription\t"
    "SubmittedPhenotypeInfo\tReportedPhenotypeInfo\tReviewStatus\tCollectionMethod\t"
    "OriginCounts\tSubmitter\tSCV\tSubmittedGeneSymbol\tExplanationOfInterpretation\t"
    "SomaticClinicalImpact\tOncogenicity\n"
    "9\tPathogenic\tJun 29, 2015\t-\tNot Provided\tC0027672:Hereditary cancer\t"
    "criteria provided, single submitter\tclinical testing\tgermline:1\tLab A\t"
    "SCV000000001\tBRCA2\t-\t-\t-\n"
    "\n"
    "17\tLikely pathogenic\t-\t\"quoted\\value\"\tNot Provided\t-\tno assertion criteria\t"
    "literature only\tgermline:na\tLab B\tSCV000000002\tBRCA1\t-\t-\t-\n"
)


def gz(text: str) -> bytes:
    return gzip.compress(text.encode("utf-8"))


def index_html(names, base_url=BASE_URL) -> str:
    rows = "\n".join(
        f'<tr><td><a href="{name}">{name}</a></td><td></td><td>12M</td>'
        f"<td>2026-10-16 21:00</td></tr>"
        for name in names
    )
    return f"<html><body><table>\n{rows}\n</table></body></html>"


def mock_response(content=b"", text=None, status=200, headers=None):
    response = MagicMock()
    response.status_code = status
    response.headers = headers if headers is not None else {"content-length": str(len(content))}
    response.text = text if text is not None else content.decode("latin-1")
    response.content = content
    response.iter_content = MagicMock(return_value=[content])
    response.raise_for_status = MagicMock()
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status}")
    return response


def routed_session(routes):
    """MagicMock session whose get() answers from *routes* (url -> response or exception)."""
    session = MagicMock()

    def _get(url, **kwargs):
        value = routes.get(url)
        if value is None:
            return mock_response(status=404, text="Not Found")
        if isinstance(value, Exception):
            raise value
        return value

    session.get.side_effect = _get
    return session


class RecordingNotifier(Notifier):
    """Notifier double that keeps every message."""

    def __init__(self, fail=False):
        self.messages = []
        self.fail = fail

    def send(self, subject, success, body, attachment=None):
        self.messages.append({
            "subject": subject,
            "success": success,
            "body": body,
            "attachment": attachment,
        })
        if self.fail:
            raise RuntimeError("mail API down")


class FakeGeneClient:
    """Gene client double returning fixed counts."""

    def __init__(self, counts=None):
        self.counts = counts or {}
        self.fallbacks = 0
        self.calls = []

    def count_variants(self, gene, pause=None):
        self.calls.append(gene)
        return self.counts.get(gene, 1)


@pytest.fixture()
def db(tmp_path):
    """File-backed SQLite connection in autocommit mode (WAL needs a file)."""
    conn = connect(tmp_path / "clinvar.sqlite")
    yield conn
    conn.close()


@pytest.fixture()
def sync_config(tmp_path):
    cfg = SyncConfig()
    cfg.base_url = BASE_URL
    cfg.db_path = tmp_path / "clinvar.sqlite"
    cfg.download_dir = tmp_path / "data" / "downloads"
    cfg.temp_dir = tmp_path / "data" / "temp"
    cfg.log_dir = tmp_path / "logs"
    cfg.load_batch_size = 2
    cfg.component_page_size = 2
    cfg.enrich_delay = 0
    cfg.gene_symbols_file = None
    cfg.log_retention_runs = 2
    cfg.sync_schedule = DEFAULT_SYNC_SCHEDULE
    cfg.health_schedule = DEFAULT_HEALTH_SCHEDULE
    return cfg


@pytest.fixture()
def notifier():
    return RecordingNotifier()
