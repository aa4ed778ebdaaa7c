"""Tests for pipeline/components.py -- name parsing and the component_parts rebuild."""

import re

import pytest

from pipeline.components import (
    BuildResult,
    ParseFailureLog,
    build_component_parts,
    parse_variant_name,
    try_parse_variant_name,
)
from pipeline.errors import ParseFailure
from pipeline.loader import VARIANT_SUMMARY, load_file
from utils.database import get_table_count, table_exists

from conftest import VARIANT_SUMMARY_TXT


@pytest.fixture()
def loaded_db(db, tmp_path):
    path = tmp_path / "variant_summary.txt"
    path.write_text(VARIANT_SUMMARY_TXT, encoding="utf-8")
    load_file(db, path, VARIANT_SUMMARY)
    return db


def _rows(conn):
    return [tuple(r) for r in conn.execute(
        "SELECT variation_id, gene_symbol, transcript_id, dna_change, protein_change "
        "FROM component_parts ORDER BY variation_id"
    ).fetchall()]


class TestParseVariantName:
    def test_full_name(self):
        parsed = parse_variant_name("NM_000059.4(BRCA2):c.1763_1766del (p.Lys588SerfsTer6)")
        assert parsed.transcript_id == "NM_000059.4"
        assert parsed.gene_symbol == "BRCA2"
        assert parsed.dna_change == "c.1763_1766del"
        assert parsed.protein_change == "Lys588SerfsTer6"

    def test_protein_change_optional(self):
        parsed = parse_variant_name("NM_000492.4(CFTR):c.1521_1523del")
        assert parsed.dna_change == "c.1521_1523del"
        assert parsed.protein_change is None

    def test_surrounding_whitespace_ignored(self):
        parsed = parse_variant_name("  NM_007294.4(BRCA1):c.68_69del (p.Glu23fs) ")
        assert parsed.protein_change == "Glu23fs"

    @pytest.mark.parametrize("name, reason", [
        (None, "empty_name"),
        ("   ", "empty_name"),
        ("NM_000001.1:c.5del", "invalid_structure"),
        ("NC_000017.11(BRCA1):g.43045712del", "invalid_structure"),
        ("NM_000059.4:c.1A>G (BRCA2)", "no_transcript_gene"),
        ("NM_000001.1( ):c.1A>G", "no_transcript_gene"),
        ("NM_000002.1(GENE1):p.Arg1Ter (x)", "no_dna_change"),
    ])
    def test_failure_reasons(self, name, reason):
        with pytest.raises(ParseFailure) as exc_info:
            parse_variant_name(name)
        assert exc_info.value.reason == reason

    def test_try_parse_returns_none(self):
        assert try_parse_variant_name("GRCh38/hg38 1p36.33(chr1:1-2)x3") is None
        assert try_parse_variant_name("NM_1.1(A):c.1A>G").gene_symbol == "A"


class TestParseFailureLog:
    def test_appends_across_opens(self, tmp_path):
        path = tmp_path / "logs" / "componentPartFailures.log"
        with ParseFailureLog(path) as log:
            log.record(ParseFailure("invalid_structure", "NM_1:c.1del"))
        with ParseFailureLog(path) as log:
            log.record(ParseFailure("empty_name", ""))
        lines = path.read_text().splitlines()
        assert len(lines) == 2
        assert re.match(
            r"^\[.+\] Reason: Invalid format - missing required structure \| "
            r"Variant Name: NM_1:c\.1del$",
            lines[0],
        )
        assert "Empty or null fullName" in lines[1]


class TestBuildComponentParts:
    def test_builds_rows_for_coding_names(self, loaded_db, tmp_path):
        result = build_component_parts(loaded_db, tmp_path / "fail.log")
        assert _rows(loaded_db) == [
            (9, "BRCA2", "NM_000059.4", "c.1763_1766del", "Lys588SerfsTer6"),
            (17, "BRCA1", "NM_007294.4", "c.68_69del", "Glu23fs"),
            (35, "CFTR", "NM_000492.4", "c.1521_1523del", None),
        ]
        assert result.inserted == 3
        assert result.failures == 1
        assert result.failure_reasons == {"invalid_structure": 1}

    def test_non_transcript_names_not_considered(self, loaded_db, tmp_path):
        fail_log = tmp_path / "fail.log"
        build_component_parts(loaded_db, fail_log)
        text = fail_log.read_text()
        # the copy-number name never reaches the parser
        assert "GRCh38/hg38" not in text
        assert "Variant Name: NM_000001.1:c.5del" in text

    def test_small_pages_walk_everything(self, loaded_db, tmp_path):
        result = build_component_parts(loaded_db, tmp_path / "fail.log", page_size=1)
        assert get_table_count(loaded_db, "component_parts") == 3
        # one page per distinct (Name, VariationID) pair with an NM_ name
        assert result.pages == 4

    def test_rerun_is_idempotent(self, loaded_db, tmp_path):
        build_component_parts(loaded_db, tmp_path / "fail.log")
        first = _rows(loaded_db)
        build_component_parts(loaded_db, tmp_path / "fail.log", page_size=2)
        assert _rows(loaded_db) == first

    def test_failure_log_accumulates(self, loaded_db, tmp_path):
        fail_log = tmp_path / "fail.log"
        build_component_parts(loaded_db, fail_log)
        build_component_parts(loaded_db, fail_log)
        assert len(fail_log.read_text().splitlines()) == 2

    def test_duplicate_variation_ids_kept_once(self, db, tmp_path):
        path = tmp_path / "variant_summary.txt"
        path.write_text(
            "#AlleleID\tName\tVariationID\n"
            "1\tNM_1.1(A):c.1A>G (p.Met1Val)\t5\n"
            "2\tNM_9.1(A):c.1A>G (p.Met1Val)\t5\n",
            encoding="utf-8",
        )
        load_file(db, path, VARIANT_SUMMARY)
        result = build_component_parts(db, tmp_path / "fail.log")
        assert result.inserted == 1
        assert result.duplicates == 1
        assert get_table_count(db, "component_parts") == 1

    def test_variation_split_across_pages_is_not_lost(self, db, tmp_path):
        path = tmp_path / "variant_summary.txt"
        path.write_text(
            "#AlleleID\tName\tVariationID\n"
            "1\tNM_1.1:c.1del\t5\n"
            "2\tNM_2.1(A):c.1A>G\t5\n"
            "3\tNM_3.1(B):c.2A>G\t6\n",
            encoding="utf-8",
        )
        load_file(db, path, VARIANT_SUMMARY)
        fail_log = tmp_path / "fail.log"
        result = build_component_parts(db, fail_log, page_size=1)
        assert [r[0] for r in _rows(db)] == [5, 6]
        assert result.pages == 3
        assert result.failures == 1
        assert "NM_1.1:c.1del" in fail_log.read_text()

    def test_missing_variant_summary_returns_empty(self, db, tmp_path):
        result = build_component_parts(db, tmp_path / "fail.log")
        assert isinstance(result, BuildResult)
        assert result.rows_scanned == 0
        assert table_exists(db, "component_parts")

    def test_error_mid_build_keeps_previous_rows(self, loaded_db, tmp_path, monkeypatch):
        build_component_parts(loaded_db, tmp_path / "fail.log")
        before = _rows(loaded_db)

        def explode(name):
            raise RuntimeError("parser crashed")

        monkeypatch.setattr("pipeline.components.parse_variant_name", explode)
        with pytest.raises(RuntimeError):
            build_component_parts(loaded_db, tmp_path / "fail.log")
        assert _rows(loaded_db) == before
        assert not loaded_db.in_transaction
