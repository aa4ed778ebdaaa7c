"""
End-to-end tests for pipeline/orchestrator.py

Each test drives Orchestrator.trigger() against a temporary SQLite file and
a MagicMock session that serves the index page, gzip dumps and (optionally)
.md5 companions by URL.
"""

import hashlib
from unittest.mock import patch

import pytest
import requests

from pipeline.orchestrator import ActiveProcessRegistry, Orchestrator
from pipeline.run_ledger import read_ledger
from utils.database import connect, get_table_count, table_exists

from conftest import (
    BASE_URL,
    SUBMISSION_SUMMARY_TXT,
    VARIANT_SUMMARY_TXT,
    FakeGeneClient,
    RecordingNotifier,
    gz,
    index_html,
    mock_response,
    routed_session,
)

VS = "variant_summary.txt.gz"
SS = "submission_summary.txt.gz"


def _routes(vs_text=VARIANT_SUMMARY_TXT, ss_text=SUBMISSION_SUMMARY_TXT,
            listed=(VS, SS), vs_md5=None):
    vs_body, ss_body = gz(vs_text), gz(ss_text)
    routes = {
        BASE_URL: mock_response(text=index_html(listed)),
        BASE_URL + VS: mock_response(content=vs_body),
        BASE_URL + SS: mock_response(content=ss_body),
    }
    if vs_md5 == "match":
        routes[BASE_URL + VS + ".md5"] = mock_response(
            text=f"{hashlib.md5(vs_body).hexdigest()}  {VS}\n"
        )
    elif vs_md5 is not None:
        routes[BASE_URL + VS + ".md5"] = mock_response(text=f"{vs_md5}  {VS}\n")
    return routes


@pytest.fixture()
def gene_file(tmp_path):
    path = tmp_path / "Gene_Symbol.txt"
    path.write_text("BRCA1\nBRCA2\nOLD1 (withdrawn)\n")
    return path


def _orchestrator(config, notifier, routes, gene_client=None, registry=None):
    return Orchestrator(
        config,
        session=routed_session(routes),
        notifier=notifier,
        gene_client=gene_client or FakeGeneClient({"BRCA1": 17, "BRCA2": 42}),
        registry=registry,
        sleep=lambda s: None,
    )


def _count(config, table):
    conn = connect(config.db_path)
    try:
        return get_table_count(conn, table) if table_exists(conn, table) else None
    finally:
        conn.close()


class TestFullRun:
    def test_clean_run_loads_everything(self, sync_config, notifier, gene_file):
        sync_config.gene_symbols_file = gene_file
        orch = _orchestrator(sync_config, notifier, _routes(vs_md5="match"))
        summary = orch.trigger()

        assert summary.success
        assert [s.status for s in summary.file_stats] == ["succeeded", "succeeded"]
        assert summary.file(VS).checksum == "verified"
        assert summary.file(SS).checksum == "unverified"
        assert summary.file(VS).last_modified == "2026-10-16 21:00"
        assert summary.stages == {"component_parts": "completed", "gene_counts": "completed"}

        assert _count(sync_config, "variant_summary") == 6
        assert _count(sync_config, "submission_summary") == 2
        assert _count(sync_config, "component_parts") == 3

        conn = connect(sync_config.db_path)
        try:
            counts = dict(conn.execute(
                "SELECT gene_symbol, variant_count FROM gene_variant_counts"
            ).fetchall())
        finally:
            conn.close()
        assert counts == {"BRCA1": 17, "BRCA2": 42}

    def test_report_ledger_and_cleanup(self, sync_config, notifier):
        orch = _orchestrator(sync_config, notifier, _routes())
        summary = orch.trigger()

        assert len(notifier.messages) == 1
        message = notifier.messages[0]
        assert message["subject"] == "ClinVar Update Success: Weekly ClinVar Update"
        assert message["success"] is True
        assert "Files Loaded: 2 of 2" in message["body"]
        assert message["attachment"].name == "run.log"
        assert message["attachment"].exists()

        assert list(sync_config.download_dir.iterdir()) == []
        assert list(sync_config.temp_dir.iterdir()) == []
        assert sync_config.failure_log_path.exists()

        records = read_ledger(sync_config.ledger_path)
        assert len(records) == 1
        assert records[0]["success"] is summary.success

    def test_registry_empty_after_run(self, sync_config, notifier):
        registry = ActiveProcessRegistry()
        _orchestrator(sync_config, notifier, _routes(), registry=registry).trigger()
        assert len(registry) == 0


class TestFailureIsolation:
    def test_one_bad_file_does_not_stop_the_next(self, sync_config, notifier):
        broken = "AlleleID\tName\n1\tno header marker\n"
        orch = _orchestrator(sync_config, notifier, _routes(vs_text=broken))
        summary = orch.trigger()

        assert summary.file(VS).status == "failed"
        assert "Header marker" in summary.file(VS).error
        assert summary.file(SS).status == "succeeded"
        assert summary.stages == {"component_parts": "completed", "gene_counts": "completed"}
        assert not summary.success
        assert notifier.messages[0]["subject"].startswith("ClinVar Update Failed")
        assert _count(sync_config, "variant_summary") is None
        assert _count(sync_config, "submission_summary") == 2

    def test_failed_reload_keeps_previous_table(self, sync_config, notifier):
        _orchestrator(sync_config, notifier, _routes()).trigger()
        broken = "#AlleleID\tName\tVariationID\n1\ta\t1\textra\tfields\n"
        summary = _orchestrator(sync_config, notifier, _routes(vs_text=broken)).trigger()
        assert summary.file(VS).status == "failed"
        assert _count(sync_config, "variant_summary") == 6
        # components are rebuilt from the table that is still published
        assert _count(sync_config, "component_parts") == 3

    def test_checksum_mismatch_aborts_file(self, sync_config, notifier):
        orch = _orchestrator(sync_config, notifier, _routes(vs_md5="0" * 32))
        summary = orch.trigger()
        stats = summary.file(VS)
        assert stats.status == "failed"
        assert stats.download_ok is False
        assert "MD5 mismatch" in stats.error
        assert _count(sync_config, "variant_summary") is None
        assert summary.file(SS).status == "succeeded"

    def test_listing_failure_fails_every_file(self, sync_config, notifier):
        routes = _routes()
        routes[BASE_URL] = requests.ConnectionError("index unreachable")
        summary = _orchestrator(sync_config, notifier, routes).trigger()
        assert summary.failed_files == [VS, SS]
        assert summary.stages["component_parts"] == "completed"
        assert len(notifier.messages) == 1

    def test_unlisted_file_fails(self, sync_config, notifier):
        summary = _orchestrator(sync_config, notifier, _routes(listed=(VS,))).trigger()
        assert summary.file(SS).status == "failed"
        assert summary.file(SS).error == "not listed in remote index"
        assert summary.file(VS).status == "succeeded"

    def test_stage_failure_recorded(self, sync_config, notifier):
        with patch("pipeline.orchestrator.refresh_gene_counts",
                   side_effect=RuntimeError("eutils down")):
            summary = _orchestrator(sync_config, notifier, _routes()).trigger()
        assert summary.stages["gene_counts"] == "failed"
        assert summary.stages["component_parts"] == "completed"
        assert not summary.success
        assert any("eutils down" in e for e in summary.errors)

    def test_fatal_error_still_reports(self, sync_config, notifier):
        with patch("pipeline.orchestrator.connect", side_effect=RuntimeError("disk gone")):
            summary = _orchestrator(sync_config, notifier, _routes()).trigger()
        assert summary.fatal
        assert summary.end_time is not None
        assert notifier.messages[0]["success"] is False
        assert "Fatal: disk gone" in notifier.messages[0]["body"]
        assert read_ledger(sync_config.ledger_path)[0]["fatal"] is True

    def test_notifier_failure_does_not_raise(self, sync_config):
        notifier = RecordingNotifier(fail=True)
        summary = _orchestrator(sync_config, notifier, _routes()).trigger()
        assert summary.success
        assert list(sync_config.download_dir.iterdir()) == []


class TestReentry:
    def test_active_file_is_skipped(self, sync_config, notifier):
        registry = ActiveProcessRegistry()
        assert registry.try_register(VS)
        summary = _orchestrator(sync_config, notifier, _routes(), registry=registry).trigger()

        stats = summary.file(VS)
        assert stats.status == "skipped"
        assert stats.error == "already being processed"
        assert summary.file(SS).status == "succeeded"
        assert summary.success
        # the other holder still owns its registration
        assert VS in registry

    def test_registry_rejects_double_registration(self):
        registry = ActiveProcessRegistry()
        assert registry.try_register("a")
        assert not registry.try_register("a")
        registry.deregister("a")
        assert registry.try_register("a")
        assert list(registry.snapshot()) == ["a"]


class TestHealthCheck:
    def test_reports_schedules_and_registry(self, sync_config, notifier):
        registry = ActiveProcessRegistry()
        registry.try_register(SS)
        orch = _orchestrator(sync_config, notifier, _routes(), registry=registry)
        info = orch.health_check()
        assert list(info["active_processes"]) == [SS]
        assert info["schedules"] == {"sync": "45 21 * * 5", "health": "0 9 * * *"}
        assert set(info["next_runs"]) == {"sync", "health"}
        assert info["last_run"] is None

    def test_includes_last_run(self, sync_config, notifier):
        orch = _orchestrator(sync_config, notifier, _routes())
        orch.trigger()
        info = orch.health_check()
        assert info["last_run"]["success"] is True
        assert info["active_processes"] == {}
