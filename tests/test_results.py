import json
from pathlib import Path

from clusterlab.core.logging import capture_run_logs, get_logger
from clusterlab.core.model import ClusterState, FatalError, PhaseResult, PhaseStatus
from clusterlab.core.results import RunReport
from clusterlab.render.report_json import write_json_report
from clusterlab.render.report_md import render_markdown, write_markdown_report


def _report() -> RunReport:
    report = RunReport(run="flat-1", profile="simple")
    report.add(PhaseResult("health", "server-1", PhaseStatus.PASS, "Ready", "2026-01-01T00:00:00+00:00"))
    report.add(PhaseResult("boot", "server-1", PhaseStatus.PASS, "reached multi-user.target", "2026-01-01T00:00:00+00:00"))
    report.add(PhaseResult("bootstrap-secondary", "server-2", PhaseStatus.FAIL, "rejected", "2026-01-01T00:00:00+00:00"))
    return report


def test_exit_code_follows_the_outcome() -> None:
    report = _report()
    assert report.exit_code == 1
    report.outcome = ClusterState.CLUSTER_READY
    assert report.exit_code == 0


def test_summary_counts_and_expectation() -> None:
    report = _report()
    report.outcome = ClusterState.FAILED
    report.expected = ClusterState.FAILED
    summary = report.to_dict()["summary"]
    assert summary["counts_by_status"] == {"PASS": 2, "FAIL": 1, "SKIPPED": 0}
    assert summary["counts_by_phase"]["boot"] == 1
    assert summary["expectation_met"] is True
    assert summary["exit_code"] == 1


def test_markdown_orders_phases_and_lists_fatal_errors() -> None:
    report = _report()
    report.add_error(FatalError("bootstrap-secondary", "server-2", "systemctl restart k3s-server.service", "ProtocolError", "rejected"))
    text = render_markdown(report.to_dict())
    assert text.index("### boot") < text.index("### bootstrap-secondary") < text.index("### health")
    assert "## Fatal errors" in text
    assert "ProtocolError `systemctl restart k3s-server.service`: rejected" in text
    assert "(expected CLUSTER_READY)" in text


def test_reports_are_written(tmp_path: Path) -> None:
    payload = _report().to_dict()
    write_json_report(payload, tmp_path / "out" / "run.json")
    write_markdown_report(payload, tmp_path / "out" / "run.md")
    data = json.loads((tmp_path / "out" / "run.json").read_text(encoding="utf-8"))
    assert data["summary"]["outcome"] == "UNINITIALIZED"
    assert len(data["results"]) == 3
    assert (tmp_path / "out" / "run.md").read_text(encoding="utf-8").startswith("# clusterlab run `flat-1`")


def test_run_logs_are_captured_into_the_report() -> None:
    report = _report()
    log = get_logger("tests.capture")
    with capture_run_logs(report):
        log.debug("retrying join on %s", "server-2")
    log.info("after the run")
    assert any(line.endswith("retrying join on server-2") for line in report.diagnostics)
    assert not any("after the run" in line for line in report.diagnostics)
