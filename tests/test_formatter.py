"""Tests for the run summary and Markdown report."""

from conftest import AS_OF
from traffic_doctor.formatter import (
    format_delta,
    format_hypothesis_key,
    generate_markdown_report,
    generate_summary,
)
from traffic_doctor.orchestrator import run_diagnosis


def _export(**overrides):
    export = {
        "run": {
            "run_id": "run_test",
            "status": "completed",
            "classification": "INCONCLUSIVE",
            "confidence": "low",
            "classification_reason": None,
            "deltas": None,
            "errors": [],
            "config_version": "2024.1",
            "finished_at": None,
        },
        "anomalies": [],
        "cluster_losses": [],
        "hypotheses": [],
        "tickets": [],
    }
    export.update(overrides)
    return export


class TestHelpers:
    def test_format_hypothesis_key(self):
        assert format_hypothesis_key("ROBOTS_OR_NOINDEX") == "Robots Or Noindex"

    def test_format_delta(self):
        assert format_delta(-40.0) == "-40.0%"
        assert format_delta(2.5) == "+2.5%"
        assert format_delta(None) == "n/a"


class TestSummary:
    """One-line run summary."""

    def test_no_anomalies(self):
        assert generate_summary(_export()) == "No significant traffic anomalies detected."

    def test_lists_drops_and_top_hypothesis(self):
        export = _export(
            anomalies=[
                {"anomaly_type": "traffic_drop", "metric": "clicks", "delta_pct": -40.0},
                {"anomaly_type": "page_cluster_drop", "metric": "clicks", "delta_pct": -80.0},
            ],
            hypotheses=[{"rank": 1, "hypothesis_key": "ROBOTS_OR_NOINDEX", "confidence": "high"}],
        )
        assert generate_summary(export) == (
            "Detected: clicks down 40%. Top hypothesis: Robots Or Noindex (high confidence)."
        )

    def test_tracking_gap_reports_sessions(self):
        export = _export(anomalies=[
            {"anomaly_type": "traffic_drop", "metric": "sessions", "delta_pct": -90.0},
            {"anomaly_type": "tracking_gap", "metric": "sessions", "delta_pct": -90.0},
        ])
        assert generate_summary(export) == "Detected: GA4 sessions down 90%."


class TestMarkdownReport:
    """Five report sections rendered from a run export."""

    def test_empty_run_sections(self):
        report = generate_markdown_report(_export())
        for heading in (
            "## 1. Executive Summary",
            "## 2. What Changed",
            "## 3. Root Cause Hypotheses",
            "## 4. Recommended Actions",
            "## 5. Missing Data / Next Checks",
        ):
            assert heading in report
        assert "- Clicks: n/a" in report
        assert "No tickets generated." in report

    def test_errors_listed(self):
        export = _export()
        export["run"]["errors"] = ["ga4: family not loaded"]
        assert "- ga4: family not loaded" in generate_markdown_report(export)

    def test_full_run_report(self, config, run_store, robots_store):
        export = run_diagnosis(robots_store, run_store, config, as_of=AS_OF)
        report = generate_markdown_report(export)
        assert "**Primary Classification:** Page Cluster Regression" in report
        assert "- /services/*: -480 clicks (80% of loss)" in report
        assert "### 1. Robots Or Noindex (high confidence, P0)" in report
        assert "**Owner:** DEV" in report
        assert "- Clicks: -40.0%" in report
        assert '"knee pain treatment"' in report
