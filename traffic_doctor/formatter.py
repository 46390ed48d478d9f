#!/usr/bin/env python3
"""Formatter: one-line run summary and Markdown report from a run export.

Input is the dict returned by RunStore.export_run():
    {"run": {...}, "anomalies": [...], "cluster_losses": [...],
     "hypotheses": [...], "tickets": [...]}

The report has five sections:
1. Executive summary: classification, confidence, incident status and
   the top affected clusters.
2. What changed: analytics and search-console deltas, plus the top
   losing pages and queries.
3. Root cause hypotheses with evidence and counter-evidence.
4. Recommended actions (tickets).
5. Missing data / next checks.

Numbers always carry context ("-420 clicks (80% of loss)"). A metric
whose delta could not be computed prints "n/a", never "0.0%".

Usage (CLI):
    python -m traffic_doctor.formatter --input run.json
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional


CLASSIFICATION_LABELS = {
    "VISIBILITY_LOSS": "Visibility Loss (Impressions Down)",
    "CTR_LOSS": "CTR Loss (Clicks Down, Impressions Stable)",
    "PAGE_CLUSTER_REGRESSION": "Page Cluster Regression",
    "TRACKING_OR_ATTRIBUTION_GAP": "Tracking/Attribution Gap",
    "INCONCLUSIVE": "Inconclusive",
}

# Anomalous metric -> phrase used in the summary line.
SUMMARY_PHRASES = {
    "impressions": "impressions",
    "clicks": "clicks",
    "ctr": "CTR",
    "position": "average position",
    "sessions": "GA4 sessions",
}
SEARCH_METRICS = ("clicks", "impressions", "ctr", "position")

MAX_REPORT_ITEMS = 5
MAX_MISSING_DATA = 10


# ──────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────

def format_hypothesis_key(key: str) -> str:
    """ROBOTS_OR_NOINDEX -> Robots Or Noindex."""
    return key.replace("_", " ").title()


def format_delta(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    return f"{value:+.1f}%"


def _metric_delta(run: Dict[str, Any], family: str, metric: str) -> Optional[float]:
    deltas = run.get("deltas") or {}
    return deltas.get(family, {}).get("metrics", {}).get(metric, {}).get("delta_pct")


def _top_scope(anomalies: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [a for a in anomalies if a["anomaly_type"] != "page_cluster_drop"]


def _incident_status(anomalies: List[Dict[str, Any]]) -> str:
    top = _top_scope(anomalies)
    if any(a["metric"] in SEARCH_METRICS and a["anomaly_type"] != "tracking_gap" for a in top):
        return "Traffic drop detected"
    if any(a["metric"] in ("sessions", "users") for a in top):
        return "GA4 tracking issue suspected"
    return "No significant issues detected"


# ──────────────────────────────────────────────────
# Summary
# ──────────────────────────────────────────────────

def generate_summary(export: Dict[str, Any]) -> str:
    """One-line run summary stored on the Run record."""
    issues = []
    for anomaly in _top_scope(export.get("anomalies", [])):
        if anomaly["anomaly_type"] == "tracking_gap" or anomaly["metric"] not in SUMMARY_PHRASES:
            continue
        phrase = SUMMARY_PHRASES[anomaly["metric"]]
        direction = "up" if anomaly["metric"] == "position" else "down"
        issues.append(f"{phrase} {direction} {abs(anomaly['delta_pct']):.0f}%")

    if not issues:
        return "No significant traffic anomalies detected."

    hypotheses = export.get("hypotheses", [])
    cause = ""
    if hypotheses:
        top = min(hypotheses, key=lambda h: h["rank"])
        cause = f" Top hypothesis: {format_hypothesis_key(top['hypothesis_key'])} ({top['confidence']} confidence)."
    return f"Detected: {', '.join(issues)}.{cause}"


# ──────────────────────────────────────────────────
# Report sections
# ──────────────────────────────────────────────────

def _executive_summary(export: Dict[str, Any]) -> List[str]:
    run = export["run"]
    classification = run.get("classification") or "INCONCLUSIVE"
    confidence = (run.get("confidence") or "low").capitalize()
    lines = [
        "## 1. Executive Summary",
        "",
        f"**Primary Classification:** {CLASSIFICATION_LABELS.get(classification, classification)}",
        f"**Confidence:** {confidence}",
    ]
    if run.get("classification_reason"):
        lines.append(f"**Why:** {run['classification_reason']}")
    lines += ["", f"**Incident Status:** {_incident_status(export.get('anomalies', []))}", ""]

    losses = export.get("cluster_losses", [])
    if losses:
        lines.append("**Top 3 Affected Areas:**")
        for row in losses[:3]:
            lines.append(
                f"- {row['cluster']}: -{row['click_loss']:.0f} clicks "
                f"({row['loss_share'] * 100:.0f}% of loss)"
            )
        lines.append("")
    return lines


def _what_changed(export: Dict[str, Any]) -> List[str]:
    run = export["run"]
    lines = [
        "## 2. What Changed",
        "",
        "### GA4 Organic Traffic",
        f"- Sessions: {format_delta(_metric_delta(run, 'ga4', 'sessions'))}",
        f"- Users: {format_delta(_metric_delta(run, 'ga4', 'users'))}",
        "",
        "### Search Console Performance",
        f"- Clicks: {format_delta(_metric_delta(run, 'gsc', 'clicks'))}",
        f"- Impressions: {format_delta(_metric_delta(run, 'gsc', 'impressions'))}",
        f"- CTR: {format_delta(_metric_delta(run, 'gsc', 'ctr'))}",
        f"- Avg Position: {format_delta(_metric_delta(run, 'gsc', 'position'))}",
        "",
    ]

    pages = run.get("top_losing_pages") or []
    if pages:
        lines.append("### Top Losing Pages")
        for page in pages[:MAX_REPORT_ITEMS]:
            lines.append(f"- {page['page_path']}: -{page['click_loss']:.0f} clicks ({page['cluster']})")
        lines.append("")

    queries = run.get("top_losing_queries") or []
    if queries:
        lines.append("### Top Losing Queries")
        for query in queries[:MAX_REPORT_ITEMS]:
            lines.append(f"- \"{query['query']}\": -{query['click_loss']:.0f} clicks")
        lines.append("")
    return lines


def _hypotheses_section(export: Dict[str, Any]) -> List[str]:
    lines = ["## 3. Root Cause Hypotheses", ""]
    hypotheses = sorted(export.get("hypotheses", []), key=lambda h: h["rank"])
    if not hypotheses:
        return lines + ["No significant issues detected.", ""]

    for h in hypotheses[:MAX_REPORT_ITEMS]:
        lines += [
            f"### {h['rank']}. {format_hypothesis_key(h['hypothesis_key'])} "
            f"({h['confidence']} confidence, {h['priority']})",
            "",
            h["summary"],
            "",
            "**Evidence:**",
        ]
        lines += [f"- [{e['strength']}] {e['statement']}" for e in h["evidence"]]
        if h.get("disconfirmed_by"):
            lines += ["", "**Counter-evidence:**"]
            lines += [f"- [{e['strength']}] {e['statement']}" for e in h["disconfirmed_by"]]
        lines.append("")
    return lines


def _actions_section(export: Dict[str, Any]) -> List[str]:
    lines = ["## 4. Recommended Actions", ""]
    tickets = export.get("tickets", [])
    if not tickets:
        return lines + ["No tickets generated.", ""]

    for t in tickets[:MAX_REPORT_ITEMS]:
        lines += [
            f"### {t['ticket_id']}: {t['title']}",
            f"**Priority:** {t['priority']} | **Owner:** {t['owner']} | **Impact:** {t['expected_impact']}",
            "",
        ]
        recoverable = t.get("impact_estimate", {}).get("recoverable_clicks_est")
        if recoverable:
            lines += [f"Estimated recoverable clicks: ~{recoverable}", ""]
        lines.append("**Steps:**")
        lines += [f"{i}. {step}" for i, step in enumerate(t["steps"], start=1)]
        lines.append("")
    return lines


def _missing_data_section(export: Dict[str, Any]) -> List[str]:
    lines = ["## 5. Missing Data / Next Checks", ""]
    seen: List[str] = []
    for h in sorted(export.get("hypotheses", []), key=lambda h: h["rank"]):
        for item in h.get("missing_data", []):
            if item not in seen:
                seen.append(item)

    errors = export["run"].get("errors") or []
    if not seen and not errors:
        return lines + ["No additional data needed at this time.", ""]

    if seen:
        lines.append("To increase confidence in the analysis:")
        lines += [f"- {item}" for item in seen[:MAX_MISSING_DATA]]
    if errors:
        lines += ["", "Data problems recorded during the run:"]
        lines += [f"- {err}" for err in errors]
    lines.append("")
    return lines


def generate_markdown_report(export: Dict[str, Any]) -> str:
    """Render the full Markdown report for one run export."""
    run = export["run"]
    window = (run.get("deltas") or {}).get("window", {})
    header = [
        "# Traffic Doctor Report",
        f"**Run ID:** {run['run_id']}",
        f"**Status:** {run['status']}",
    ]
    if window:
        header.append(
            f"**Window:** {window['current_start']} to {window['current_end']} "
            f"vs {window['baseline_start']} to {window['baseline_end']}"
        )
    header.append("")

    sections = (
        header
        + _executive_summary(export)
        + _what_changed(export)
        + _hypotheses_section(export)
        + _actions_section(export)
        + _missing_data_section(export)
    )
    sections += ["---", f"*Config version {run.get('config_version') or 'unknown'}, "
                 f"finished {run.get('finished_at') or 'n/a'}*"]
    return "\n".join(sections)


# ──────────────────────────────────────────────────
# CLI interface
# ──────────────────────────────────────────────────

def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Render a run export as a summary and Markdown report")
    parser.add_argument("--input", required=True, help="Run export JSON (orchestrator output)")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    input_path = Path(args.input)
    if not input_path.exists():
        print(json.dumps({"error": f"File not found: {args.input}"}))
        sys.exit(1)

    with open(input_path, "r") as f:
        export = json.load(f)

    print(json.dumps({
        "summary": generate_summary(export),
        "markdown_report": generate_markdown_report(export),
    }, indent=2))


if __name__ == "__main__":
    main()
