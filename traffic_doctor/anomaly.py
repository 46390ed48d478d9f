#!/usr/bin/env python3
"""Anomaly detection over window deltas.

This module decides whether a metric movement is significant. Three
functions are used in the diagnosis workflow:
1. check_against_baseline: the z-score of the current-window mean against
   the baseline window's daily distribution.
2. detect_anomalies: applies the two significance rules to every
   metric/scope pair, overall and per cluster.
3. detect_step_change: did daily clicks drop overnight (deploy-style
   breakage) or decline gradually (algorithm/seasonal drift)?

Significance is the OR of two independent rules:
    (a) percentage rule: regression_pct <= thresholds.drop_pct (-30%)
    (b) statistical rule: z <= thresholds.z_score (-2.0), only when the
        baseline has at least min_zscore_samples days.

Metrics whose delta is unavailable (or zero-baseline) never produce an
anomaly. They are reported under "insufficient_data", so a missing
baseline reads as "unknown", not "no drop".

Usage (CLI):
    python -m traffic_doctor.anomaly --input deltas.json
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from traffic_doctor.windows import STATUS_AVAILABLE


ANOMALY_TYPES = (
    "traffic_drop",
    "impressions_drop",
    "ctr_drop",
    "position_drop",
    "page_cluster_drop",
    "tracking_gap",
)

# Top-scope metric -> (anomaly type, scope).
METRIC_ANOMALY_TYPES = {
    "clicks": ("traffic_drop", {"channel": "Organic Search"}),
    "impressions": ("impressions_drop", {"channel": "Organic Search"}),
    "ctr": ("ctr_drop", {"channel": "Organic Search"}),
    "position": ("position_drop", {"channel": "Organic Search"}),
    "sessions": ("traffic_drop", {"source": "GA4"}),
    "users": ("traffic_drop", {"source": "GA4"}),
}


# ──────────────────────────────────────────────────
# Baseline comparison (z-score)
# ──────────────────────────────────────────────────

def check_against_baseline(
    current_value: float,
    metric_name: str,
    segment: Optional[str],
    baselines: Dict[str, float],
    z_threshold: float = -2.0,
    lower_is_better: bool = False,
) -> Dict[str, Any]:
    """Compare a current-window mean against the baseline distribution.

    The z-score is oriented so that negative always means "worse": for
    lower-is-better metrics (position) the sign is flipped.

    A zero baseline std means the metric never varied. The z-score is then
    undefined and reported as None, so the percentage rule alone decides.

    Args:
        current_value: Current-window daily mean.
        metric_name:   Metric label (e.g., "clicks").
        segment:       Scope label (e.g., "/services/*"), or None for overall.
        baselines:     {"mean": float, "std": float} of the baseline window.
        z_threshold:   Regression threshold (negative).
        lower_is_better: Flip orientation for rank-like metrics.

    Returns:
        {"status": "normal"|"anomalous"|"undefined", "z_score": float|None,
         "metric_name", "segment", "current_value", "baseline_mean",
         "baseline_std"}
    """
    mean = baselines["mean"]
    std = baselines["std"]

    if std < 1e-12:
        z_score = None
        status = "undefined"
    else:
        z_score = (current_value - mean) / std
        if lower_is_better:
            z_score = -z_score
        status = "anomalous" if z_score <= z_threshold else "normal"

    return {
        "status": status,
        "z_score": round(z_score, 4) if z_score is not None else None,
        "metric_name": metric_name,
        "segment": segment,
        "current_value": current_value,
        "baseline_mean": mean,
        "baseline_std": std,
    }


def evaluate_significance(
    delta: Dict[str, Any],
    config: Dict[str, Any],
    segment: Optional[str] = None,
) -> Dict[str, Any]:
    """Apply the percentage and statistical rules to one metric delta.

    Returns {"significant": bool, "rules": [...], "z_score": float|None,
    "insufficient": bool}.
    """
    if delta["status"] != STATUS_AVAILABLE:
        return {"significant": False, "rules": [], "z_score": None, "insufficient": True}

    thresholds = config["thresholds"]
    rules: List[str] = []
    if delta["regression_pct"] <= thresholds["drop_pct"]:
        rules.append("pct_delta")

    z_score = None
    if delta["zscore_eligible"]:
        baseline_check = check_against_baseline(
            current_value=delta["current_mean"],
            metric_name=delta["metric"],
            segment=segment,
            baselines={"mean": delta["baseline_mean"], "std": delta["baseline_std"]},
            z_threshold=thresholds["z_score"],
            lower_is_better=delta["lower_is_better"],
        )
        z_score = baseline_check["z_score"]
        if baseline_check["status"] == "anomalous":
            rules.append("z_score")

    return {"significant": bool(rules), "rules": rules, "z_score": z_score, "insufficient": False}


def _build_anomaly(
    anomaly_type: str,
    delta: Dict[str, Any],
    verdict: Dict[str, Any],
    window: Dict[str, str],
    scope: Dict[str, Any],
) -> Dict[str, Any]:
    return {
        "anomaly_type": anomaly_type,
        "start_date": window["current_start"],
        "end_date": window["current_end"],
        "metric": delta["metric"],
        "baseline_value": delta["baseline_mean"],
        "observed_value": delta["current_mean"],
        "delta_pct": delta["delta_pct"],
        "z_score": verdict["z_score"],
        "rules": verdict["rules"],
        "scope": dict(scope),
    }


# ──────────────────────────────────────────────────
# Anomaly detection
# ──────────────────────────────────────────────────

def detect_anomalies(
    deltas: Dict[str, Any],
    cluster_windows: Optional[Dict[str, Dict[str, Any]]],
    config: Dict[str, Any],
) -> Dict[str, Any]:
    """Detect significant drops overall and per cluster.

    Args:
        deltas: Output of windows.compute_deltas().
        cluster_windows: Output of windows.compute_cluster_windows(), or None.
        config: Loaded analysis config.

    Returns:
        {"anomalies": [...], "insufficient_data": [{"metric", "scope", "status"}],
         "has_drop": bool, "tracking_gap": bool}
        has_drop is True if at least one top-scope (non-cluster) anomaly exists.
    """
    window = deltas["window"]
    anomalies: List[Dict[str, Any]] = []
    insufficient: List[Dict[str, Any]] = []
    significant_metrics = set()

    for family in ("gsc", "ga4"):
        for metric, delta in deltas[family]["metrics"].items():
            anomaly_type, scope = METRIC_ANOMALY_TYPES[metric]
            verdict = evaluate_significance(delta, config)
            if verdict["insufficient"]:
                insufficient.append({"metric": metric, "scope": dict(scope), "status": delta["status"]})
                continue
            if verdict["significant"]:
                significant_metrics.add(metric)
                anomalies.append(_build_anomaly(anomaly_type, delta, verdict, window, scope))

    # Analytics fell off a cliff while search-console traffic held: the
    # instrumentation broke, not the traffic.
    tracking_gap = False
    clicks = deltas["gsc"]["metrics"].get("clicks", {})
    sessions = deltas["ga4"]["metrics"].get("sessions", {})
    if (
        "sessions" in significant_metrics
        and clicks.get("status") == STATUS_AVAILABLE
        and abs(clicks["delta_pct"]) < config["thresholds"].get("tracking_gap_stable_pct", 10.0)
    ):
        tracking_gap = True
        anomalies.append({
            "anomaly_type": "tracking_gap",
            "start_date": window["current_start"],
            "end_date": window["current_end"],
            "metric": "sessions",
            "baseline_value": sessions["baseline_mean"],
            "observed_value": sessions["current_mean"],
            "delta_pct": sessions["delta_pct"],
            "z_score": None,
            "rules": ["source_disagreement"],
            "scope": {"source": "GA4", "compared_with": "GSC clicks", "gsc_clicks_delta_pct": clicks["delta_pct"]},
        })

    for cluster, cluster_data in sorted((cluster_windows or {}).items()):
        scope = {"page_cluster": cluster}
        for metric, delta in cluster_data["metrics"].items():
            verdict = evaluate_significance(delta, config, segment=cluster)
            if verdict["insufficient"]:
                insufficient.append({"metric": metric, "scope": dict(scope), "status": delta["status"]})
                continue
            if verdict["significant"]:
                anomalies.append(_build_anomaly("page_cluster_drop", delta, verdict, window, scope))

    has_drop = any(a["anomaly_type"] != "page_cluster_drop" for a in anomalies)
    return {
        "anomalies": anomalies,
        "insufficient_data": insufficient,
        "has_drop": has_drop,
        "tracking_gap": tracking_gap,
    }


def top_scope_anomalies(anomalies: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [a for a in anomalies if a["anomaly_type"] != "page_cluster_drop"]


def anomaly_for(anomalies: Sequence[Dict[str, Any]], metric: str) -> Optional[Dict[str, Any]]:
    """First top-scope anomaly for a metric, or None."""
    for anomaly in top_scope_anomalies(anomalies):
        if anomaly["metric"] == metric and anomaly["anomaly_type"] != "tracking_gap":
            return anomaly
    return None


# ──────────────────────────────────────────────────
# Step-change detection
# ──────────────────────────────────────────────────

def detect_step_change(
    daily_values: List[float],
    threshold_pct: float = 15.0,
) -> Dict[str, Any]:
    """Classify a daily series as an overnight step drop, gradual decline, or flat.

    A step change is a sudden, sustained shift: one day-over-day drop that
    accounts for at least 60% of the total shift between the pre-jump and
    post-jump averages. That is the signature of a deploy or config change
    (robots rule, noindex, broken template). A gradual decline, where each
    day is a little lower, points to algorithm or seasonal causes.

    Args:
        daily_values: Daily values, ordered chronologically.
        threshold_pct: Minimum single-day drop (percent) to consider.

    Returns:
        {"detected": bool, "pattern": "step"|"gradual"|"flat",
         "change_day_index": int|None, "magnitude_pct": float}
    """
    if len(daily_values) < 2:
        return {"detected": False, "pattern": "flat", "change_day_index": None, "magnitude_pct": 0.0}

    max_drop_pct = 0.0
    max_drop_idx = None
    for i in range(1, len(daily_values)):
        prev = daily_values[i - 1]
        curr = daily_values[i]
        if abs(prev) < 1e-12:
            continue
        drop_pct = (prev - curr) / prev * 100.0
        if drop_pct > max_drop_pct:
            max_drop_pct = drop_pct
            max_drop_idx = i

    if max_drop_idx is not None and max_drop_pct > threshold_pct:
        pre_avg = sum(daily_values[:max_drop_idx]) / max_drop_idx
        post_values = daily_values[max_drop_idx:]
        post_avg = sum(post_values) / len(post_values)
        total_change = pre_avg - post_avg
        single_day_change = daily_values[max_drop_idx - 1] - daily_values[max_drop_idx]
        if total_change > 0 and (single_day_change / total_change) >= 0.6:
            return {
                "detected": True,
                "pattern": "step",
                "change_day_index": max_drop_idx,
                "magnitude_pct": round(max_drop_pct, 2),
            }

    # No single cliff: call it gradual if the last day is well below the first.
    first, last = daily_values[0], daily_values[-1]
    overall_pct = (last - first) / first * 100.0 if abs(first) > 1e-12 else 0.0
    pattern = "gradual" if overall_pct <= -threshold_pct else "flat"
    return {
        "detected": False,
        "pattern": pattern,
        "change_day_index": None,
        "magnitude_pct": round(max_drop_pct, 2),
    }


# ──────────────────────────────────────────────────
# CLI interface
# ──────────────────────────────────────────────────

def main() -> None:
    """CLI entrypoint: run anomaly detection on a deltas JSON document.

    Example:
        python -m traffic_doctor.windows --gsc gsc.csv > deltas.json
        python -m traffic_doctor.anomaly --input deltas.json
    """
    from traffic_doctor.config import load_config

    parser = argparse.ArgumentParser(description="Detect significant metric drops from window deltas")
    parser.add_argument("--input", required=True, help="Path to deltas JSON (from windows.py)")
    parser.add_argument("--config", default=None, help="YAML config (default: packaged)")
    args = parser.parse_args()

    input_path = Path(args.input)
    if not input_path.exists():
        print(json.dumps({"error": f"File not found: {args.input}"}))
        sys.exit(1)

    with open(input_path) as f:
        deltas = json.load(f)

    result = detect_anomalies(deltas, None, load_config(args.config))
    json.dump(result, sys.stdout, indent=2)
    print()


if __name__ == "__main__":
    main()
