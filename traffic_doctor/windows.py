#!/usr/bin/env python3
"""Window & delta calculator: current window vs. the baseline that precedes it.

For an as-of date, the current window is the last `windows.current` days
ending on it, and the baseline window is the `windows.baseline` days
immediately before. Every tracked metric gets a delta record:

    {"metric", "status", "current_sum", "current_mean", "baseline_sum",
     "baseline_mean", "baseline_std", "absolute_delta", "delta_pct",
     "regression_pct", "current_points", "baseline_points",
     "zscore_eligible", "drop_flag", "lower_is_better"}

WHY MEANS, NOT SUMS:
The windows have different lengths (3 vs. 14 days), so percentages are
computed on daily means. Sums are still reported for display.

INSUFFICIENT DATA:
"status" is a tri-state. "available" means the delta was computed.
"unavailable" means one window has no data points; every derived field is
None and drop_flag is None. "zero_baseline" means there is baseline data,
but its mean is 0, so a percentage would be meaningless. A missing
baseline never becomes a 0% (or -100%) delta.

Usage (CLI):
    python -m traffic_doctor.windows --gsc gsc.csv --ga4 ga4.csv --as-of 2024-05-20
"""

from __future__ import annotations

import argparse
import csv
import json
import math
import sys
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from traffic_doctor.clusters import classify
from traffic_doctor.schema import normalize_rows


STATUS_AVAILABLE = "available"
STATUS_UNAVAILABLE = "unavailable"
STATUS_ZERO_BASELINE = "zero_baseline"

SEARCH_METRICS = ("clicks", "impressions", "ctr", "position")
ANALYTICS_METRICS = ("sessions", "users")

# Metrics where a rise is the regression (rank 3 -> rank 8).
LOWER_IS_BETTER = {"position"}


def _mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def _pstdev(values: Sequence[float]) -> float:
    """Population standard deviation, 0.0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    mu = _mean(values)
    return math.sqrt(sum((v - mu) ** 2 for v in values) / len(values))


def _parse_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


# ──────────────────────────────────────────────────
# Window bounds
# ──────────────────────────────────────────────────

def resolve_windows(
    as_of: Optional[Any],
    config: Dict[str, Any],
    observed_dates: Iterable[str] = (),
) -> Dict[str, str]:
    """Compute current/baseline window bounds (inclusive ISO dates).

    If as_of is None, the latest observed date is used. If there are no
    observed dates either, today is used and both windows will simply be
    empty.
    """
    if as_of is None:
        dates = sorted(str(d)[:10] for d in observed_dates if d)
        end = _parse_date(dates[-1]) if dates else date.today()
    else:
        end = _parse_date(as_of)

    current_days = config["windows"]["current"]
    baseline_days = config["windows"]["baseline"]
    current_start = end - timedelta(days=current_days - 1)
    baseline_end = current_start - timedelta(days=1)
    baseline_start = baseline_end - timedelta(days=baseline_days - 1)

    return {
        "as_of": end.isoformat(),
        "current_start": current_start.isoformat(),
        "current_end": end.isoformat(),
        "baseline_start": baseline_start.isoformat(),
        "baseline_end": baseline_end.isoformat(),
    }


def _in_range(day: str, start: str, end: str) -> bool:
    # ISO dates compare correctly as strings.
    return start <= day <= end


def split_by_window(
    rows: Iterable[Dict[str, Any]],
    window: Dict[str, str],
) -> Dict[str, List[Dict[str, Any]]]:
    """Partition rows into "current" and "baseline"; others are dropped."""
    current, baseline = [], []
    for row in rows:
        day = str(row.get("date", ""))[:10]
        if _in_range(day, window["current_start"], window["current_end"]):
            current.append(row)
        elif _in_range(day, window["baseline_start"], window["baseline_end"]):
            baseline.append(row)
    return {"current": current, "baseline": baseline}


# ──────────────────────────────────────────────────
# Daily series
# ──────────────────────────────────────────────────

def _daily_value(day_rows: List[Dict[str, Any]], metric: str) -> float:
    """Collapse one day's rows into a single value for the metric.

    Additive metrics are summed. CTR is clicks / impressions when
    impressions are present. Position is impression-weighted.
    """
    if metric == "ctr":
        impressions = sum(r.get("impressions", 0.0) for r in day_rows)
        if impressions > 0:
            return sum(r.get("clicks", 0.0) for r in day_rows) / impressions
        return _mean([r.get("ctr", 0.0) for r in day_rows])

    if metric == "position":
        weighted = [(r.get("position", 0.0), r.get("impressions", 0.0)) for r in day_rows]
        total_weight = sum(w for _, w in weighted)
        if total_weight > 0:
            return sum(p * w for p, w in weighted) / total_weight
        return _mean([p for p, _ in weighted])

    return sum(r.get(metric, 0.0) for r in day_rows)


def daily_series(
    rows: Iterable[Dict[str, Any]],
    metrics: Sequence[str],
    dates: Optional[Sequence[str]] = None,
) -> Dict[str, List[float]]:
    """Per-metric daily values, ordered by date.

    When `dates` is given, every listed date is a data point; a date with
    no rows contributes 0 for additive metrics. This is how a cluster that
    vanished from the current window shows as zero clicks instead of
    missing data. Without `dates`, only dates present in rows count.
    """
    by_date: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        by_date.setdefault(str(row.get("date", ""))[:10], []).append(row)

    ordered = sorted(dates) if dates is not None else sorted(by_date)
    series: Dict[str, List[float]] = {m: [] for m in metrics}
    for day in ordered:
        day_rows = by_date.get(day, [])
        for metric in metrics:
            if not day_rows and metric in ("ctr", "position"):
                # No impressions that day: a ratio has no value to add.
                continue
            series[metric].append(_daily_value(day_rows, metric))
    return series


# ──────────────────────────────────────────────────
# Metric delta
# ──────────────────────────────────────────────────

def compute_metric_delta(
    metric: str,
    current_values: Sequence[float],
    baseline_values: Sequence[float],
    config: Dict[str, Any],
) -> Dict[str, Any]:
    """Compute the delta record for one metric (see module docstring)."""
    lower_is_better = metric in LOWER_IS_BETTER
    current_points = len(current_values)
    baseline_points = len(baseline_values)
    record: Dict[str, Any] = {
        "metric": metric,
        "status": STATUS_UNAVAILABLE,
        "current_sum": None,
        "current_mean": None,
        "baseline_sum": None,
        "baseline_mean": None,
        "baseline_std": None,
        "absolute_delta": None,
        "delta_pct": None,
        "regression_pct": None,
        "current_points": current_points,
        "baseline_points": baseline_points,
        "zscore_eligible": False,
        "drop_flag": None,
        "lower_is_better": lower_is_better,
    }

    if current_points == 0 or baseline_points == 0:
        return record

    current_mean = _mean(current_values)
    baseline_mean = _mean(baseline_values)
    record.update({
        "current_sum": round(sum(current_values), 6),
        "current_mean": round(current_mean, 6),
        "baseline_sum": round(sum(baseline_values), 6),
        "baseline_mean": round(baseline_mean, 6),
        "baseline_std": round(_pstdev(baseline_values), 6),
        "absolute_delta": round(current_mean - baseline_mean, 6),
        "zscore_eligible": baseline_points >= config.get("min_zscore_samples", 7),
    })

    if abs(baseline_mean) < 1e-12:
        record["status"] = STATUS_ZERO_BASELINE
        return record

    delta_pct = (current_mean - baseline_mean) / baseline_mean * 100.0
    # Regression is always expressed as a negative number.
    regression_pct = -delta_pct if lower_is_better else delta_pct

    record.update({
        "status": STATUS_AVAILABLE,
        "delta_pct": round(delta_pct, 2),
        "regression_pct": round(regression_pct, 2),
        "drop_flag": regression_pct <= config["thresholds"]["drop_pct"],
    })
    return record


def compute_family_deltas(
    rows: List[Dict[str, Any]],
    metrics: Sequence[str],
    window: Dict[str, str],
    config: Dict[str, Any],
) -> Dict[str, Any]:
    """Deltas for one metric family (search visibility or analytics)."""
    parts = split_by_window(rows, window)
    current = daily_series(parts["current"], metrics)
    baseline = daily_series(parts["baseline"], metrics)

    metric_deltas = {
        m: compute_metric_delta(m, current[m], baseline[m], config) for m in metrics
    }
    return {
        "available": any(d["status"] == STATUS_AVAILABLE for d in metric_deltas.values()),
        "metrics": metric_deltas,
        "drop_flags": {m: d["drop_flag"] for m, d in metric_deltas.items()},
        "baseline_dates": sorted({str(r["date"])[:10] for r in parts["baseline"]}),
        "current_dates": sorted({str(r["date"])[:10] for r in parts["current"]}),
    }


def compute_deltas(
    gsc_rows: Optional[List[Dict[str, Any]]],
    ga4_rows: Optional[List[Dict[str, Any]]],
    window: Dict[str, str],
    config: Dict[str, Any],
) -> Dict[str, Any]:
    """Compute the Deltas snapshot for both metric families.

    A family passed as None (fetch failed) is reported as unavailable with
    every metric status "unavailable", which is different from "no drop".
    """
    empty: List[Dict[str, Any]] = []
    return {
        "window": dict(window),
        "gsc": compute_family_deltas(
            normalize_rows(gsc_rows or empty), SEARCH_METRICS, window, config
        ),
        "ga4": compute_family_deltas(
            normalize_rows(ga4_rows or empty), ANALYTICS_METRICS, window, config
        ),
    }


# ──────────────────────────────────────────────────
# Per-cluster aggregates
# ──────────────────────────────────────────────────

def compute_cluster_windows(
    page_rows: List[Dict[str, Any]],
    window: Dict[str, str],
    config: Dict[str, Any],
    metrics: Sequence[str] = ("clicks", "impressions"),
) -> Dict[str, Dict[str, Any]]:
    """Per-cluster metric deltas plus window click totals.

    Returns {cluster: {"metrics": {metric: delta}, "baseline_clicks": float,
    "current_clicks": float}}. baseline_clicks is the baseline daily mean
    scaled to the current window length, so it is the number of clicks the
    cluster would have had without a change; current_clicks is the actual
    current-window sum.
    """
    rows = normalize_rows(page_rows)
    parts = split_by_window(rows, window)
    current_dates = sorted({str(r["date"])[:10] for r in parts["current"]})
    baseline_dates = sorted({str(r["date"])[:10] for r in parts["baseline"]})

    by_cluster: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
    for period, period_rows in parts.items():
        for row in period_rows:
            cluster = classify(str(row.get("page_path") or ""), config)
            by_cluster.setdefault(cluster, {"current": [], "baseline": []})
            by_cluster[cluster][period].append(row)

    result: Dict[str, Dict[str, Any]] = {}
    for cluster in sorted(by_cluster):
        groups = by_cluster[cluster]
        current = daily_series(groups["current"], metrics, current_dates)
        baseline = daily_series(groups["baseline"], metrics, baseline_dates)
        metric_deltas = {
            m: compute_metric_delta(m, current[m], baseline[m], config) for m in metrics
        }
        clicks = metric_deltas.get("clicks")
        baseline_clicks = 0.0
        if clicks and clicks["baseline_mean"] is not None:
            baseline_clicks = clicks["baseline_mean"] * len(current_dates)
        result[cluster] = {
            "metrics": metric_deltas,
            "baseline_clicks": round(baseline_clicks, 2),
            "current_clicks": round(sum(r.get("clicks", 0.0) for r in groups["current"]), 2),
        }
    return result


# ──────────────────────────────────────────────────
# Top losers
# ──────────────────────────────────────────────────

def _top_losses(
    rows: List[Dict[str, Any]],
    key_field: str,
    window: Dict[str, str],
    limit: int,
) -> List[Dict[str, Any]]:
    """Rank keys by expected (scaled baseline) minus actual current clicks."""
    parts = split_by_window(rows, window)
    baseline_days = len({str(r["date"])[:10] for r in parts["baseline"]})
    current_days = len({str(r["date"])[:10] for r in parts["current"]})
    if baseline_days == 0:
        return []

    scale = current_days / baseline_days
    baseline_totals: Dict[str, float] = {}
    current_totals: Dict[str, float] = {}
    for row in parts["baseline"]:
        key = row.get(key_field)
        if key:
            baseline_totals[key] = baseline_totals.get(key, 0.0) + row.get("clicks", 0.0)
    for row in parts["current"]:
        key = row.get(key_field)
        if key:
            current_totals[key] = current_totals.get(key, 0.0) + row.get("clicks", 0.0)

    losses = []
    for key, total in baseline_totals.items():
        loss = total * scale - current_totals.get(key, 0.0)
        if loss > 0:
            losses.append({key_field: key, "click_loss": round(loss, 2)})
    # Stable order: largest loss first, then key.
    losses.sort(key=lambda item: (-item["click_loss"], item[key_field]))
    return losses[:limit]


def compute_top_losing_pages(
    page_rows: List[Dict[str, Any]],
    window: Dict[str, str],
    config: Dict[str, Any],
    limit: int = 10,
) -> List[Dict[str, Any]]:
    rows = normalize_rows(page_rows)
    pages = _top_losses(rows, "page_path", window, limit)
    for page in pages:
        page["cluster"] = classify(page["page_path"], config)
    return pages


def compute_top_losing_queries(
    query_rows: List[Dict[str, Any]],
    window: Dict[str, str],
    limit: int = 10,
) -> List[Dict[str, Any]]:
    return _top_losses(normalize_rows(query_rows), "query", window, limit)


# ──────────────────────────────────────────────────
# CLI interface
# ──────────────────────────────────────────────────

def _load_csv(path: Optional[str]) -> Optional[List[Dict[str, str]]]:
    if not path:
        return None
    with open(path, "r") as f:
        return list(csv.DictReader(f))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Compute current vs. baseline window deltas for search and analytics rollups"
    )
    parser.add_argument("--gsc", default=None, help="CSV of search-console daily rollups")
    parser.add_argument("--ga4", default=None, help="CSV of analytics daily rollups")
    parser.add_argument("--as-of", default=None, help="Last day of the current window (YYYY-MM-DD)")
    parser.add_argument("--config", default=None, help="YAML config (default: packaged)")
    return parser.parse_args()


def main():
    from traffic_doctor.config import load_config

    args = parse_args()
    for path in (args.gsc, args.ga4):
        if path and not Path(path).exists():
            print(json.dumps({"error": f"File not found: {path}"}))
            sys.exit(1)

    config = load_config(args.config)
    gsc_rows = _load_csv(args.gsc)
    ga4_rows = _load_csv(args.ga4)
    observed = [r.get("date") for r in (gsc_rows or []) + (ga4_rows or [])]
    window = resolve_windows(args.as_of, config, observed)

    print(json.dumps(compute_deltas(gsc_rows, ga4_rows, window, config), indent=2))


if __name__ == "__main__":
    main()
