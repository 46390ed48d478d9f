#!/usr/bin/env python3
"""Run orchestrator: one diagnosis run from fetch to tickets.

Pipeline (strictly sequential; each stage feeds the next):
    1. Fetch metric families (bounded timeout per fetch)
    2. Window deltas
    3. Cluster windows and anomaly detection
    4. Cluster loss analysis and top losing pages/queries
    5. Page-check findings, step change, year-ago comparison
    6. Hypothesis generation and ranking
    7. Classification
    8. Ticket synthesis
    9. Summary, then the run is marked completed

Run lifecycle: running -> completed, or running -> failed. Stages that
find nothing are not failures. Every metric store read (families, page
checks, year-ago rows) goes through bounded_fetch(): a read that is
missing, times out or raises is recorded on the run and the other reads
carry on. The run fails only if every required family is unavailable,
or if an infrastructure error (anything raised by a stage itself)
happens. Artifacts saved before the failure are kept.

Smoke runs stop after anomaly detection and cluster losses: no
hypotheses, no tickets.

Usage (CLI):
    python -m traffic_doctor.orchestrator --gsc-pages pages.csv --ga4 ga4.csv \\
        --checks checks.csv --as-of 2024-05-20
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import date, timedelta
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from traffic_doctor.anomaly import detect_anomalies, detect_step_change
from traffic_doctor.classify import classify_run
from traffic_doctor.cluster_loss import compute_cluster_losses
from traffic_doctor.clusters import classify
from traffic_doctor.errors import DataUnavailableError
from traffic_doctor.formatter import generate_summary
from traffic_doctor.hypotheses import build_context, generate_hypotheses
from traffic_doctor.schema import derive_page_checks, normalize_rows
from traffic_doctor.store import CsvMetricStore, MetricStore, RunStore
from traffic_doctor.tickets import synthesize_tickets
from traffic_doctor.windows import (
    compute_cluster_windows,
    compute_deltas,
    compute_top_losing_pages,
    compute_top_losing_queries,
    daily_series,
    resolve_windows,
)

logger = logging.getLogger(__name__)

# Families whose availability decides whether a run can proceed.
REQUIRED_FAMILIES = ("gsc_pages", "gsc_queries", "ga4")

# Same weekday one year earlier.
YEAR_AGO_DAYS = 364


# ──────────────────────────────────────────────────
# Fetching
# ──────────────────────────────────────────────────

def bounded_fetch(
    calls: Dict[str, Callable[[], List[Dict[str, Any]]]],
    timeout_seconds: float,
) -> Dict[str, Dict[str, Any]]:
    """Run each named fetch in parallel with a per-fetch timeout.

    Returns {name: {"status": "ok"|"unavailable"|"timeout"|"error",
    "rows": list|None, "reason": str|None}}. A fetch that raises is
    recorded against its own name; it never escapes to the caller.
    """
    results: Dict[str, Dict[str, Any]] = {}
    executor = ThreadPoolExecutor(max_workers=max(1, len(calls)))
    try:
        futures = {name: executor.submit(call) for name, call in calls.items()}
        for name, future in futures.items():
            try:
                rows = future.result(timeout=timeout_seconds)
                results[name] = {"status": "ok", "rows": rows, "reason": None}
            except FutureTimeout:
                future.cancel()
                reason = f"fetch timed out after {timeout_seconds}s"
                logger.warning("%s %s", name, reason)
                results[name] = {"status": "timeout", "rows": None, "reason": reason}
            except DataUnavailableError as exc:
                logger.warning("%s unavailable: %s", name, exc.reason)
                results[name] = {"status": "unavailable", "rows": None, "reason": exc.reason}
            except Exception as exc:
                logger.exception("%s fetch failed", name)
                results[name] = {
                    "status": "error",
                    "rows": None,
                    "reason": f"{type(exc).__name__}: {exc}",
                }
    finally:
        # A hung fetch must not hold the run open.
        executor.shutdown(wait=False, cancel_futures=True)
    return results


def fetch_families(
    metric_store: MetricStore,
    families: List[str],
    site_id: Optional[str],
    start: str,
    end: str,
    timeout_seconds: float,
) -> Dict[str, Dict[str, Any]]:
    """Fetch metric families over one date range; see bounded_fetch()."""
    calls = {
        family: partial(metric_store.fetch, family, site_id, start, end)
        for family in families
    }
    return bounded_fetch(calls, timeout_seconds)


def _fetch_statuses(fetched: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "family": family,
            "status": result["status"],
            "rows": len(result["rows"]) if result["rows"] is not None else 0,
            "reason": result["reason"],
        }
        for family, result in fetched.items()
    ]


def _fetch_evidence(
    metric_store: MetricStore,
    site_id: Optional[str],
    window: Dict[str, str],
    config: Dict[str, Any],
    timeout_seconds: float,
) -> Dict[str, Dict[str, Any]]:
    """Page checks and year-ago search rows, both optional.

    The year-ago window is the same windows shifted back YEAR_AGO_DAYS.
    """
    as_of = date.fromisoformat(window["as_of"]) - timedelta(days=YEAR_AGO_DAYS)
    prior_window = resolve_windows(as_of, config)
    fetched = bounded_fetch(
        {
            "page_checks": partial(metric_store.fetch_page_checks, site_id, window["as_of"]),
            "gsc_pages_year_ago": partial(
                metric_store.fetch,
                "gsc_pages", site_id, prior_window["baseline_start"], prior_window["current_end"],
            ),
        },
        timeout_seconds,
    )
    fetched["gsc_pages_year_ago"]["window"] = prior_window
    return fetched


# ──────────────────────────────────────────────────
# Run
# ──────────────────────────────────────────────────

def run_diagnosis(
    metric_store: MetricStore,
    run_store: RunStore,
    config: Dict[str, Any],
    site_id: Optional[str] = None,
    as_of: Optional[str] = None,
    run_type: str = "full",
) -> Dict[str, Any]:
    """Execute one diagnosis run and return its export.

    Args:
        metric_store: Read adapter for metric rollups and page checks.
        run_store: Where run artifacts are persisted.
        config: Loaded analysis config (config.load_config()).
        site_id: Site to diagnose, or None for single-site stores.
        as_of: Last day of the current window (ISO date). Defaults to the
            latest date present in the metric store.
        run_type: "full", "smoke" or "scheduled".

    Returns:
        run_store.export_run(run_id) for the finished run.
    """
    run = run_store.create_run(run_type, site_id)
    run_id = run["run_id"]
    logger.info("Run %s started (type=%s, site=%s)", run_id, run_type, site_id)

    try:
        _execute(run_id, metric_store, run_store, config, site_id, as_of, run_type)
    except Exception as exc:
        logger.exception("Run %s failed", run_id)
        run_store.record_error(run_id, f"{type(exc).__name__}: {exc}")
        run_store.finish_run(run_id, "failed")

    return run_store.export_run(run_id)


def _execute(
    run_id: str,
    metric_store: MetricStore,
    run_store: RunStore,
    config: Dict[str, Any],
    site_id: Optional[str],
    as_of: Optional[str],
    run_type: str,
) -> None:
    if as_of is None:
        as_of = metric_store.latest_date()
    window = resolve_windows(as_of, config)
    run_store.update_run(run_id, config_version=config.get("version"))

    # Stage 1: fetch
    timeout_seconds = config.get("fetch_timeout_seconds", 30)
    fetched = fetch_families(
        metric_store,
        list(REQUIRED_FAMILIES),
        site_id,
        window["baseline_start"],
        window["current_end"],
        timeout_seconds,
    )
    run_store.update_run(run_id, fetch_statuses=_fetch_statuses(fetched))
    for family, result in fetched.items():
        if result["status"] != "ok":
            run_store.record_error(run_id, f"{family}: {result['reason']}")

    if all(result["status"] != "ok" for result in fetched.values()):
        logger.error("Run %s: no metric family could be fetched", run_id)
        run_store.finish_run(
            run_id,
            "failed",
            summary="No metric data could be fetched for the analysis window.",
        )
        return

    page_rows = fetched["gsc_pages"]["rows"]
    query_rows = fetched["gsc_queries"]["rows"]
    ga4_rows = fetched["ga4"]["rows"]

    # Stage 2: deltas
    deltas = compute_deltas(page_rows, ga4_rows, window, config)
    run_store.update_run(run_id, deltas=deltas)
    logger.info(
        "Run %s: deltas computed (gsc available=%s, ga4 available=%s)",
        run_id, deltas["gsc"]["available"], deltas["ga4"]["available"],
    )

    # Stage 3: anomalies
    cluster_windows = compute_cluster_windows(page_rows or [], window, config)
    detection = detect_anomalies(deltas, cluster_windows, config)
    run_store.save_anomalies(run_id, detection["anomalies"])
    logger.info(
        "Run %s: %d anomalies (%d metric/scope pairs with insufficient data)",
        run_id, len(detection["anomalies"]), len(detection["insufficient_data"]),
    )

    # Stage 4: where the loss went
    cluster_losses = compute_cluster_losses(cluster_windows)
    run_store.save_cluster_losses(run_id, cluster_losses)
    top_pages = compute_top_losing_pages(page_rows or [], window, config)
    top_queries = compute_top_losing_queries(query_rows or [], window)
    run_store.update_run(run_id, top_losing_pages=top_pages, top_losing_queries=top_queries)
    logger.info("Run %s: %d clusters lost clicks", run_id, len(cluster_losses))

    hypotheses: List[Dict[str, Any]] = []
    if run_type != "smoke":
        # Stage 5: supporting evidence
        evidence = _fetch_evidence(metric_store, site_id, window, config, timeout_seconds)
        fetched.update(evidence)
        run_store.update_run(run_id, fetch_statuses=_fetch_statuses(fetched))
        for name, result in evidence.items():
            # Optional inputs: only faults are errors, absence is not.
            if result["status"] in ("timeout", "error"):
                run_store.record_error(run_id, f"{name}: {result['reason']}")

        page_checks = derive_page_checks(
            evidence["page_checks"]["rows"] or [],
            config["thresholds"]["min_text_length"],
        )
        for check in page_checks:
            check["cluster"] = classify(check["path"], config)

        gsc_daily = daily_series(
            normalize_rows(page_rows or []),
            ("clicks",),
        )["clicks"]
        step_change = detect_step_change(
            gsc_daily, config["thresholds"].get("step_change_pct", 15.0)
        )
        prior = evidence["gsc_pages_year_ago"]
        year_ago = (
            compute_deltas(prior["rows"], None, prior["window"], config)
            if prior["status"] == "ok" else None
        )
        run_store.update_run(run_id, step_change=step_change)

        # Stage 6: hypotheses
        context = build_context(
            deltas,
            detection,
            cluster_losses,
            page_checks,
            config,
            top_losing_pages=top_pages,
            step_change=step_change,
            year_ago_deltas=year_ago,
        )
        hypotheses = generate_hypotheses(context, config)
        run_store.save_hypotheses(run_id, hypotheses)
        logger.info("Run %s: %d hypotheses", run_id, len(hypotheses))

    # Stage 7: classification
    verdict = classify_run(
        deltas, detection, cluster_losses, config,
        top_hypothesis=hypotheses[0] if hypotheses else None,
    )
    run_store.update_run(
        run_id,
        classification=verdict["classification"],
        confidence=verdict["confidence"],
        classification_reason=verdict["reason"],
    )

    # Stage 8: tickets
    tickets: List[Dict[str, Any]] = []
    if run_type != "smoke":
        analysis = {
            "deltas": deltas,
            "cluster_losses": cluster_losses,
            "top_losing_pages": top_pages,
            "top_losing_queries": top_queries,
        }
        tickets = synthesize_tickets(run_id, hypotheses, analysis, run_store, config)

    # Stage 9: summary
    summary = generate_summary(run_store.export_run(run_id))
    run_store.finish_run(run_id, "completed", summary=summary)
    logger.info(
        "Run %s completed: %s (%s confidence), %d hypotheses, %d tickets",
        run_id, verdict["classification"], verdict["confidence"], len(hypotheses), len(tickets),
    )


# ──────────────────────────────────────────────────
# CLI interface
# ──────────────────────────────────────────────────

def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a traffic regression diagnosis")
    parser.add_argument("--gsc-pages", default=None, help="CSV of per-page search-console rollups")
    parser.add_argument("--gsc-queries", default=None, help="CSV of per-query search-console rollups")
    parser.add_argument("--ga4", default=None, help="CSV of per-landing-page analytics rollups")
    parser.add_argument("--checks", default=None, help="CSV of page-level technical checks")
    parser.add_argument("--site-id", default=None, help="Site to diagnose")
    parser.add_argument("--as-of", default=None, help="Last day of the current window (YYYY-MM-DD)")
    parser.add_argument("--config", default=None, help="YAML config (default: packaged)")
    parser.add_argument("--run-type", default="full", choices=["full", "smoke", "scheduled"])
    parser.add_argument("--report", action="store_true", help="Print the Markdown report instead of JSON")
    return parser.parse_args()


def main() -> None:
    from traffic_doctor.config import load_config
    from traffic_doctor.formatter import generate_markdown_report

    args = parse_args()
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    paths = {
        "gsc_pages": args.gsc_pages,
        "gsc_queries": args.gsc_queries,
        "ga4": args.ga4,
        "page_checks": args.checks,
    }
    for path in paths.values():
        if path and not Path(path).exists():
            print(json.dumps({"error": f"File not found: {path}"}))
            sys.exit(1)

    config = load_config(args.config)
    tickets_config = config["tickets"]
    run_store = RunStore(tickets_config["id_prefix"], tickets_config["id_start"])
    export = run_diagnosis(
        CsvMetricStore(paths),
        run_store,
        config,
        site_id=args.site_id,
        as_of=args.as_of,
        run_type=args.run_type,
    )

    if args.report:
        print(generate_markdown_report(export))
    else:
        print(json.dumps(export, indent=2))
    if export["run"]["status"] == "failed":
        sys.exit(2)


if __name__ == "__main__":
    main()
