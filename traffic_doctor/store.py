#!/usr/bin/env python3
"""Record stores: the metric read contract and the run artifact store.

MetricStore is the read-only adapter the orchestrator fetches rollups
through. Families:
    gsc_pages    date, page_path, clicks, impressions, ctr, position
    gsc_queries  date, query, clicks, impressions
    ga4          date, landing_path, sessions, users, engaged_sessions, conversions
    page_checks  date, url, status_code, redirect_url, canonical, meta_robots,
                 robots_disallow, body_text_length, has_structured_data,
                 has_ga4_tag, has_ads_tag, internal_links_in

RunStore holds Run / Anomaly / Hypothesis / Ticket records keyed by run
id. Each run writes only rows under its own id, and a single lock guards
the dicts, so concurrent runs do not interfere. Terminal runs are frozen.
"""

from __future__ import annotations

import csv
import threading
import uuid
from copy import deepcopy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from traffic_doctor.errors import DataUnavailableError, RunStateError


METRIC_FAMILIES = ("gsc_pages", "gsc_queries", "ga4", "page_checks")
RUN_TYPES = ("full", "smoke", "scheduled")
RUN_STATUSES = ("running", "completed", "failed")
TERMINAL_STATUSES = ("completed", "failed")


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


# ──────────────────────────────────────────────────
# Metric store (read contract)
# ──────────────────────────────────────────────────

class MetricStore:
    """In-memory metric rollups, filtered by site and date range on read."""

    def __init__(self, rows_by_family: Optional[Dict[str, Iterable[Dict[str, Any]]]] = None):
        self._rows: Dict[str, List[Dict[str, Any]]] = {}
        for family, rows in (rows_by_family or {}).items():
            if family not in METRIC_FAMILIES:
                raise ValueError(f"Unknown metric family: {family}")
            self._rows[family] = list(rows)

    def fetch(
        self,
        family: str,
        site_id: Optional[str],
        start: str,
        end: str,
    ) -> List[Dict[str, Any]]:
        """Rows of one family with start <= date <= end.

        Raises DataUnavailableError when the family has no rows in range.
        An empty range is not a zero-traffic range.
        """
        if family not in self._rows:
            raise DataUnavailableError(family, "family not loaded")

        rows = [
            dict(r) for r in self._rows[family]
            if start <= str(r.get("date", ""))[:10] <= end
            and (site_id is None or r.get("site_id") in (None, "", site_id))
        ]
        if not rows:
            raise DataUnavailableError(family, f"no rows between {start} and {end}")
        return rows

    def latest_date(self, families: Iterable[str] = ("gsc_pages", "ga4")) -> Optional[str]:
        days = [
            str(r.get("date", ""))[:10]
            for family in families
            for r in self._rows.get(family, [])
            if r.get("date")
        ]
        return max(days) if days else None

    def fetch_page_checks(self, site_id: Optional[str], as_of: str) -> List[Dict[str, Any]]:
        """Latest check per URL on or before as_of; empty list if none."""
        latest: Dict[str, Dict[str, Any]] = {}
        for row in self._rows.get("page_checks", []):
            day = str(row.get("date", ""))[:10]
            if day and day > as_of:
                continue
            if site_id is not None and row.get("site_id") not in (None, "", site_id):
                continue
            url = row.get("url") or row.get("page_path") or ""
            if url not in latest or day >= str(latest[url].get("date", ""))[:10]:
                latest[url] = dict(row)
        return [latest[url] for url in sorted(latest)]


class CsvMetricStore(MetricStore):
    """MetricStore backed by one CSV export per family."""

    def __init__(self, paths: Dict[str, Optional[str]]):
        rows_by_family = {}
        for family, path in paths.items():
            if not path:
                continue
            with open(Path(path), "r") as f:
                rows_by_family[family] = list(csv.DictReader(f))
        super().__init__(rows_by_family)


# ──────────────────────────────────────────────────
# Run store
# ──────────────────────────────────────────────────

class RunStore:
    """In-memory persistence for run artifacts."""

    def __init__(self, ticket_prefix: str = "TICK", ticket_start: int = 1000):
        self._lock = threading.Lock()
        self._runs: Dict[str, Dict[str, Any]] = {}
        self._anomalies: Dict[str, List[Dict[str, Any]]] = {}
        self._cluster_losses: Dict[str, List[Dict[str, Any]]] = {}
        self._hypotheses: Dict[str, List[Dict[str, Any]]] = {}
        self._tickets: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._ticket_prefix = ticket_prefix
        self._ticket_counter = ticket_start

    # -- runs --

    def create_run(self, run_type: str = "full", site_id: Optional[str] = None) -> Dict[str, Any]:
        if run_type not in RUN_TYPES:
            raise ValueError(f"Unknown run type: {run_type}")
        run_id = f"run_{uuid.uuid4().hex[:12]}"
        run = {
            "run_id": run_id,
            "site_id": site_id,
            "run_type": run_type,
            "status": "running",
            "started_at": _utcnow(),
            "finished_at": None,
            "summary": None,
            "anomaly_count": 0,
            "ticket_count": 0,
            "fetch_statuses": [],
            "classification": None,
            "confidence": None,
            "classification_reason": None,
            "deltas": None,
            "config_version": None,
            "errors": [],
        }
        with self._lock:
            self._runs[run_id] = run
        return deepcopy(run)

    def _require_run(self, run_id: str) -> Dict[str, Any]:
        run = self._runs.get(run_id)
        if run is None:
            raise RunStateError(f"Unknown run id: {run_id}")
        return run

    def _require_open(self, run_id: str) -> Dict[str, Any]:
        run = self._require_run(run_id)
        if run["status"] in TERMINAL_STATUSES:
            raise RunStateError(f"Run {run_id} is {run['status']} and cannot be modified")
        return run

    def get_run(self, run_id: str) -> Dict[str, Any]:
        with self._lock:
            return deepcopy(self._require_run(run_id))

    def update_run(self, run_id: str, **fields: Any) -> Dict[str, Any]:
        if "status" in fields or "run_id" in fields:
            raise RunStateError("Use finish_run() to change status; run_id is immutable")
        with self._lock:
            run = self._require_open(run_id)
            run.update(deepcopy(fields))
            return deepcopy(run)

    def record_error(self, run_id: str, message: str) -> None:
        with self._lock:
            self._require_open(run_id)["errors"].append(message)

    def finish_run(self, run_id: str, status: str, **fields: Any) -> Dict[str, Any]:
        """Move a running run to a terminal status (completed or failed)."""
        if status not in TERMINAL_STATUSES:
            raise RunStateError(f"Cannot finish a run with status {status!r}")
        with self._lock:
            run = self._require_open(run_id)
            run.update(deepcopy(fields))
            run["status"] = status
            run["finished_at"] = _utcnow()
            return deepcopy(run)

    # -- append-only artifacts --

    def save_anomalies(self, run_id: str, anomalies: List[Dict[str, Any]]) -> None:
        with self._lock:
            run = self._require_open(run_id)
            stored = self._anomalies.setdefault(run_id, [])
            stored.extend({**deepcopy(a), "run_id": run_id} for a in anomalies)
            run["anomaly_count"] = len(stored)

    def save_cluster_losses(self, run_id: str, losses: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._require_open(run_id)
            if run_id in self._cluster_losses:
                raise RunStateError(f"Cluster losses for {run_id} already saved")
            self._cluster_losses[run_id] = [{**deepcopy(row), "run_id": run_id} for row in losses]

    def save_hypotheses(self, run_id: str, hypotheses: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._require_open(run_id)
            if run_id in self._hypotheses:
                raise RunStateError(f"Hypotheses for {run_id} already saved")
            ranks = [h["rank"] for h in hypotheses]
            if len(set(ranks)) != len(ranks):
                raise RunStateError(f"Duplicate hypothesis rank in run {run_id}")
            self._hypotheses[run_id] = [{**deepcopy(h), "run_id": run_id} for h in hypotheses]

    def anomalies_for_run(self, run_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return deepcopy(self._anomalies.get(run_id, []))

    def cluster_losses_for_run(self, run_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return deepcopy(self._cluster_losses.get(run_id, []))

    def hypotheses_for_run(self, run_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return deepcopy(self._hypotheses.get(run_id, []))

    # -- tickets --

    def insert_ticket(
        self,
        run_id: str,
        hypothesis_key: str,
        build: Callable[[str], Dict[str, Any]],
    ) -> Tuple[Dict[str, Any], bool]:
        """Create the (run_id, hypothesis_key) ticket unless it exists.

        `build` receives the allocated ticket id and returns the ticket.
        Returns (ticket, created). An existing ticket is returned
        unchanged, and no id is consumed.
        """
        with self._lock:
            self._require_run(run_id)
            existing = self._tickets.get((run_id, hypothesis_key))
            if existing is not None:
                return deepcopy(existing), False
            self._require_open(run_id)
            if not any(h["hypothesis_key"] == hypothesis_key for h in self._hypotheses.get(run_id, [])):
                raise RunStateError(
                    f"Run {run_id} has no hypothesis {hypothesis_key} to ticket"
                )
            self._ticket_counter += 1
            ticket = build(f"{self._ticket_prefix}-{self._ticket_counter}")
            self._tickets[(run_id, hypothesis_key)] = deepcopy(ticket)
            self._runs[run_id]["ticket_count"] = sum(1 for (rid, _) in self._tickets if rid == run_id)
            return deepcopy(ticket), True

    def get_ticket(self, run_id: str, hypothesis_key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            ticket = self._tickets.get((run_id, hypothesis_key))
            return deepcopy(ticket) if ticket else None

    def tickets_for_run(self, run_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            tickets = [t for (rid, _), t in self._tickets.items() if rid == run_id]
            return deepcopy(tickets)

    def export_run(self, run_id: str) -> Dict[str, Any]:
        """Every record of a run, JSON-serializable."""
        return {
            "run": self.get_run(run_id),
            "anomalies": self.anomalies_for_run(run_id),
            "cluster_losses": self.cluster_losses_for_run(run_id),
            "hypotheses": self.hypotheses_for_run(run_id),
            "tickets": self.tickets_for_run(run_id),
        }
