#!/usr/bin/env python3
"""Ticket synthesis: turn top-ranked hypotheses into owner-routed work items.

Only hypotheses with at least medium confidence are ticketed, up to
tickets.max_tickets, in rank order. A low-confidence guess is not worth
an engineer's afternoon.

Each ticket carries:
- owner: config owner_table. A tracking gap routes by which tag misfired
  (tracking_owner_rules: ga4 -> DEV, ads -> ADS).
- steps: the key's template, filled in with the evidence's concrete
  values (cluster, example URL, observed metric).
- impact estimate: affected page count, plus recoverable clicks computed
  as the total click loss scaled by recoverable_click_factor[confidence].

Synthesis is idempotent per (run_id, hypothesis_key). Calling it again
returns the existing ticket and does not allocate a new id.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from traffic_doctor.cluster_loss import total_click_loss
from traffic_doctor.store import RunStore


TICKET_CONFIDENCE = ("high", "medium")
IMPACT_BY_CONFIDENCE = {"high": "high", "medium": "medium", "low": "low"}


class _TemplateValues(dict):
    """format_map helper: leave unknown placeholders visible instead of failing."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def route_owner(hypothesis: Dict[str, Any], config: Dict[str, Any]) -> str:
    key = hypothesis["hypothesis_key"]
    if key == "TRACKING_TAG_OR_GA4_CONFIG":
        tag = hypothesis.get("params", {}).get("misfired_tag", "ga4")
        rules = config.get("tracking_owner_rules") or {}
        if tag in rules:
            return rules[tag]
    return config["owner_table"][key]


def render_template(hypothesis: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
    """Fill the key's title and step templates with evidence values."""
    template = config["ticket_templates"][hypothesis["hypothesis_key"]]
    params = hypothesis.get("params", {})
    values = _TemplateValues(
        count=params.get("affected_count", 0),
        cluster=params.get("cluster", "affected pages"),
        example_url=params.get("example_url", "the affected pages"),
        observed=params.get("observed", "n/a"),
    )
    return {
        "title": template["title"].format_map(values),
        "steps": [step.format_map(values) for step in template["steps"]],
    }


def estimate_impact(
    hypothesis: Dict[str, Any],
    analysis: Dict[str, Any],
    config: Dict[str, Any],
) -> Dict[str, Any]:
    """Affected pages and recoverable clicks for one hypothesis."""
    factor = config["tickets"]["recoverable_click_factor"][hypothesis["confidence"]]
    cluster_losses = analysis.get("cluster_losses") or []
    if cluster_losses:
        lost_clicks = total_click_loss(cluster_losses)
    else:
        lost_clicks = sum(p["click_loss"] for p in analysis.get("top_losing_pages") or [])

    params = hypothesis.get("params", {})
    return {
        "affected_pages_count": params.get("affected_count", 0),
        "recoverable_clicks_est": int(round(lost_clicks * factor)),
    }


def _evidence_refs(hypothesis: Dict[str, Any], analysis: Dict[str, Any]) -> Dict[str, Any]:
    deltas = analysis.get("deltas") or {}

    def pct(family: str, metric: str) -> Optional[float]:
        return deltas.get(family, {}).get("metrics", {}).get(metric, {}).get("delta_pct")

    params = hypothesis.get("params", {})
    affected_paths = params.get("affected_urls") or [
        p["page_path"] for p in (analysis.get("top_losing_pages") or [])[:5]
    ]
    return {
        "metrics": {
            "clicks_delta_pct": pct("gsc", "clicks"),
            "impressions_delta_pct": pct("gsc", "impressions"),
            "ctr_delta_pct": pct("gsc", "ctr"),
            "sessions_delta_pct": pct("ga4", "sessions"),
        },
        "affected_paths": affected_paths,
        "affected_queries": [q["query"] for q in (analysis.get("top_losing_queries") or [])[:5]],
        "hypothesis_rank": hypothesis["rank"],
        "statements": [e["statement"] for e in hypothesis.get("evidence", [])],
    }


def select_for_ticketing(
    hypotheses: List[Dict[str, Any]],
    config: Dict[str, Any],
) -> List[Dict[str, Any]]:
    cap = config["tickets"]["max_tickets"]
    eligible = [h for h in sorted(hypotheses, key=lambda h: h["rank"]) if h["confidence"] in TICKET_CONFIDENCE]
    return eligible[:cap]


def synthesize_tickets(
    run_id: str,
    hypotheses: List[Dict[str, Any]],
    analysis: Dict[str, Any],
    store: RunStore,
    config: Dict[str, Any],
) -> List[Dict[str, Any]]:
    """Create (or return existing) tickets for the top hypotheses of a run.

    Args:
        run_id: Run the tickets belong to.
        hypotheses: Ranked hypotheses of the run (already saved in store).
        analysis: {"deltas", "cluster_losses", "top_losing_pages",
                   "top_losing_queries"} from earlier stages.
        store: RunStore providing idempotent insert.
        config: Loaded analysis config.

    Returns:
        Tickets for the selected hypotheses, in rank order, whether they
        were created now or already existed.
    """
    tickets = []
    for hypothesis in select_for_ticketing(hypotheses, config):
        key = hypothesis["hypothesis_key"]

        def build(ticket_id: str, hypothesis: Dict[str, Any] = hypothesis) -> Dict[str, Any]:
            rendered = render_template(hypothesis, config)
            return {
                "ticket_id": ticket_id,
                "run_id": run_id,
                "hypothesis_key": hypothesis["hypothesis_key"],
                "title": rendered["title"],
                "owner": route_owner(hypothesis, config),
                "priority": hypothesis["priority"],
                "status": "open",
                "steps": rendered["steps"],
                "expected_impact": IMPACT_BY_CONFIDENCE[hypothesis["confidence"]],
                "impact_estimate": estimate_impact(hypothesis, analysis, config),
                "evidence": _evidence_refs(hypothesis, analysis),
            }

        ticket, _created = store.insert_ticket(run_id, key, build)
        tickets.append(ticket)
    return tickets
