#!/usr/bin/env python3
"""Hypothesis generation, confidence scoring and ranking.

This stage consumes anomalies (is there a drop?) and cluster losses
(where?), plus page checks from upstream crawls. It answers WHY: which of
the catalog's root causes the evidence supports, and how strongly.

HOW IT IS SPLIT:
- One evaluator per hypothesis key gathers EvidenceBlocks, tagged
  strong/moderate/weak, for and against that key. Evaluators know the
  domain.
- score_confidence() turns the strength mix into high/medium/low. It knows
  nothing about hypothesis keys, so adding a key never touches the scoring
  rules.
- rank_hypotheses() orders by confidence, then priority tier, then catalog
  declaration order. The order is a pure function of the inputs.

A key with no supporting evidence is not emitted at all. That is absence,
not a zero-confidence hypothesis.

Usage (import):
    from traffic_doctor.hypotheses import generate_hypotheses
    ranked = generate_hypotheses(context, config)
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from traffic_doctor.anomaly import anomaly_for
from traffic_doctor.classify import CONFIDENCE_ORDER, priority_for, priority_rank
from traffic_doctor.cluster_loss import dominant_cluster, total_click_loss
from traffic_doctor.errors import ConfigError
from traffic_doctor.windows import STATUS_AVAILABLE


EVIDENCE_TYPES = ("metric", "check", "comparison", "log")
STRENGTH_ORDER = {"strong": 0, "moderate": 1, "weak": 2}

# How many affected URLs to quote in an evidence payload.
MAX_EXAMPLE_URLS = 5

TECHNICAL_FINDINGS = ("robots_blocked", "has_noindex", "canonical_mismatch", "thin_content", "http_error")


def evidence(
    kind: str,
    statement: str,
    data: Dict[str, Any],
    strength: str,
) -> Dict[str, Any]:
    """Build one EvidenceBlock."""
    if kind not in EVIDENCE_TYPES:
        raise ValueError(f"Unknown evidence type: {kind}")
    if strength not in STRENGTH_ORDER:
        raise ValueError(f"Unknown evidence strength: {strength}")
    return {"type": kind, "statement": statement, "data": data, "strength": strength}


# ──────────────────────────────────────────────────
# Confidence Scoring
# ──────────────────────────────────────────────────

def _strongest(blocks: List[Dict[str, Any]]) -> Optional[str]:
    if not blocks:
        return None
    return min((b["strength"] for b in blocks), key=STRENGTH_ORDER.__getitem__)


def score_confidence(
    support: List[Dict[str, Any]],
    disconfirm: List[Dict[str, Any]],
) -> Optional[Dict[str, Any]]:
    """Map a mix of evidence strengths to a confidence bucket.

    Rules (strongest support vs. strongest disconfirmer):

        support   | none/weak against | moderate against | strong against
        ----------+-------------------+------------------+---------------
        strong    | high              | medium           | low
        moderate  | medium            | low              | low
        weak      | low               | low              | low

    Returns None when there is no supporting evidence (hypothesis is not
    emitted). Otherwise {"level", "reasoning", "would_upgrade_if",
    "would_downgrade_if"}.
    """
    best_for = _strongest(support)
    if best_for is None:
        return None
    best_against = _strongest(disconfirm)
    against_rank = STRENGTH_ORDER[best_against] if best_against else 3

    if best_for == "strong" and against_rank >= STRENGTH_ORDER["weak"]:
        level = "high"
    elif best_for == "strong" and against_rank == STRENGTH_ORDER["moderate"]:
        level = "medium"
    elif best_for == "moderate" and against_rank >= STRENGTH_ORDER["weak"]:
        level = "medium"
    else:
        level = "low"

    upgrade = None
    downgrade = None
    if level == "high":
        downgrade = "a moderate disconfirming signal"
    elif level == "medium":
        upgrade = (
            "resolving the disconfirming evidence"
            if best_against in ("moderate", "strong")
            else "one strong supporting check or metric"
        )
        downgrade = "losing the strongest supporting evidence"
    else:
        upgrade = (
            "resolving the strong disconfirming evidence"
            if best_against == "strong"
            else "stronger supporting evidence (a failing page check or significant metric drop)"
        )

    return {
        "level": level,
        "reasoning": (
            f"strongest support: {best_for}; "
            f"strongest disconfirmer: {best_against or 'none'}"
        ),
        "would_upgrade_if": upgrade,
        "would_downgrade_if": downgrade,
    }


# ──────────────────────────────────────────────────
# Shared context helpers
# ──────────────────────────────────────────────────

def _checks_with(context: Dict[str, Any], *findings: str) -> List[Dict[str, Any]]:
    return [
        c for c in context.get("page_checks", [])
        if any(c.get(f) is True for f in findings)
    ]


def _in_cluster(checks: List[Dict[str, Any]], cluster: Optional[str]) -> List[Dict[str, Any]]:
    if not cluster:
        return []
    return [c for c in checks if c.get("cluster") == cluster]


def _urls(checks: List[Dict[str, Any]]) -> List[str]:
    return [c["url"] for c in checks][:MAX_EXAMPLE_URLS]


def _metric_delta(context: Dict[str, Any], family: str, metric: str) -> Dict[str, Any]:
    return context["deltas"][family]["metrics"].get(metric, {})


def _fmt_pct(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:+.1f}%"


def _top_cluster_name(context: Dict[str, Any]) -> str:
    losses = context.get("cluster_losses") or []
    return losses[0]["cluster"] if losses else "affected pages"


def _no_drop_disconfirmer(context: Dict[str, Any]) -> List[Dict[str, Any]]:
    if context["detection"]["has_drop"]:
        return []
    return [evidence(
        "metric",
        "No significant traffic drop was detected in the current window",
        {"anomaly_count": 0},
        "moderate",
    )]


def _cluster_concentration(
    context: Dict[str, Any],
    affected: List[Dict[str, Any]],
    label: str,
) -> List[Dict[str, Any]]:
    """Strong comparison evidence when affected pages sit in the dominant cluster."""
    dominant = context.get("dominant_cluster")
    inside = _in_cluster(affected, dominant["cluster"] if dominant else None)
    if not inside:
        return []
    return [evidence(
        "comparison",
        (
            f"{len(inside)} {label} page(s) are in {dominant['cluster']}, which accounts for "
            f"{dominant['loss_share'] * 100:.0f}% of lost clicks"
        ),
        {"cluster": dominant["cluster"], "loss_share": dominant["loss_share"], "affected_urls": _urls(inside)},
        "strong",
    )]


def _step_change_support(context: Dict[str, Any]) -> List[Dict[str, Any]]:
    step = context.get("step_change") or {}
    if step.get("pattern") != "step":
        return []
    return [evidence(
        "metric",
        f"Daily clicks dropped {step['magnitude_pct']:.1f}% overnight, consistent with a deploy or config change",
        dict(step),
        "moderate",
    )]


def _params(
    context: Dict[str, Any],
    affected: List[Dict[str, Any]],
    observed: str,
    **extra: Any,
) -> Dict[str, Any]:
    """Concrete values a ticket template can interpolate."""
    dominant = context.get("dominant_cluster")
    cluster = dominant["cluster"] if dominant else _top_cluster_name(context)
    pages = context.get("top_losing_pages") or []
    example = affected[0]["url"] if affected else (pages[0]["page_path"] if pages else cluster)
    params = {
        "cluster": cluster,
        "example_url": example,
        "observed": observed,
        "affected_count": len(affected) if affected else len(pages),
        "affected_urls": _urls(affected) if affected else [p["page_path"] for p in pages][:MAX_EXAMPLE_URLS],
    }
    params.update(extra)
    return params


def _clicks_observation(context: Dict[str, Any]) -> str:
    return f"clicks {_fmt_pct(_metric_delta(context, 'gsc', 'clicks').get('delta_pct'))}"


# ──────────────────────────────────────────────────
# Evaluators (one per catalog key)
# Each returns None (no applicable evidence) or
# {"summary", "support", "disconfirm", "missing_data", "params"}
# ──────────────────────────────────────────────────

def _robots_or_noindex(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    blocked = _checks_with(context, "robots_blocked", "has_noindex")
    if not blocked:
        return None

    rules = sorted({c["robots_rule"] for c in blocked if c.get("robots_rule")})
    noindex = [c for c in blocked if c.get("has_noindex")]
    detail = []
    if rules:
        detail.append("robots.txt " + ", ".join(f"'Disallow: {r}'" for r in rules))
    if noindex:
        detail.append(f"noindex on {len(noindex)} page(s)")
    support = [evidence(
        "check",
        f"{len(blocked)} checked page(s) are blocked from indexing ({'; '.join(detail)})",
        {"affected_urls": _urls(blocked), "disallow_rules": rules, "noindex_count": len(noindex)},
        "strong",
    )]
    support += _cluster_concentration(context, blocked, "blocked")

    impressions = anomaly_for(context["anomalies"], "impressions")
    clicks = anomaly_for(context["anomalies"], "clicks")
    if impressions or clicks:
        drop = impressions or clicks
        support.append(evidence(
            "metric",
            f"{drop['metric'].capitalize()} dropped {abs(drop['delta_pct']):.1f}% in the current window",
            {"metric": drop["metric"], "delta_pct": drop["delta_pct"]},
            "strong" if impressions else "moderate",
        ))
    support += _step_change_support(context)

    return {
        "summary": f"{len(blocked)} page(s) are blocked by robots.txt or noindex, preventing indexing",
        "support": support,
        "disconfirm": _no_drop_disconfirmer(context),
        "missing_data": [
            "Previous robots.txt and meta-robots snapshot to confirm the block is new",
            "Index coverage report for the affected URLs",
        ],
        "params": _params(context, blocked, _clicks_observation(context), disallow_rules=rules),
    }


def _canonical_mismatch(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    mismatched = _checks_with(context, "canonical_mismatch")
    if not mismatched:
        return None

    support = [evidence(
        "check",
        f"Canonical tag points to a different URL on {len(mismatched)} page(s)",
        {"affected_urls": _urls(mismatched)},
        "strong" if len(mismatched) >= 3 else "moderate",
    )]
    support += _cluster_concentration(context, mismatched, "mis-canonicalized")
    impressions = anomaly_for(context["anomalies"], "impressions")
    if impressions:
        support.append(evidence(
            "metric",
            f"Impressions dropped {abs(impressions['delta_pct']):.1f}%",
            {"delta_pct": impressions["delta_pct"]},
            "moderate",
        ))
    support += _step_change_support(context)

    return {
        "summary": f"{len(mismatched)} page(s) declare a canonical URL other than themselves",
        "support": support,
        "disconfirm": _no_drop_disconfirmer(context),
        "missing_data": ["Last successful crawl to confirm the canonical change is a regression"],
        "params": _params(context, mismatched, _clicks_observation(context)),
    }


def _redirect_chain_or_http_change(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    errors = _checks_with(context, "http_error")
    chains = [c for c in context.get("page_checks", []) if (c.get("redirect_hops") or 0) > 1]
    if not errors and not chains:
        return None

    support = []
    if errors:
        support.append(evidence(
            "check",
            f"{len(errors)} checked page(s) return HTTP errors",
            {"affected_urls": _urls(errors), "status_codes": sorted({c["status_code"] for c in errors})},
            "strong",
        ))
    if chains:
        support.append(evidence(
            "check",
            f"Redirect chains of more than one hop on {len(chains)} URL(s)",
            {"affected_urls": _urls(chains), "max_hops": max(c["redirect_hops"] for c in chains)},
            "moderate",
        ))
    support += _cluster_concentration(context, errors + chains, "redirected or erroring")
    support += _step_change_support(context)

    affected = errors + [c for c in chains if c not in errors]
    return {
        "summary": f"{len(affected)} URL(s) redirect through chains or return HTTP errors",
        "support": support,
        "disconfirm": _no_drop_disconfirmer(context),
        "missing_data": ["Previous crawl to check whether redirects or errors are new"],
        "params": _params(context, affected, _clicks_observation(context)),
    }


def _ssr_or_thin_content(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    thin = _checks_with(context, "thin_content")
    if not thin:
        return None

    min_len = context["config"]["thresholds"]["min_text_length"]
    support = [evidence(
        "check",
        f"Body text below {min_len} characters on {len(thin)} page(s)",
        {
            "affected_urls": _urls(thin),
            "lengths": [{"url": c["url"], "chars": c["body_text_length"]} for c in thin[:MAX_EXAMPLE_URLS]],
        },
        "strong" if len(thin) >= 5 else "moderate",
    )]
    support += _cluster_concentration(context, thin, "thin")
    support += _step_change_support(context)

    return {
        "summary": f"{len(thin)} page(s) render thin content (<{min_len} chars)",
        "support": support,
        "disconfirm": _no_drop_disconfirmer(context),
        "missing_data": [
            "Previous crawl body lengths to confirm a regression",
            "Rendered vs. raw HTML comparison to detect client-side-only content",
        ],
        "params": _params(context, thin, _clicks_observation(context)),
    }


def _structured_data_break(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    missing = [c for c in context.get("page_checks", []) if c.get("has_structured_data") is False]
    if not missing:
        return None

    support = [evidence(
        "check",
        f"No structured data found on {len(missing)} page(s)",
        {"affected_urls": _urls(missing)},
        "weak",
    )]
    disconfirm = []
    ctr = anomaly_for(context["anomalies"], "ctr")
    if ctr:
        support.append(evidence(
            "metric",
            f"CTR dropped {abs(ctr['delta_pct']):.1f}%",
            {"delta_pct": ctr["delta_pct"]},
            "moderate",
        ))
    else:
        disconfirm.append(evidence(
            "metric",
            "CTR did not drop significantly, so lost rich results are unlikely",
            {"ctr_delta_pct": _metric_delta(context, "gsc", "ctr").get("delta_pct")},
            "moderate",
        ))

    return {
        "summary": f"{len(missing)} page(s) are missing structured data",
        "support": support,
        "disconfirm": disconfirm,
        "missing_data": ["Whether structured data was previously present", "JSON-LD validation results"],
        "params": _params(
            context, missing,
            f"CTR {_fmt_pct(_metric_delta(context, 'gsc', 'ctr').get('delta_pct'))}",
        ),
    }


def _internal_linking_break(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    orphaned = [c for c in context.get("page_checks", []) if c.get("internal_links_in") == 0]
    if not orphaned:
        return None

    support = [evidence(
        "check",
        f"{len(orphaned)} page(s) have no inbound internal links",
        {"affected_urls": _urls(orphaned)},
        "moderate",
    )]
    support += _cluster_concentration(context, orphaned, "orphaned")

    return {
        "summary": f"{len(orphaned)} page(s) are orphaned from internal navigation",
        "support": support,
        "disconfirm": _no_drop_disconfirmer(context),
        "missing_data": ["Internal link graph from the previous crawl"],
        "params": _params(context, orphaned, _clicks_observation(context)),
    }


def _content_intent_mismatch(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    dominant = context.get("dominant_cluster")
    if not dominant or not anomaly_for(context["anomalies"], "clicks"):
        return None

    support = [evidence(
        "metric",
        (
            f"Cluster {dominant['cluster']} lost {dominant['click_loss']:.0f} clicks "
            f"({dominant['loss_share'] * 100:.0f}% of total loss)"
        ),
        {
            "cluster": dominant["cluster"],
            "baseline_clicks": dominant["baseline_clicks"],
            "current_clicks": dominant["current_clicks"],
            "loss_share": dominant["loss_share"],
        },
        "moderate",
    )]
    disconfirm = []
    technical = _in_cluster(_checks_with(context, *TECHNICAL_FINDINGS), dominant["cluster"])
    if technical:
        disconfirm.append(evidence(
            "check",
            f"{len(technical)} page(s) in {dominant['cluster']} fail technical checks that better explain the loss",
            {"affected_urls": _urls(technical)},
            "strong",
        ))

    cluster_pages = [p for p in context.get("top_losing_pages") or [] if p["cluster"] == dominant["cluster"]]
    return {
        "summary": (
            f"Traffic loss concentrated in {dominant['cluster']} "
            f"({dominant['loss_share'] * 100:.0f}% of total loss) without a technical cause"
        ),
        "support": support,
        "disconfirm": disconfirm,
        "missing_data": ["SERP analysis for the cluster's top queries", "Competitor content changes"],
        "params": _params(
            context,
            [{"url": p["page_path"]} for p in cluster_pages],
            _clicks_observation(context),
        ),
    }


def _serp_layout_or_ctr_shift(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    ctr = anomaly_for(context["anomalies"], "ctr")
    impressions = _metric_delta(context, "gsc", "impressions")
    if not ctr or impressions.get("status") != STATUS_AVAILABLE:
        return None
    if anomaly_for(context["anomalies"], "impressions"):
        return None

    support = [evidence(
        "metric",
        f"CTR dropped {abs(ctr['delta_pct']):.1f}% while impressions moved {_fmt_pct(impressions['delta_pct'])}",
        {"ctr_delta_pct": ctr["delta_pct"], "impressions_delta_pct": impressions["delta_pct"]},
        "moderate",
    )]
    disconfirm = []
    position = _metric_delta(context, "gsc", "position")
    if position.get("status") == STATUS_AVAILABLE:
        if abs(position["delta_pct"]) < abs(context["config"]["thresholds"]["drop_pct"]) / 3:
            support.append(evidence(
                "comparison",
                f"Average position held ({_fmt_pct(position['delta_pct'])}), so rankings did not move",
                {"position_delta_pct": position["delta_pct"]},
                "moderate",
            ))
        elif position["regression_pct"] < 0:
            disconfirm.append(evidence(
                "metric",
                f"Average position worsened {_fmt_pct(position['delta_pct'])}, which explains CTR through ranking loss",
                {"position_delta_pct": position["delta_pct"]},
                "moderate",
            ))
    dominant = context.get("dominant_cluster")
    technical = _in_cluster(
        _checks_with(context, *TECHNICAL_FINDINGS),
        dominant["cluster"] if dominant else None,
    )
    if technical:
        disconfirm.append(evidence(
            "check",
            f"{len(technical)} page(s) in {dominant['cluster']} fail technical checks that explain the lost clicks",
            {"cluster": dominant["cluster"], "affected_urls": _urls(technical)},
            "strong",
        ))

    return {
        "summary": "CTR dropped while impressions held, suggesting a SERP layout or snippet change",
        "support": support,
        "disconfirm": disconfirm,
        "missing_data": ["SERP feature snapshots for top queries", "Title/description change history"],
        "params": _params(context, [], f"CTR {_fmt_pct(ctr['delta_pct'])}"),
    }


def _google_update_or_industry_wide(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    visibility = anomaly_for(context["anomalies"], "impressions") or anomaly_for(context["anomalies"], "position")
    if not visibility or context.get("dominant_cluster"):
        return None

    clusters = context.get("cluster_losses") or []
    support = [evidence(
        "metric",
        f"Visibility loss spread across {len(clusters)} cluster(s) with no dominant cluster",
        {"metric": visibility["metric"], "delta_pct": visibility["delta_pct"], "cluster_count": len(clusters)},
        "weak",
    )]
    step = context.get("step_change") or {}
    if step.get("pattern") == "gradual":
        support.append(evidence(
            "metric",
            "Clicks declined gradually rather than overnight",
            dict(step),
            "weak",
        ))

    disconfirm = []
    technical = _checks_with(context, *TECHNICAL_FINDINGS)
    if technical:
        disconfirm.append(evidence(
            "check",
            "Technical issues found that better explain the drop",
            {"affected_urls": _urls(technical)},
            "strong",
        ))

    return {
        "summary": "No clear technical issue found; possible algorithm update or industry-wide change",
        "support": support,
        "disconfirm": disconfirm,
        "missing_data": [
            "Confirmed search engine updates in the window",
            "Industry benchmark traffic for the same period",
            "Competitor rankings for the same queries",
        ],
        "params": _params(context, [], f"{visibility['metric']} {_fmt_pct(visibility['delta_pct'])}"),
    }


def _seasonality(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    year_ago = context.get("year_ago_deltas")
    clicks = anomaly_for(context["anomalies"], "clicks")
    if not year_ago or not clicks:
        return None

    prior = year_ago["gsc"]["metrics"].get("clicks", {})
    if prior.get("status") != STATUS_AVAILABLE:
        return None
    # Comparable: last year's same window fell at least half as much.
    if prior["delta_pct"] > clicks["delta_pct"] / 2:
        return None

    support = [evidence(
        "comparison",
        (
            f"Same window last year saw clicks move {_fmt_pct(prior['delta_pct'])} "
            f"vs {_fmt_pct(clicks['delta_pct'])} now"
        ),
        {"year_ago_delta_pct": prior["delta_pct"], "current_delta_pct": clicks["delta_pct"]},
        "strong",
    )]
    disconfirm = []
    step = context.get("step_change") or {}
    if step.get("pattern") == "step":
        disconfirm.append(evidence(
            "metric",
            "Clicks dropped overnight, which is not a seasonal shape",
            dict(step),
            "moderate",
        ))

    return {
        "summary": "The drop matches the same period last year",
        "support": support,
        "disconfirm": disconfirm,
        "missing_data": ["Two or more prior years to confirm the pattern recurs"],
        "params": _params(context, [], f"last year {_fmt_pct(prior['delta_pct'])}, now {_fmt_pct(clicks['delta_pct'])}"),
    }


def _tracking_tag_or_ga4_config(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    detection = context["detection"]
    sessions = _metric_delta(context, "ga4", "sessions")
    clicks = _metric_delta(context, "gsc", "clicks")
    missing_ga4 = [c for c in context.get("page_checks", []) if c.get("has_ga4_tag") is False]
    missing_ads = [c for c in context.get("page_checks", []) if c.get("has_ads_tag") is False]
    sessions_drop = anomaly_for(context["anomalies"], "sessions")

    support = []
    if detection.get("tracking_gap"):
        support.append(evidence(
            "metric",
            f"Analytics sessions down {abs(sessions['delta_pct']):.1f}%",
            {"sessions_delta_pct": sessions["delta_pct"]},
            "strong",
        ))
        support.append(evidence(
            "comparison",
            f"Search-console clicks held steady ({_fmt_pct(clicks.get('delta_pct'))})",
            {"clicks_delta_pct": clicks.get("delta_pct")},
            "strong",
        ))
    elif (
        sessions_drop
        and clicks.get("status") == STATUS_AVAILABLE
        and not anomaly_for(context["anomalies"], "clicks")
        and not anomaly_for(context["anomalies"], "impressions")
    ):
        support.append(evidence(
            "comparison",
            (
                f"Analytics sessions down {abs(sessions_drop['delta_pct']):.1f}% with no significant "
                f"search-console click drop ({_fmt_pct(clicks['delta_pct'])})"
            ),
            {"sessions_delta_pct": sessions_drop["delta_pct"], "clicks_delta_pct": clicks["delta_pct"]},
            "moderate",
        ))
    if missing_ga4:
        support.append(evidence(
            "check",
            f"Analytics tag missing on {len(missing_ga4)} checked page(s)",
            {"affected_urls": _urls(missing_ga4), "tag": "ga4"},
            "strong" if sessions_drop else "weak",
        ))
    if missing_ads:
        support.append(evidence(
            "check",
            f"Ads conversion tag missing on {len(missing_ads)} checked page(s)",
            {"affected_urls": _urls(missing_ads), "tag": "ads"},
            "moderate" if sessions_drop else "weak",
        ))
    if not support:
        return None

    disconfirm = []
    clicks_drop = anomaly_for(context["anomalies"], "clicks")
    if sessions_drop and clicks_drop:
        disconfirm.append(evidence(
            "comparison",
            f"Search clicks fell too ({_fmt_pct(clicks_drop['delta_pct'])}), so traffic really dropped",
            {"clicks_delta_pct": clicks_drop["delta_pct"]},
            "moderate",
        ))

    misfired_tag = "ga4" if (missing_ga4 or not missing_ads) else "ads"
    affected = missing_ga4 if misfired_tag == "ga4" else missing_ads
    return {
        "summary": "Analytics sessions diverge from search traffic; tracking is likely broken",
        "support": support,
        "disconfirm": disconfirm,
        "missing_data": ["Realtime analytics events", "Tag manager change history", "Server log session counts"],
        "params": _params(
            context, affected,
            f"sessions {_fmt_pct(sessions.get('delta_pct'))}",
            misfired_tag=misfired_tag,
        ),
    }


EVALUATORS: Dict[str, Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]] = {
    "ROBOTS_OR_NOINDEX": _robots_or_noindex,
    "CANONICAL_MISMATCH": _canonical_mismatch,
    "REDIRECT_CHAIN_OR_HTTP_CHANGE": _redirect_chain_or_http_change,
    "SSR_OR_THIN_CONTENT_REGRESSION": _ssr_or_thin_content,
    "STRUCTURED_DATA_BREAK": _structured_data_break,
    "INTERNAL_LINKING_BREAK": _internal_linking_break,
    "CONTENT_INTENT_MISMATCH": _content_intent_mismatch,
    "SERP_LAYOUT_OR_CTR_SHIFT": _serp_layout_or_ctr_shift,
    "GOOGLE_UPDATE_OR_INDUSTRY_WIDE": _google_update_or_industry_wide,
    "SEASONALITY": _seasonality,
    "TRACKING_TAG_OR_GA4_CONFIG": _tracking_tag_or_ga4_config,
}


# ──────────────────────────────────────────────────
# Generation and ranking
# ──────────────────────────────────────────────────

def build_context(
    deltas: Dict[str, Any],
    detection: Dict[str, Any],
    cluster_losses: List[Dict[str, Any]],
    page_checks: List[Dict[str, Any]],
    config: Dict[str, Any],
    top_losing_pages: Optional[List[Dict[str, Any]]] = None,
    step_change: Optional[Dict[str, Any]] = None,
    year_ago_deltas: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Bundle stage outputs into the evaluator context.

    page_checks must already be derived (schema.derive_page_checks) and
    tagged with "cluster".
    """
    return {
        "deltas": deltas,
        "detection": detection,
        "anomalies": detection["anomalies"],
        "cluster_losses": cluster_losses,
        "dominant_cluster": dominant_cluster(cluster_losses, config),
        "total_click_loss": total_click_loss(cluster_losses),
        "page_checks": page_checks,
        "top_losing_pages": top_losing_pages or [],
        "step_change": step_change,
        "year_ago_deltas": year_ago_deltas,
        "config": config,
    }


def rank_hypotheses(
    hypotheses: List[Dict[str, Any]],
    config: Dict[str, Any],
) -> List[Dict[str, Any]]:
    """Sort by confidence, then priority tier, then catalog order; assign ranks."""
    catalog_index = {key: i for i, key in enumerate(config["hypothesis_catalog"])}
    ordered = sorted(
        hypotheses,
        key=lambda h: (
            CONFIDENCE_ORDER[h["confidence"]],
            priority_rank(h["hypothesis_key"], config),
            catalog_index[h["hypothesis_key"]],
        ),
    )
    for i, hypothesis in enumerate(ordered, start=1):
        hypothesis["rank"] = i
    return ordered


def generate_hypotheses(
    context: Dict[str, Any],
    config: Dict[str, Any],
) -> List[Dict[str, Any]]:
    """Evaluate every catalog key and return ranked hypotheses.

    Returns:
        List of {"rank", "hypothesis_key", "priority", "confidence",
        "summary", "evidence", "disconfirmed_by", "missing_data",
        "confidence_detail", "params"} sorted by rank.
    """
    missing = [key for key in config["hypothesis_catalog"] if key not in EVALUATORS]
    if missing:
        raise ConfigError(f"No evaluator registered for hypothesis key(s): {missing}")

    hypotheses = []
    for key in config["hypothesis_catalog"]:
        finding = EVALUATORS[key](context)
        if finding is None:
            continue
        scored = score_confidence(finding["support"], finding["disconfirm"])
        if scored is None:
            continue

        missing_data = list(finding["missing_data"])
        if scored["would_upgrade_if"]:
            missing_data.append(f"Would raise confidence: {scored['would_upgrade_if']}")
        if scored["would_downgrade_if"]:
            missing_data.append(f"Would lower confidence: {scored['would_downgrade_if']}")

        hypotheses.append({
            "rank": 0,
            "hypothesis_key": key,
            "priority": priority_for(key, config),
            "confidence": scored["level"],
            "summary": finding["summary"],
            "evidence": finding["support"],
            "disconfirmed_by": finding["disconfirm"],
            "missing_data": missing_data,
            "confidence_detail": scored,
            "params": finding["params"],
        })

    return rank_hypotheses(hypotheses, config)
