#!/usr/bin/env python3
"""Run classification and hypothesis priority mapping.

Two static rule tables live here:

1. priority_for(): hypothesis key -> P0..P3, read from the validated
   config["priority_by_key"]. config.load_config() refuses a catalog key
   with no tier, so lookup here cannot fall through to a default.

2. classify_run(): accumulated anomalies + cluster losses + top hypothesis
   -> exactly one of the five run classifications. Rules are evaluated
   in a fixed order:

    a. no top-scope anomaly, or no usable data      -> INCONCLUSIVE
    b. analytics dropped while search clicks held,
       or analytics dropped and search data is
       present with no click or impression drop     -> TRACKING_OR_ATTRIBUTION_GAP
    c. click drop with a dominant cluster           -> PAGE_CLUSTER_REGRESSION
    d. impressions or position regressed            -> VISIBILITY_LOSS
    e. CTR dropped, or clicks dropped on available,
       non-anomalous impressions                    -> CTR_LOSS
    f. only analytics dropped and search data is
       missing, or no pattern fits                  -> INCONCLUSIVE

Cluster concentration is tested before visibility. A template-level
break (robots rule on /services/) usually drags impressions down too, and
"where" is the more actionable answer.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from traffic_doctor.anomaly import anomaly_for, top_scope_anomalies
from traffic_doctor.cluster_loss import dominant_cluster
from traffic_doctor.windows import STATUS_AVAILABLE


CLASSIFICATIONS = (
    "VISIBILITY_LOSS",
    "CTR_LOSS",
    "PAGE_CLUSTER_REGRESSION",
    "TRACKING_OR_ATTRIBUTION_GAP",
    "INCONCLUSIVE",
)

CONFIDENCE_ORDER = {"high": 0, "medium": 1, "low": 2}
CONFIDENCE_BY_ORDER = {v: k for k, v in CONFIDENCE_ORDER.items()}

# Base run confidence per classification before data-completeness adjustments.
BASE_CONFIDENCE = {
    "TRACKING_OR_ATTRIBUTION_GAP": "high",
    "PAGE_CLUSTER_REGRESSION": "high",
    "VISIBILITY_LOSS": "high",
    "CTR_LOSS": "medium",
    "INCONCLUSIVE": "low",
}


def priority_for(hypothesis_key: str, config: Dict[str, Any]) -> str:
    """Return the priority tier for a hypothesis key."""
    return config["priority_by_key"][hypothesis_key]


def priority_rank(hypothesis_key: str, config: Dict[str, Any]) -> int:
    """Numeric tier for sorting: P0 -> 0 ... P3 -> 3."""
    return int(priority_for(hypothesis_key, config)[1:])


def _downgrade(level: str) -> str:
    return CONFIDENCE_BY_ORDER[min(CONFIDENCE_ORDER[level] + 1, 2)]


def classify_run(
    deltas: Dict[str, Any],
    detection: Dict[str, Any],
    cluster_losses: List[Dict[str, Any]],
    config: Dict[str, Any],
    top_hypothesis: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Assign the run-level classification and overall confidence.

    Args:
        deltas: Output of windows.compute_deltas().
        detection: Output of anomaly.detect_anomalies().
        cluster_losses: Output of cluster_loss.compute_cluster_losses().
        config: Loaded analysis config.
        top_hypothesis: Rank-1 hypothesis, if any.

    Returns:
        {"classification": str, "confidence": "high"|"medium"|"low",
         "reason": str}
    """
    gsc_available = deltas["gsc"]["available"]
    ga4_available = deltas["ga4"]["available"]
    anomalies = detection["anomalies"]

    def result(classification: str, reason: str) -> Dict[str, Any]:
        confidence = BASE_CONFIDENCE[classification]
        if classification != "INCONCLUSIVE":
            if not (gsc_available and ga4_available):
                confidence = _downgrade(confidence)
            if top_hypothesis and top_hypothesis["confidence"] == "high":
                confidence = "high"
        return {"classification": classification, "confidence": confidence, "reason": reason}

    if not gsc_available and not ga4_available:
        return result("INCONCLUSIVE", "No metric family had enough data to compute deltas")
    if not top_scope_anomalies(anomalies):
        return result("INCONCLUSIVE", "No anomaly met the significance thresholds")

    if detection.get("tracking_gap"):
        return result(
            "TRACKING_OR_ATTRIBUTION_GAP",
            "Analytics sessions dropped while search-console clicks held steady",
        )

    clicks_anomaly = anomaly_for(anomalies, "clicks")
    impressions_anomaly = anomaly_for(anomalies, "impressions")
    analytics_anomaly = anomaly_for(anomalies, "sessions") or anomaly_for(anomalies, "users")
    if analytics_anomaly and gsc_available and not (clicks_anomaly or impressions_anomaly):
        return result(
            "TRACKING_OR_ATTRIBUTION_GAP",
            f"Analytics {analytics_anomaly['metric']} dropped {abs(analytics_anomaly['delta_pct']):.0f}% "
            "with no significant search-console click or impression drop",
        )

    dominant = dominant_cluster(cluster_losses, config)
    if clicks_anomaly and dominant:
        return result(
            "PAGE_CLUSTER_REGRESSION",
            f"{dominant['cluster']} accounts for {dominant['loss_share'] * 100:.0f}% of the click loss",
        )

    position_anomaly = anomaly_for(anomalies, "position")
    if impressions_anomaly or position_anomaly:
        driver = "impressions" if impressions_anomaly else "average position"
        return result("VISIBILITY_LOSS", f"Search visibility regressed ({driver})")

    ctr_anomaly = anomaly_for(anomalies, "ctr")
    impressions = deltas["gsc"]["metrics"].get("impressions", {})
    if ctr_anomaly or (clicks_anomaly and impressions.get("status") == STATUS_AVAILABLE):
        return result("CTR_LOSS", "Clicks fell while impressions held steady")

    if not gsc_available:
        return result(
            "INCONCLUSIVE",
            "Only analytics dropped and search-console data cannot confirm a traffic loss",
        )
    return result("INCONCLUSIVE", "Anomalies do not match a known regression pattern")
