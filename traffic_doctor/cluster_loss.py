#!/usr/bin/env python3
"""Cluster loss analysis: which page cluster accounts for the click loss?

This is the "where" question. A drop spread evenly across the site points
to site-wide causes such as an algorithm update, seasonality or SERP layout.
A drop concentrated in one cluster (all /services/* pages) points to
something structural that broke the template.

Loss share formula:
    loss_share = cluster_click_loss / sum(positive click losses)

Only clusters with positive loss are emitted, so shares are all positive
and sum to at most 1.0. A cluster is dominant when its share is at least
thresholds.cluster_loss_share (0.6).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


def compute_cluster_losses(
    cluster_windows: Dict[str, Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Build ClusterLoss rows from per-cluster window totals.

    Args:
        cluster_windows: Output of windows.compute_cluster_windows(); each
            value carries "baseline_clicks" (baseline scaled to the current
            window length) and "current_clicks".

    Returns:
        List of {"cluster", "baseline_clicks", "current_clicks", "click_loss",
        "loss_share"}, sorted by click_loss descending then cluster name.
    """
    losses = []
    for cluster, data in cluster_windows.items():
        click_loss = data["baseline_clicks"] - data["current_clicks"]
        if click_loss > 0:
            losses.append({
                "cluster": cluster,
                "baseline_clicks": data["baseline_clicks"],
                "current_clicks": data["current_clicks"],
                "click_loss": round(click_loss, 2),
            })

    total_loss = sum(row["click_loss"] for row in losses)
    for row in losses:
        row["loss_share"] = round(row["click_loss"] / total_loss, 6) if total_loss > 0 else 0.0

    # Rounding each share to 6 places can push the total a hair above 1.0.
    overshoot = sum(row["loss_share"] for row in losses) - 1.0
    if losses and overshoot > 0:
        largest = max(losses, key=lambda row: row["loss_share"])
        largest["loss_share"] = round(largest["loss_share"] - overshoot, 6)

    losses.sort(key=lambda row: (-row["click_loss"], row["cluster"]))
    return losses


def dominant_cluster(
    cluster_losses: List[Dict[str, Any]],
    config: Dict[str, Any],
) -> Optional[Dict[str, Any]]:
    """The top cluster if its loss share meets the threshold, else None."""
    if not cluster_losses:
        return None
    top = cluster_losses[0]
    if top["loss_share"] >= config["thresholds"]["cluster_loss_share"]:
        return top
    return None


def total_click_loss(cluster_losses: List[Dict[str, Any]]) -> float:
    return round(sum(row["click_loss"] for row in cluster_losses), 2)
