#!/usr/bin/env python3
"""Versioned analysis configuration: load, merge overrides, validate.

Every stage receives the config dict explicitly, so a run is reproducible
from (inputs, config version). Nothing in the pipeline reads module-level
thresholds.

The default document lives next to this module in data/analysis.yaml.
Validation runs at load time: a catalog key without exactly one priority
tier, an owner, or a ticket template is a ConfigError, never a silent
default at ticket time.

Usage (import):
    from traffic_doctor.config import load_config
    config = load_config(overrides={"thresholds": {"drop_pct": -25.0}})

Usage (CLI):
    python -m traffic_doctor.config --path custom.yaml
"""

from __future__ import annotations

import argparse
import json
import re
import sys
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from traffic_doctor.errors import ConfigError


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "data" / "analysis.yaml"

PRIORITY_TIERS = ("P0", "P1", "P2", "P3")
OWNERS = ("SEO", "DEV", "ADS")
CONFIDENCE_LEVELS = ("high", "medium", "low")


# ──────────────────────────────────────────────────
# Loading
# ──────────────────────────────────────────────────

def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge overrides into a copy of base (overrides win)."""
    merged = deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def _compile_cluster_patterns(raw: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    compiled = []
    for entry in raw:
        pattern = entry.get("pattern")
        cluster = entry.get("cluster")
        if not pattern or not cluster:
            raise ConfigError(f"Cluster rule needs 'pattern' and 'cluster': {entry!r}")
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            raise ConfigError(f"Invalid cluster pattern {pattern!r}: {exc}") from exc
        compiled.append({"pattern": pattern, "cluster": cluster, "regex": regex})
    return compiled


def _invert_priority_table(table: Dict[str, List[str]]) -> Dict[str, str]:
    """Turn {tier: [keys]} into {key: tier}, rejecting keys listed twice."""
    by_key: Dict[str, str] = {}
    for tier, keys in table.items():
        if tier not in PRIORITY_TIERS:
            raise ConfigError(f"Unknown priority tier {tier!r}")
        for key in keys or []:
            if key in by_key:
                raise ConfigError(
                    f"Hypothesis key {key} assigned to both {by_key[key]} and {tier}"
                )
            by_key[key] = tier
    return by_key


def validate_config(config: Dict[str, Any]) -> None:
    """Raise ConfigError if the document cannot drive a run.

    Checks that rule tables are exhaustive over the hypothesis catalog,
    so missing mappings surface at initialization rather than mid-run.
    """
    windows = config.get("windows", {})
    for name in ("current", "baseline"):
        size = windows.get(name)
        if not isinstance(size, int) or size <= 0:
            raise ConfigError(f"windows.{name} must be a positive integer, got {size!r}")

    thresholds = config.get("thresholds", {})
    for name in ("drop_pct", "z_score", "cluster_loss_share", "min_text_length"):
        if name not in thresholds:
            raise ConfigError(f"thresholds.{name} is required")
    if not 0.0 < thresholds["cluster_loss_share"] <= 1.0:
        raise ConfigError("thresholds.cluster_loss_share must be in (0, 1]")

    catalog = config.get("hypothesis_catalog") or []
    if len(set(catalog)) != len(catalog):
        raise ConfigError("hypothesis_catalog contains duplicate keys")

    priority_by_key = config["priority_by_key"]
    owner_table = config.get("owner_table", {})
    templates = config.get("ticket_templates", {})
    for key in catalog:
        if key not in priority_by_key:
            raise ConfigError(f"Hypothesis key {key} has no priority tier")
        if owner_table.get(key) not in OWNERS:
            raise ConfigError(f"Hypothesis key {key} has no valid owner")
        if key not in templates:
            raise ConfigError(f"Hypothesis key {key} has no ticket template")
    unknown = set(priority_by_key) - set(catalog)
    if unknown:
        raise ConfigError(f"Priority table lists keys outside the catalog: {sorted(unknown)}")

    for tag, owner in (config.get("tracking_owner_rules") or {}).items():
        if owner not in OWNERS:
            raise ConfigError(f"tracking_owner_rules.{tag} has invalid owner {owner!r}")

    factors = config.get("tickets", {}).get("recoverable_click_factor", {})
    for level in CONFIDENCE_LEVELS:
        if level not in factors:
            raise ConfigError(f"tickets.recoverable_click_factor.{level} is required")


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Load the analysis config, apply overrides, compile and validate it.

    Args:
        path: YAML document to load. Defaults to the packaged analysis.yaml.
        overrides: Nested dict deep-merged over the loaded document.

    Returns:
        Config dict with two derived keys added:
            - cluster_rules: cluster_patterns with compiled "regex" entries
            - priority_by_key: {hypothesis_key: "P0".."P3"}
    """
    yaml_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not yaml_path.exists():
        raise ConfigError(f"Config file not found: {yaml_path}")

    with open(yaml_path, "r") as f:
        document = yaml.safe_load(f) or {}
    if not isinstance(document, dict):
        raise ConfigError(f"Config root must be a mapping: {yaml_path}")

    config = _deep_merge(document, overrides or {})
    config.setdefault("version", "unversioned")
    config["cluster_rules"] = _compile_cluster_patterns(config.get("cluster_patterns", []))
    config["priority_by_key"] = _invert_priority_table(config.get("priority_table", {}))

    validate_config(config)
    return config


def public_view(config: Dict[str, Any]) -> Dict[str, Any]:
    """Config without derived, non-serializable entries (compiled regexes)."""
    return {k: v for k, v in config.items() if k not in ("cluster_rules", "priority_by_key")}


def main() -> None:
    parser = argparse.ArgumentParser(description="Validate and print a diagnosis config")
    parser.add_argument("--path", default=None, help="YAML config (default: packaged)")
    args = parser.parse_args()

    try:
        config = load_config(args.path)
    except ConfigError as exc:
        print(json.dumps({"error": str(exc)}))
        sys.exit(1)

    print(json.dumps(public_view(config), indent=2))


if __name__ == "__main__":
    main()
