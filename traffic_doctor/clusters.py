#!/usr/bin/env python3
"""Page cluster classifier: map a page path to its structural template.

Rules come from config["cluster_rules"] and are tested in declaration
order; the first match wins. Unmatched paths fall back to
"/{first_segment}/*", or "/other" when the path has no segment. The
function is total: any string (including "" or a full URL) gets a
non-empty cluster id.

Usage (CLI):
    python -m traffic_doctor.clusters /services/knee-pain /contact
"""

from __future__ import annotations

import argparse
import json
from typing import Any, Dict, Iterable, List

from traffic_doctor.schema import extract_path

FALLBACK_CLUSTER = "/other"


def classify(path: str, config: Dict[str, Any]) -> str:
    """Return the cluster id for a page path."""
    page_path = extract_path(path or "")
    for rule in config.get("cluster_rules", []):
        if rule["regex"].search(page_path):
            return rule["cluster"]

    first_segment = next((s for s in page_path.split("/") if s), None)
    return f"/{first_segment}/*" if first_segment else FALLBACK_CLUSTER


def classify_many(paths: Iterable[str], config: Dict[str, Any]) -> Dict[str, str]:
    return {p: classify(p, config) for p in paths}


def group_rows_by_cluster(
    rows: Iterable[Dict[str, Any]],
    config: Dict[str, Any],
    path_field: str = "page_path",
) -> Dict[str, List[Dict[str, Any]]]:
    """Group page-level rollup rows by cluster id."""
    groups: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        cluster = classify(str(row.get(path_field) or ""), config)
        groups.setdefault(cluster, []).append(row)
    return groups


def main() -> None:
    from traffic_doctor.config import load_config

    parser = argparse.ArgumentParser(description="Classify page paths into clusters")
    parser.add_argument("paths", nargs="*", help="Page paths or URLs")
    parser.add_argument("--config", default=None, help="YAML config (default: packaged)")
    args = parser.parse_args()

    config = load_config(args.config)
    print(json.dumps(classify_many(args.paths, config), indent=2))


if __name__ == "__main__":
    main()
