#!/usr/bin/env python3
"""Schema normalization for upstream rollups and page checks.

Upstream collaborators export rows with their own field names (camelCase
from the dashboard API, snake_case from warehouse exports, full URLs vs.
paths). This module bridges those aliases to the canonical field names the
analysis stages read, and coerces numeric fields.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse


# Alias -> canonical field name.
FIELD_ALIASES = {
    "pagePath": "page_path",
    "page": "page_path",
    "url": "page_path",
    "landingPath": "landing_path",
    "landing_page": "landing_path",
    "landingPage": "landing_path",
    "avg_position": "position",
    "averagePosition": "position",
    "engagedSessions": "engaged_sessions",
    "statusCode": "status_code",
    "redirectUrl": "redirect_url",
    "metaRobots": "meta_robots",
    "bodyLength": "body_text_length",
    "bodyTextLength": "body_text_length",
    "hasStructuredData": "has_structured_data",
    "hasGa4Tag": "has_ga4_tag",
    "hasAdsTag": "has_ads_tag",
    "robotsTxtDisallow": "robots_disallow",
}

NUMERIC_FIELDS = (
    "clicks", "impressions", "ctr", "position",
    "sessions", "users", "engaged_sessions", "conversions",
)


def to_float(value: Any) -> Optional[float]:
    """Convert values to float safely; return None if unparsable."""
    try:
        if value is None or value == "":
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def to_bool(value: Any) -> Optional[bool]:
    """Parse CSV-style booleans; None when the field is absent or blank."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "y")


def extract_path(url: str) -> str:
    """Return the path component of a URL, or the value as a rooted path."""
    if not url:
        return "/"
    parsed = urlparse(url)
    if parsed.scheme and parsed.netloc:
        return parsed.path or "/"
    return url if url.startswith("/") else f"/{url}"


def normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Map alias keys to canonical names and coerce numeric metrics."""
    normalized = dict(row)
    for alias, canonical in FIELD_ALIASES.items():
        if canonical not in normalized and alias in normalized:
            normalized[canonical] = normalized[alias]

    for field in NUMERIC_FIELDS:
        if field in normalized:
            parsed = to_float(normalized[field])
            normalized[field] = 0.0 if parsed is None else parsed

    for field in ("page_path", "landing_path"):
        if normalized.get(field):
            normalized[field] = extract_path(str(normalized[field]))

    if normalized.get("date"):
        # Accept full timestamps; windows work on calendar days.
        normalized["date"] = str(normalized["date"])[:10]
    return normalized


def normalize_rows(rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Normalize a list of rollup rows."""
    return [normalize_row(r) for r in rows]


# ──────────────────────────────────────────────────
# Page checks
# ──────────────────────────────────────────────────

def _disallow_rules(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value).split(";") if part.strip()]


def derive_page_check(check: Dict[str, Any], min_text_length: int) -> Dict[str, Any]:
    """Turn a raw page check into boolean findings used as evidence.

    Raw fields (all optional): url, status_code, redirect_url, canonical,
    meta_robots, robots_disallow (";"-separated rules), body_text_length,
    has_structured_data, has_ga4_tag, has_ads_tag, internal_links_in.

    Unknown inputs stay None so hypotheses can tell "checked and fine" from
    "not checked".
    """
    row = normalize_row(check)
    url = str(row.get("url") or row.get("page_path") or "")
    path = extract_path(url)

    meta_robots = str(row.get("meta_robots") or "").lower()
    disallows = _disallow_rules(row.get("robots_disallow"))
    blocked_by = next((rule for rule in disallows if path.startswith(rule)), None)

    canonical = row.get("canonical")
    canonical_mismatch = None
    if canonical:
        canonical_mismatch = extract_path(str(canonical)).rstrip("/") != path.rstrip("/")

    redirect_url = row.get("redirect_url")
    redirect_hops = to_float(row.get("redirect_hops"))
    if redirect_hops is None:
        redirect_hops = 1.0 if redirect_url else 0.0

    body_length = to_float(row.get("body_text_length"))
    status_code = to_float(row.get("status_code"))
    internal_links = to_float(row.get("internal_links_in"))

    return {
        "url": url,
        "path": path,
        "status_code": int(status_code) if status_code is not None else None,
        "http_error": status_code is not None and status_code >= 400,
        "has_noindex": "noindex" in meta_robots,
        "robots_blocked": blocked_by is not None,
        "robots_rule": blocked_by,
        "canonical_mismatch": canonical_mismatch,
        "redirect_hops": int(redirect_hops),
        "body_text_length": int(body_length) if body_length is not None else None,
        "thin_content": body_length is not None and body_length < min_text_length,
        "has_structured_data": to_bool(row.get("has_structured_data")),
        "has_ga4_tag": to_bool(row.get("has_ga4_tag")),
        "has_ads_tag": to_bool(row.get("has_ads_tag")),
        "internal_links_in": int(internal_links) if internal_links is not None else None,
    }


def derive_page_checks(
    checks: Iterable[Dict[str, Any]],
    min_text_length: int,
) -> List[Dict[str, Any]]:
    return [derive_page_check(c, min_text_length) for c in checks]
