"""Shared test fixtures for Traffic Doctor tests."""

from datetime import date, timedelta

import pytest

from traffic_doctor.config import load_config
from traffic_doctor.store import MetricStore, RunStore


AS_OF = "2024-05-20"
# With the default 3/14-day windows:
#   current  = 2024-05-18 .. 2024-05-20
#   baseline = 2024-05-04 .. 2024-05-17
CURRENT_DAYS = 3
BASELINE_DAYS = 14


def window_days(as_of: str = AS_OF):
    """Return (baseline_days, current_days) as ISO date lists."""
    end = date.fromisoformat(as_of)
    current = [(end - timedelta(days=i)).isoformat() for i in range(CURRENT_DAYS - 1, -1, -1)]
    first_current = end - timedelta(days=CURRENT_DAYS - 1)
    baseline = [
        (first_current - timedelta(days=i)).isoformat()
        for i in range(BASELINE_DAYS, 0, -1)
    ]
    return baseline, current


def make_page_rows(pages, as_of: str = AS_OF, impressions_per_click: float = 10.0, position: float = 5.0):
    """Per-page daily search-console rows.

    Args:
        pages: {page_path: (baseline_daily_clicks, current_daily_clicks)} or
            {page_path: (baseline_clicks, current_clicks, baseline_impr, current_impr)}.
            Values are constant per day, so baseline std is 0 and only the
            percentage rule can fire.
    """
    baseline, current = window_days(as_of)
    rows = []
    for path, values in pages.items():
        if len(values) == 2:
            base_clicks, cur_clicks = values
            base_impr = base_clicks * impressions_per_click
            cur_impr = cur_clicks * impressions_per_click
        else:
            base_clicks, cur_clicks, base_impr, cur_impr = values
        for day in baseline:
            rows.append({
                "date": day, "page_path": path, "clicks": base_clicks,
                "impressions": base_impr, "position": position,
            })
        for day in current:
            rows.append({
                "date": day, "page_path": path, "clicks": cur_clicks,
                "impressions": cur_impr, "position": position,
            })
    return rows


def make_query_rows(queries, as_of: str = AS_OF):
    """{query: (baseline_daily_clicks, current_daily_clicks)} -> daily rows."""
    baseline, current = window_days(as_of)
    rows = []
    for query, (base_clicks, cur_clicks) in queries.items():
        rows += [{"date": d, "query": query, "clicks": base_clicks, "impressions": base_clicks * 10} for d in baseline]
        rows += [{"date": d, "query": query, "clicks": cur_clicks, "impressions": cur_clicks * 10} for d in current]
    return rows


def make_ga4_rows(baseline_sessions: float, current_sessions: float, as_of: str = AS_OF, landing_path: str = "/"):
    baseline, current = window_days(as_of)
    rows = []
    for days, sessions in ((baseline, baseline_sessions), (current, current_sessions)):
        for day in days:
            rows.append({
                "date": day, "landing_path": landing_path,
                "sessions": sessions, "users": sessions * 0.8,
            })
    return rows


def make_check(url: str, **overrides):
    """A page check that passes everything unless overridden."""
    check = {
        "date": AS_OF,
        "url": url,
        "status_code": 200,
        "canonical": url,
        "meta_robots": "index,follow",
        "robots_disallow": "",
        "body_text_length": 1500,
        "has_structured_data": True,
        "has_ga4_tag": True,
        "has_ads_tag": True,
        "internal_links_in": 12,
    }
    check.update(overrides)
    return check


@pytest.fixture
def config():
    """Packaged analysis config."""
    return load_config()


@pytest.fixture
def run_store():
    return RunStore()


@pytest.fixture
def robots_store():
    """Clicks 500/day -> 300/day (-40%); 80% of the loss in /services/*,
    where robots.txt now carries 'Disallow: /services/'. Impressions and
    analytics sessions stay flat."""
    pages = {
        "/services/knee-pain": (200, 40, 2000, 2000),
        "/blog/running-tips": (150, 110, 1500, 1500),
        "/": (150, 150, 1500, 1500),
    }
    checks = [
        make_check("/services/knee-pain", robots_disallow="/services/"),
        make_check("/blog/running-tips"),
        make_check("/"),
    ]
    return MetricStore({
        "gsc_pages": make_page_rows(pages),
        "gsc_queries": make_query_rows({"knee pain treatment": (120, 20), "running tips": (80, 60)}),
        "ga4": make_ga4_rows(450, 450),
        "page_checks": checks,
    })


@pytest.fixture
def ctr_store():
    """Impressions flat, clicks -35% spread evenly over three clusters."""
    pages = {
        "/services/knee-pain": (100, 65, 2000, 2000),
        "/blog/running-tips": (100, 65, 2000, 2000),
        "/products/brace": (100, 65, 2000, 2000),
    }
    return MetricStore({
        "gsc_pages": make_page_rows(pages),
        "gsc_queries": make_query_rows({"knee brace": (150, 90)}),
        "ga4": make_ga4_rows(270, 180),
        "page_checks": [make_check(p) for p in pages],
    })


@pytest.fixture
def tracking_store():
    """Search console flat; analytics sessions -90%; GA4 tag missing."""
    pages = {"/services/knee-pain": (100, 100), "/blog/running-tips": (100, 100)}
    return MetricStore({
        "gsc_pages": make_page_rows(pages),
        "gsc_queries": make_query_rows({"knee pain": (100, 100)}),
        "ga4": make_ga4_rows(500, 50),
        "page_checks": [make_check(p, has_ga4_tag=False) for p in pages],
    })


@pytest.fixture
def flat_store():
    """Nothing moved."""
    pages = {"/services/knee-pain": (100, 100), "/blog/running-tips": (50, 50)}
    return MetricStore({
        "gsc_pages": make_page_rows(pages),
        "gsc_queries": make_query_rows({"knee pain": (100, 100)}),
        "ga4": make_ga4_rows(300, 300),
        "page_checks": [make_check(p) for p in pages],
    })
