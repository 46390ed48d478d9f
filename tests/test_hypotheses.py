"""Tests for hypothesis generation, confidence scoring and ranking."""

import pytest

from conftest import AS_OF, make_check, make_ga4_rows, make_page_rows
from traffic_doctor.anomaly import detect_anomalies, detect_step_change
from traffic_doctor.cluster_loss import compute_cluster_losses
from traffic_doctor.clusters import classify
from traffic_doctor.config import load_config
from traffic_doctor.errors import ConfigError
from traffic_doctor.hypotheses import (
    EVALUATORS,
    build_context,
    evidence,
    generate_hypotheses,
    rank_hypotheses,
    score_confidence,
)
from traffic_doctor.schema import derive_page_checks
from traffic_doctor.windows import (
    compute_cluster_windows,
    compute_deltas,
    compute_top_losing_pages,
    daily_series,
    resolve_windows,
)


def _context(config, pages, ga4=None, checks=(), year_ago_pages=None):
    window = resolve_windows(AS_OF, config)
    page_rows = make_page_rows(pages)
    deltas = compute_deltas(page_rows, ga4, window, config)
    cluster_windows = compute_cluster_windows(page_rows, window, config)
    detection = detect_anomalies(deltas, cluster_windows, config)
    losses = compute_cluster_losses(cluster_windows)
    derived = derive_page_checks(checks, config["thresholds"]["min_text_length"])
    for check in derived:
        check["cluster"] = classify(check["path"], config)
    year_ago = None
    if year_ago_pages is not None:
        year_ago = compute_deltas(make_page_rows(year_ago_pages), None, window, config)
    return build_context(
        deltas, detection, losses, derived, config,
        top_losing_pages=compute_top_losing_pages(page_rows, window, config),
        step_change=detect_step_change(daily_series(page_rows, ("clicks",))["clicks"]),
        year_ago_deltas=year_ago,
    )


def _by_key(hypotheses):
    return {h["hypothesis_key"]: h for h in hypotheses}


def _block(strength):
    return evidence("metric", f"{strength} signal", {}, strength)


class TestScoreConfidence:
    """Strength mix -> bucket table."""

    @pytest.mark.parametrize("support,against,expected", [
        ("strong", None, "high"),
        ("strong", "weak", "high"),
        ("strong", "moderate", "medium"),
        ("strong", "strong", "low"),
        ("moderate", None, "medium"),
        ("moderate", "weak", "medium"),
        ("moderate", "moderate", "low"),
        ("weak", None, "low"),
    ])
    def test_table(self, support, against, expected):
        disconfirm = [_block(against)] if against else []
        assert score_confidence([_block(support)], disconfirm)["level"] == expected

    def test_no_support_not_emitted(self):
        assert score_confidence([], [_block("strong")]) is None

    def test_strongest_block_counts(self):
        result = score_confidence([_block("weak"), _block("strong")], [])
        assert result["level"] == "high"
        assert result["would_downgrade_if"]

    def test_low_says_what_would_upgrade(self):
        result = score_confidence([_block("strong")], [_block("strong")])
        assert "disconfirming" in result["would_upgrade_if"]

    def test_unknown_strength_rejected(self):
        with pytest.raises(ValueError):
            evidence("metric", "x", {}, "certain")


class TestRobotsScenario:
    """Robots block on a dominant cluster."""

    @pytest.fixture
    def hypotheses(self, config):
        context = _context(
            config,
            {"/services/knee-pain": (200, 40), "/blog/running-tips": (150, 110), "/": (150, 150)},
            make_ga4_rows(450, 270),
            [make_check("/services/knee-pain", robots_disallow="/services/"), make_check("/blog/running-tips")],
        )
        return generate_hypotheses(context, config)

    def test_robots_ranked_first_high_p0(self, hypotheses):
        top = hypotheses[0]
        assert top["rank"] == 1
        assert top["hypothesis_key"] == "ROBOTS_OR_NOINDEX"
        assert top["confidence"] == "high"
        assert top["priority"] == "P0"
        assert top["params"]["disallow_rules"] == ["/services/"]
        assert top["params"]["cluster"] == "/services/*"

    def test_content_intent_disconfirmed_by_technical_finding(self, hypotheses):
        content = _by_key(hypotheses)["CONTENT_INTENT_MISMATCH"]
        assert content["confidence"] == "low"
        assert content["disconfirmed_by"][0]["strength"] == "strong"

    def test_ranks_contiguous(self, hypotheses):
        assert [h["rank"] for h in hypotheses] == list(range(1, len(hypotheses) + 1))

    def test_missing_data_lists_confidence_changes(self, hypotheses):
        assert any(item.startswith("Would lower confidence") for item in hypotheses[0]["missing_data"])


class TestEvaluators:
    """Individual catalog keys."""

    def test_every_catalog_key_has_an_evaluator(self, config):
        assert set(config["hypothesis_catalog"]) == set(EVALUATORS)

    def test_serp_shift_on_ctr_loss(self, config):
        context = _context(config, {
            "/services/a": (100, 65, 2000, 2000),
            "/blog/b": (100, 65, 2000, 2000),
            "/products/c": (100, 65, 2000, 2000),
        })
        serp = _by_key(generate_hypotheses(context, config))["SERP_LAYOUT_OR_CTR_SHIFT"]
        assert serp["confidence"] == "medium"
        assert serp["priority"] == "P2"

    def test_tracking_gap_high_confidence(self, config):
        context = _context(
            config, {"/services/a": (100, 100)}, make_ga4_rows(500, 50),
            [make_check("/services/a", has_ga4_tag=False)],
        )
        tracking = _by_key(generate_hypotheses(context, config))["TRACKING_TAG_OR_GA4_CONFIG"]
        assert tracking["confidence"] == "high"
        assert tracking["params"]["misfired_tag"] == "ga4"

    def test_missing_ads_tag_routes_to_ads(self, config):
        context = _context(
            config, {"/services/a": (100, 100)}, make_ga4_rows(500, 50),
            [make_check("/services/a", has_ads_tag=False)],
        )
        tracking = _by_key(generate_hypotheses(context, config))["TRACKING_TAG_OR_GA4_CONFIG"]
        assert tracking["params"]["misfired_tag"] == "ads"

    def test_analytics_only_drop_supports_tracking(self, config):
        context = _context(config, {"/services/a": (100, 80)}, make_ga4_rows(400, 200))
        tracking = _by_key(generate_hypotheses(context, config))["TRACKING_TAG_OR_GA4_CONFIG"]
        assert tracking["confidence"] == "medium"
        assert tracking["evidence"][0]["type"] == "comparison"

    def test_serp_shift_disconfirmed_by_technical_failure_in_cluster(self, config):
        context = _context(
            config,
            {
                "/services/a": (200, 40, 2000, 2000),
                "/blog/b": (150, 110, 1500, 1500),
                "/": (150, 150, 1500, 1500),
            },
            make_ga4_rows(450, 450),
            [make_check("/services/a", robots_disallow="/services/")],
        )
        serp = _by_key(generate_hypotheses(context, config))["SERP_LAYOUT_OR_CTR_SHIFT"]
        assert serp["confidence"] == "low"
        assert serp["disconfirmed_by"][-1]["data"]["cluster"] == "/services/*"

    def test_thin_content_strong_with_five_pages(self, config):
        checks = [make_check(f"/services/p{i}", body_text_length=90) for i in range(5)]
        context = _context(config, {"/services/p0": (200, 40), "/blog/b": (100, 100)}, None, checks)
        thin = _by_key(generate_hypotheses(context, config))["SSR_OR_THIN_CONTENT_REGRESSION"]
        assert thin["evidence"][0]["strength"] == "strong"
        assert thin["confidence"] == "high"

    def test_technical_finding_without_drop_is_downgraded(self, config):
        context = _context(
            config, {"/a": (100, 100)}, None,
            [make_check("/a", status_code=500)],
        )
        redirect = _by_key(generate_hypotheses(context, config))["REDIRECT_CHAIN_OR_HTTP_CHANGE"]
        assert redirect["confidence"] == "medium"

    def test_structured_data_disconfirmed_without_ctr_drop(self, config):
        context = _context(config, {"/a": (100, 100)}, None, [make_check("/a", has_structured_data=False)])
        structured = _by_key(generate_hypotheses(context, config))["STRUCTURED_DATA_BREAK"]
        assert structured["confidence"] == "low"

    def test_seasonality_needs_year_ago(self, config):
        pages = {"/services/a": (100, 60), "/blog/b": (100, 60)}
        without = _by_key(generate_hypotheses(_context(config, pages), config))
        assert "SEASONALITY" not in without

        seasonal = _context(config, pages, year_ago_pages={"/services/a": (100, 62), "/blog/b": (100, 62)})
        hypothesis = _by_key(generate_hypotheses(seasonal, config))["SEASONALITY"]
        assert hypothesis["evidence"][0]["strength"] == "strong"

    def test_google_update_when_loss_is_spread(self, config):
        context = _context(config, {"/services/a": (100, 50), "/blog/b": (100, 50), "/c": (100, 50)})
        update = _by_key(generate_hypotheses(context, config))["GOOGLE_UPDATE_OR_INDUSTRY_WIDE"]
        assert update["confidence"] == "low"
        assert update["priority"] == "P3"

    def test_nothing_to_explain(self, config):
        context = _context(config, {"/a": (100, 100)}, make_ga4_rows(100, 100), [make_check("/a")])
        assert generate_hypotheses(context, config) == []

    def test_catalog_key_without_evaluator(self, config):
        config["hypothesis_catalog"] = config["hypothesis_catalog"] + ["UNKNOWN_KEY"]
        context = _context(config, {"/a": (100, 100)})
        with pytest.raises(ConfigError, match="UNKNOWN_KEY"):
            generate_hypotheses(context, config)


class TestRanking:
    """Confidence, then priority tier, then catalog order."""

    def _h(self, key, confidence):
        return {"hypothesis_key": key, "confidence": confidence, "rank": 0}

    def test_confidence_first(self, config):
        ranked = rank_hypotheses([
            self._h("ROBOTS_OR_NOINDEX", "low"),
            self._h("SEASONALITY", "high"),
        ], config)
        assert [h["hypothesis_key"] for h in ranked] == ["SEASONALITY", "ROBOTS_OR_NOINDEX"]

    def test_priority_breaks_confidence_tie(self, config):
        ranked = rank_hypotheses([
            self._h("SERP_LAYOUT_OR_CTR_SHIFT", "medium"),
            self._h("INTERNAL_LINKING_BREAK", "medium"),
        ], config)
        assert ranked[0]["hypothesis_key"] == "INTERNAL_LINKING_BREAK"

    def test_catalog_order_breaks_priority_tie(self, config):
        ranked = rank_hypotheses([
            self._h("SSR_OR_THIN_CONTENT_REGRESSION", "high"),
            self._h("ROBOTS_OR_NOINDEX", "high"),
        ], config)
        assert [h["rank"] for h in ranked] == [1, 2]
        assert ranked[0]["hypothesis_key"] == "ROBOTS_OR_NOINDEX"

    def test_identical_inputs_identical_order(self):
        config = load_config()
        pages = {"/services/a": (200, 40), "/blog/b": (150, 110)}
        checks = [make_check("/services/a", meta_robots="noindex"), make_check("/blog/b", internal_links_in=0)]
        first = generate_hypotheses(_context(config, pages, None, checks), config)
        second = generate_hypotheses(_context(config, pages, None, checks), config)
        assert first == second
