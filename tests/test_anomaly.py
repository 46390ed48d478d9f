"""Tests for anomaly detection."""

import pytest

from conftest import AS_OF, make_ga4_rows, make_page_rows
from traffic_doctor.anomaly import (
    anomaly_for,
    check_against_baseline,
    detect_anomalies,
    detect_step_change,
    evaluate_significance,
)
from traffic_doctor.windows import (
    compute_cluster_windows,
    compute_deltas,
    compute_metric_delta,
    resolve_windows,
)


def _detect(config, page_rows, ga4_rows=None):
    window = resolve_windows(AS_OF, config)
    deltas = compute_deltas(page_rows, ga4_rows, window, config)
    clusters = compute_cluster_windows(page_rows, window, config)
    return deltas, detect_anomalies(deltas, clusters, config)


class TestBaselineComparison:
    """z-score of the current mean against the baseline distribution."""

    def test_within_normal_range(self):
        result = check_against_baseline(98.0, "clicks", None, {"mean": 100.0, "std": 5.0})
        assert result["status"] == "normal"

    def test_outside_normal_range(self):
        result = check_against_baseline(80.0, "clicks", None, {"mean": 100.0, "std": 5.0})
        assert result["status"] == "anomalous"
        assert result["z_score"] == pytest.approx(-4.0)

    def test_zero_std_is_undefined(self):
        result = check_against_baseline(50.0, "clicks", None, {"mean": 100.0, "std": 0.0})
        assert result["status"] == "undefined"
        assert result["z_score"] is None

    def test_lower_is_better_flips_sign(self):
        result = check_against_baseline(
            9.0, "position", None, {"mean": 5.0, "std": 1.0}, lower_is_better=True
        )
        assert result["z_score"] == pytest.approx(-4.0)
        assert result["status"] == "anomalous"


class TestSignificance:
    """Percentage rule OR statistical rule."""

    def test_pct_rule_without_zscore(self, config):
        # Baseline mean 1000, current 600: flagged regardless of z-score availability.
        delta = compute_metric_delta("clicks", [600.0] * 3, [1000.0] * 14, config)
        verdict = evaluate_significance(delta, config)
        assert verdict["significant"] is True
        assert verdict["rules"] == ["pct_delta"]
        assert verdict["z_score"] is None

    def test_pct_rule_with_short_baseline(self, config):
        delta = compute_metric_delta("clicks", [600.0] * 3, [900.0, 1100.0, 1000.0], config)
        verdict = evaluate_significance(delta, config)
        assert verdict["significant"] is True
        assert "z_score" not in verdict["rules"]

    def test_zscore_rule_alone(self, config):
        baseline = [100.0, 102.0, 98.0, 101.0, 99.0, 100.0, 100.0, 101.0, 99.0, 100.0]
        delta = compute_metric_delta("clicks", [90.0] * 3, baseline, config)
        verdict = evaluate_significance(delta, config)
        assert verdict["rules"] == ["z_score"]
        assert verdict["z_score"] < -2.0

    def test_unavailable_is_insufficient(self, config):
        delta = compute_metric_delta("clicks", [600.0] * 3, [], config)
        verdict = evaluate_significance(delta, config)
        assert verdict == {"significant": False, "rules": [], "z_score": None, "insufficient": True}


class TestDetectAnomalies:
    """Overall and per-cluster anomaly records."""

    def test_clicks_drop_anomaly(self, config):
        _, detection = _detect(config, make_page_rows({"/services/a": (200, 40), "/blog/b": (300, 260)}))
        clicks = anomaly_for(detection["anomalies"], "clicks")
        assert clicks["anomaly_type"] == "traffic_drop"
        assert clicks["delta_pct"] == pytest.approx(-40.0)
        assert clicks["scope"] == {"channel": "Organic Search"}
        assert clicks["start_date"] == "2024-05-18"
        assert detection["has_drop"] is True

    def test_cluster_anomaly_scoped(self, config):
        _, detection = _detect(config, make_page_rows({"/services/a": (200, 40), "/blog/b": (300, 260)}))
        cluster_drops = [a for a in detection["anomalies"] if a["anomaly_type"] == "page_cluster_drop"]
        assert {a["scope"]["page_cluster"] for a in cluster_drops} == {"/services/*"}

    def test_no_anomaly_without_baseline(self, config):
        rows = [r for r in make_page_rows({"/a": (100, 10)}) if r["date"] >= "2024-05-18"]
        _, detection = _detect(config, rows)
        assert detection["anomalies"] == []
        assert detection["has_drop"] is False
        assert {i["metric"] for i in detection["insufficient_data"]} >= {"clicks", "impressions"}

    def test_flat_data_has_no_anomalies(self, config):
        _, detection = _detect(config, make_page_rows({"/a": (100, 100)}), make_ga4_rows(200, 200))
        assert detection["anomalies"] == []

    def test_tracking_gap(self, config):
        _, detection = _detect(config, make_page_rows({"/a": (100, 100)}), make_ga4_rows(500, 50))
        assert detection["tracking_gap"] is True
        gap = [a for a in detection["anomalies"] if a["anomaly_type"] == "tracking_gap"]
        assert len(gap) == 1
        assert gap[0]["delta_pct"] == pytest.approx(-90.0)

    def test_no_tracking_gap_when_clicks_fell_too(self, config):
        _, detection = _detect(config, make_page_rows({"/a": (100, 50)}), make_ga4_rows(500, 50))
        assert detection["tracking_gap"] is False

    def test_position_regression(self, config):
        window = resolve_windows(AS_OF, config)
        rows = make_page_rows({"/a": (100, 100)}, position=4.0)
        for row in rows:
            if row["date"] >= window["current_start"]:
                row["position"] = 9.0
        _, detection = _detect(config, rows)
        position = anomaly_for(detection["anomalies"], "position")
        assert position["anomaly_type"] == "position_drop"


class TestStepChange:
    """Overnight step vs. gradual decline."""

    def test_detects_overnight_step_change(self):
        daily = [500.0] * 14 + [300.0] * 3
        result = detect_step_change(daily)
        assert result["detected"] is True
        assert result["pattern"] == "step"
        assert result["change_day_index"] == 14
        assert result["magnitude_pct"] == pytest.approx(40.0)

    def test_gradual_decline(self):
        daily = [100.0, 96.0, 92.0, 88.0, 84.0, 80.0, 76.0]
        result = detect_step_change(daily)
        assert result["detected"] is False
        assert result["pattern"] == "gradual"

    def test_flat(self):
        assert detect_step_change([100.0] * 10)["pattern"] == "flat"

    def test_too_short(self):
        assert detect_step_change([100.0])["detected"] is False
