"""Tests for the versioned analysis config loader."""

import pytest
import yaml

from traffic_doctor.config import load_config, public_view
from traffic_doctor.errors import ConfigError


class TestLoadConfig:
    """Packaged defaults load and carry derived tables."""

    def test_packaged_defaults(self, config):
        assert config["version"] == "2024.1"
        assert config["windows"] == {"current": 3, "baseline": 14}
        assert config["thresholds"]["drop_pct"] == -30.0
        assert config["thresholds"]["cluster_loss_share"] == 0.6
        assert config["min_zscore_samples"] == 7
        assert config["tickets"]["max_tickets"] == 5

    def test_priority_table_is_total_over_catalog(self, config):
        assert set(config["priority_by_key"]) == set(config["hypothesis_catalog"])
        assert len(config["hypothesis_catalog"]) == 11

    def test_priority_tiers(self, config):
        tiers = config["priority_by_key"]
        assert tiers["ROBOTS_OR_NOINDEX"] == "P0"
        assert tiers["REDIRECT_CHAIN_OR_HTTP_CHANGE"] == "P1"
        assert tiers["TRACKING_TAG_OR_GA4_CONFIG"] == "P1"
        assert tiers["SERP_LAYOUT_OR_CTR_SHIFT"] == "P2"
        assert tiers["SEASONALITY"] == "P3"

    def test_cluster_rules_compiled_in_order(self, config):
        rules = config["cluster_rules"]
        assert rules[0]["cluster"] == "/services/*"
        assert rules[0]["regex"].search("/services/knee")

    def test_overrides_deep_merge(self):
        config = load_config(overrides={"thresholds": {"drop_pct": -20.0}})
        assert config["thresholds"]["drop_pct"] == -20.0
        # Siblings survive the merge.
        assert config["thresholds"]["z_score"] == -2.0

    def test_public_view_drops_compiled_entries(self, config):
        view = public_view(config)
        assert "cluster_rules" not in view
        assert "priority_by_key" not in view
        assert view["version"] == config["version"]


class TestValidation:
    """Incomplete rule tables fail at load time."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "missing.yaml"))

    def test_key_without_priority(self):
        with pytest.raises(ConfigError, match="no priority tier"):
            load_config(overrides={"priority_table": {"P3": ["GOOGLE_UPDATE_OR_INDUSTRY_WIDE"]}})

    def test_key_in_two_tiers(self, config):
        table = {tier: list(keys) for tier, keys in config["priority_table"].items()}
        table["P3"].append("ROBOTS_OR_NOINDEX")
        with pytest.raises(ConfigError, match="both"):
            load_config(overrides={"priority_table": table})

    def test_invalid_owner(self):
        with pytest.raises(ConfigError, match="owner"):
            load_config(overrides={"owner_table": {"SEASONALITY": "MARKETING"}})

    def test_invalid_cluster_pattern(self):
        with pytest.raises(ConfigError, match="Invalid cluster pattern"):
            load_config(overrides={"cluster_patterns": [{"pattern": "^/(", "cluster": "/x/*"}]})

    def test_non_positive_window(self):
        with pytest.raises(ConfigError, match="windows.current"):
            load_config(overrides={"windows": {"current": 0}})

    def test_loss_share_out_of_range(self):
        with pytest.raises(ConfigError, match="cluster_loss_share"):
            load_config(overrides={"thresholds": {"cluster_loss_share": 1.5}})

    def test_missing_ticket_template(self, config, tmp_path):
        document = public_view(config)
        del document["ticket_templates"]["SEASONALITY"]
        path = tmp_path / "analysis.yaml"
        path.write_text(yaml.safe_dump(document))
        with pytest.raises(ConfigError, match="ticket template"):
            load_config(str(path))

    def test_config_error_is_value_error(self):
        assert issubclass(ConfigError, ValueError)
