"""Tests for configuration loading and validation."""

import pytest

from tradingbots.services.config import (
    DEFAULT_CONFIG,
    ConfigService,
    ConfigValidationException,
)


def load(tmp_path, text):
    config_file = tmp_path / "config.yaml"
    config_file.write_text(text)
    service = ConfigService(str(config_file))
    return service, service.load_and_validate()


def error_paths(exc_info):
    return [e.path for e in exc_info.value.errors]


class TestConfigLoading:
    """Test loading and merging over defaults."""

    def test_missing_file_uses_defaults(self, tmp_path):
        service = ConfigService(str(tmp_path / "absent.yaml"))

        assert service.load_and_validate() == DEFAULT_CONFIG
        assert service.get("bots.market_spread.stale_order_seconds") == 60

    def test_empty_file_uses_defaults(self, tmp_path):
        _, config = load(tmp_path, "")

        assert config == DEFAULT_CONFIG

    def test_values_merge_over_defaults(self, tmp_path):
        service, config = load(tmp_path, "bots:\n  grid:\n    interval_seconds: 2\n")

        assert config["bots"]["grid"]["interval_seconds"] == 2
        assert config["bots"]["arbitrage"]["check_interval_seconds"] == 30
        assert service.get("activity_log.queue_size") == 1000

    def test_defaults_are_not_mutated(self, tmp_path):
        service, _ = load(tmp_path, "activity_log:\n  queue_size: 5\n")
        service._config["activity_log"]["queue_size"] = 7

        assert DEFAULT_CONFIG["activity_log"]["queue_size"] == 1000

    def test_nullable_soft_shutdown_timeout(self, tmp_path):
        service, _ = load(tmp_path, "bots:\n  market_spread:\n    soft_shutdown_timeout_seconds: null\n")

        assert service.get("bots.market_spread.soft_shutdown_timeout_seconds") is None

    def test_get_with_missing_key(self, tmp_path):
        service, _ = load(tmp_path, "")

        assert service.get("bots.scalper.interval_seconds") is None
        assert service.get("bots.grid.interval_seconds.value", 3) == 3


class TestConfigValidation:
    """Test schema violations are reported together."""

    def test_unknown_key(self, tmp_path):
        with pytest.raises(ConfigValidationException) as exc_info:
            load(tmp_path, "bots:\n  scalper:\n    interval_seconds: 1\n")

        assert error_paths(exc_info) == ["bots.scalper"]

    def test_wrong_types(self, tmp_path):
        with pytest.raises(ConfigValidationException) as exc_info:
            load(tmp_path, (
                "activity_log:\n  queue_size: many\n"
                "exchanges:\n  sandbox: 1\n"
                "database: sqlite\n"
            ))

        assert sorted(error_paths(exc_info)) == ["activity_log.queue_size", "database", "exchanges.sandbox"]

    def test_bool_is_not_a_number(self, tmp_path):
        with pytest.raises(ConfigValidationException) as exc_info:
            load(tmp_path, "bots:\n  grid:\n    interval_seconds: true\n")

        assert error_paths(exc_info) == ["bots.grid.interval_seconds"]

    def test_negative_interval(self, tmp_path):
        with pytest.raises(ConfigValidationException) as exc_info:
            load(tmp_path, "bots:\n  arbitrage:\n    check_interval_seconds: -1\n")

        assert "greater than 0" in exc_info.value.errors[0].message

    @pytest.mark.parametrize("key", [
        "grid:\n    interval_seconds",
        "market_spread:\n    interval_seconds",
        "market_spread:\n    stale_order_seconds",
        "market_spread:\n    soft_shutdown_timeout_seconds",
        "arbitrage:\n    check_interval_seconds",
    ])
    def test_zero_interval_rejected(self, tmp_path, key):
        with pytest.raises(ConfigValidationException) as exc_info:
            load(tmp_path, f"bots:\n  {key}: 0\n")

        assert "greater than 0" in exc_info.value.errors[0].message

    def test_zero_queue_size_means_unbounded(self, tmp_path):
        service, _ = load(tmp_path, "activity_log:\n  queue_size: 0\n  shutdown_timeout_seconds: 0\n")

        assert service.get("activity_log.queue_size") == 0

    def test_negative_queue_size(self, tmp_path):
        with pytest.raises(ConfigValidationException) as exc_info:
            load(tmp_path, "activity_log:\n  queue_size: -1\n")

        assert "below minimum" in exc_info.value.errors[0].message

    def test_log_level_options(self, tmp_path):
        with pytest.raises(ConfigValidationException) as exc_info:
            load(tmp_path, "logging:\n  level: VERBOSE\n")

        assert error_paths(exc_info) == ["logging.level"]

    def test_non_nullable_rejects_null(self, tmp_path):
        with pytest.raises(ConfigValidationException):
            load(tmp_path, "bots:\n  grid:\n    interval_seconds: null\n")

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigValidationException) as exc_info:
            load(tmp_path, "bots: [unclosed\n")

        assert "Invalid YAML" in exc_info.value.errors[0].message

    def test_top_level_must_be_mapping(self, tmp_path):
        with pytest.raises(ConfigValidationException):
            load(tmp_path, "- a\n- b\n")

    def test_failed_load_keeps_previous_config(self, tmp_path):
        service, _ = load(tmp_path, "bots:\n  grid:\n    interval_seconds: 4\n")
        (tmp_path / "config.yaml").write_text("bots:\n  grid:\n    interval_seconds: fast\n")

        with pytest.raises(ConfigValidationException):
            service.load_and_validate()

        assert service.get("bots.grid.interval_seconds") == 4
