"""
Tests for configuration loading, validation and export.
"""

import os
from unittest.mock import patch

import pytest
import yaml

from tradier_gateway.api.client import TradierConfig
from tradier_gateway.lib.config import (
    ConfigValidationError,
    config_to_dict,
    load_config,
    save_config,
    validate_config,
)
from tradier_gateway.lib.constants import (
    DEFAULT_RATE_LIMIT_CAPACITY,
    TRADIER_API_BASE_URL,
    TRADIER_SANDBOX_BASE_URL,
)


def _valid_config(**overrides):
    config = TradierConfig(access_token="token", account_id="VA000001")
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


# =============================================================================
# Loading
# =============================================================================

class TestLoadConfig:
    """Tests for YAML and environment loading."""

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = load_config()

        assert config.base_url == TRADIER_API_BASE_URL
        assert config.rate_limit_capacity == DEFAULT_RATE_LIMIT_CAPACITY
        assert config.max_reconnect_attempts is None

    def test_yaml_sections(self, tmp_path):
        path = tmp_path / "gateway.yaml"
        path.write_text(yaml.dump({
            "api": {"base_url": "https://sandbox.tradier.com", "account_id": "VA1", "max_retries": 5},
            "rate_limit": {"capacity": 120, "refill_per_sec": 2.0, "endpoint_costs": {"/v1/markets/history": 3}},
            "streaming": {"heartbeat_timeout": 15, "max-reconnect-attempts": 7},
            "orders": {"order_retention_seconds": 30},
            "unknown_section": {"x": 1},
        }))

        with patch.dict(os.environ, {}, clear=True):
            config = load_config(str(path))

        assert config.base_url == "https://sandbox.tradier.com"
        assert config.account_id == "VA1"
        assert config.max_retries == 5
        assert config.rate_limit_capacity == 120
        assert config.rate_limit_refill_per_sec == 2.0
        assert config.endpoint_costs == {"/v1/markets/history": 3}
        assert config.heartbeat_timeout == 15
        assert config.max_reconnect_attempts == 7
        assert config.order_retention_seconds == 30

    def test_yaml_values_coerced_to_field_types(self, tmp_path):
        path = tmp_path / "gateway.yaml"
        path.write_text(yaml.dump({
            "api": {"account_id": 12345, "request_timeout": "12", "refresh_token": None},
            "rate_limit": {"capacity": "120", "endpoint_costs": {"/v1/markets/history": "3"}},
            "streaming": {"heartbeat_timeout": "30", "max_reconnect_attempts": "4"},
            "orders": {"pending_event_ttl": 5},
        }))

        config = load_config(str(path), override_env=False)

        assert config.account_id == "12345"
        assert config.request_timeout == 12.0
        assert isinstance(config.request_timeout, float)
        assert config.refresh_token is None
        assert config.rate_limit_capacity == 120
        assert isinstance(config.rate_limit_capacity, int)
        assert config.endpoint_costs == {"/v1/markets/history": 3}
        assert config.heartbeat_timeout == 30.0
        assert isinstance(config.heartbeat_timeout, float)
        assert config.max_reconnect_attempts == 4
        assert isinstance(config.pending_event_ttl, float)

    @pytest.mark.parametrize("section, values", [
        ("streaming", {"heartbeat_timeout": "soon"}),
        ("rate_limit", {"capacity": True}),
        ("api", {"max_retries": [1, 2]}),
    ])
    def test_yaml_value_of_wrong_type(self, tmp_path, section, values):
        path = tmp_path / "gateway.yaml"
        path.write_text(yaml.dump({section: values}))

        with pytest.raises(ConfigValidationError):
            load_config(str(path), override_env=False)

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        config = load_config(str(path), override_env=False)
        assert config.base_url == TRADIER_API_BASE_URL

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_config("/nonexistent/gateway.yaml")

    def test_env_overrides_yaml(self, tmp_path):
        path = tmp_path / "gateway.yaml"
        path.write_text(yaml.dump({"api": {"account_id": "FROM_FILE"}}))
        env = {
            "TRADIER_ACCESS_TOKEN": "env-token",
            "TRADIER_ACCOUNT_ID": "FROM_ENV",
            "TRADIER_RATE_LIMIT_CAPACITY": "30",
            "TRADIER_HEARTBEAT_TIMEOUT": "45",
            "TRADIER_MAX_RECONNECT_ATTEMPTS": "4",
        }

        with patch.dict(os.environ, env, clear=True):
            config = load_config(str(path))

        assert config.access_token == "env-token"
        assert config.account_id == "FROM_ENV"
        assert config.rate_limit_capacity == 30
        assert config.heartbeat_timeout == 45.0
        assert config.max_reconnect_attempts == 4

    def test_sandbox_flag(self):
        with patch.dict(os.environ, {"TRADIER_SANDBOX": "true"}, clear=True):
            assert load_config().base_url == TRADIER_SANDBOX_BASE_URL

    def test_explicit_base_url_beats_sandbox(self):
        env = {"TRADIER_SANDBOX": "1", "TRADIER_REST_BASE_URL": "https://proxy.local"}
        with patch.dict(os.environ, env, clear=True):
            assert load_config().base_url == "https://proxy.local"

    def test_env_ignored_when_disabled(self):
        with patch.dict(os.environ, {"TRADIER_ACCESS_TOKEN": "env-token"}, clear=True):
            assert load_config(override_env=False).access_token == ""


# =============================================================================
# Validation
# =============================================================================

class TestValidateConfig:
    """Tests for configuration validation."""

    def test_valid_config(self):
        assert validate_config(_valid_config()) == []

    def test_missing_token(self):
        with pytest.raises(ConfigValidationError, match="Access token required"):
            validate_config(_valid_config(access_token=""))

    @pytest.mark.parametrize("overrides, message", [
        ({"rate_limit_capacity": 0}, "rate_limit_capacity"),
        ({"rate_limit_refill_per_sec": 0}, "rate_limit_refill_per_sec"),
        ({"endpoint_costs": {"/v1/markets/history": 500}}, "endpoint cost"),
        ({"max_retries": -1}, "max_retries"),
        ({"initial_backoff": 10.0, "max_backoff": 1.0}, "max_backoff"),
        ({"backoff_jitter": 1.5}, "backoff_jitter"),
        ({"heartbeat_timeout": 0}, "heartbeat_timeout"),
        ({"event_buffer_size_per_subscriber": 0}, "event_buffer_size_per_subscriber"),
        ({"max_subscribe_attempts": 0}, "max_subscribe_attempts"),
        ({"max_reconnect_attempts": 0}, "max_reconnect_attempts"),
        ({"pending_event_ttl": 0}, "pending_event_ttl"),
    ])
    def test_invalid_values(self, overrides, message):
        with pytest.raises(ConfigValidationError, match=message):
            validate_config(_valid_config(**overrides))

    def test_warnings(self):
        config = _valid_config(account_id="", refresh_token="r", heartbeat_timeout=2.0)
        warnings = validate_config(config)

        assert any("account_id" in w for w in warnings)
        assert any("refresh" in w for w in warnings)
        assert any("heartbeat_timeout" in w for w in warnings)


# =============================================================================
# Export
# =============================================================================

class TestConfigExport:
    """Tests for serialization."""

    def test_secrets_redacted(self):
        config = _valid_config(refresh_token="r", client_secret="s")
        data = config_to_dict(config)

        assert data["api"]["access_token"] == "***"
        assert data["api"]["refresh_token"] == "***"
        assert data["api"]["client_secret"] == "***"
        assert data["api"]["account_id"] == "VA000001"
        assert data["rate_limit"]["capacity"] == config.rate_limit_capacity

    def test_save_and_reload(self, tmp_path):
        config = _valid_config(rate_limit_capacity=90, heartbeat_timeout=12.0, max_reconnect_attempts=3)
        path = tmp_path / "out.yaml"

        save_config(config, str(path))
        loaded = load_config(str(path), override_env=False)

        assert loaded.rate_limit_capacity == 90
        assert loaded.heartbeat_timeout == 12.0
        assert loaded.max_reconnect_attempts == 3
        assert loaded.account_id == "VA000001"
