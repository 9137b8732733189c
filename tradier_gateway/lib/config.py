"""
Unified configuration management.

This module loads, validates and exports the gateway configuration. It supports:
- YAML file loading
- Environment variable overrides
- Type validation via dataclasses
- Default values from constants

Configuration Hierarchy (highest to lowest priority):
1. Environment variables (TRADIER_*)
2. User-provided config file
3. Default values from constants.py

YAML layout:
    api:
      base_url: https://sandbox.tradier.com
      account_id: VA000001
      request_timeout: 30
      max_retries: 3
    rate_limit:
      capacity: 60
      refill_per_sec: 1.0
      endpoint_costs:
        /v1/markets/history: 2
    streaming:
      heartbeat_timeout: 30
      max_reconnect_backoff: 60
      event_buffer_size_per_subscriber: 1000
    orders:
      order_retention_seconds: 600
      pending_event_ttl: 10

Example usage:
    config = load_config("config/gateway.yaml")
    warnings = validate_config(config)
"""

import os
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional, Union, get_args, get_origin, get_type_hints

import yaml

from tradier_gateway.api.client import TradierConfig
from tradier_gateway.lib.constants import TRADIER_SANDBOX_BASE_URL


# Section name -> (field prefix, fields owned by the section)
SECTIONS = {
    "api": ("", (
        "base_url", "market_stream_url", "account_stream_url",
        "access_token", "refresh_token", "client_id", "client_secret", "account_id",
        "credential_refresh_margin", "request_timeout", "max_retries",
        "initial_backoff", "max_backoff", "backoff_jitter",
    )),
    "rate_limit": ("rate_limit_", (
        "rate_limit_capacity", "rate_limit_refill_per_sec", "endpoint_costs",
    )),
    "streaming": ("", (
        "initial_reconnect_backoff", "max_reconnect_backoff", "max_reconnect_attempts",
        "max_subscribe_attempts", "heartbeat_timeout", "event_buffer_size_per_subscriber",
    )),
    "orders": ("", (
        "order_retention_seconds", "pending_event_ttl",
    )),
}

SECRET_FIELDS = ("access_token", "refresh_token", "client_secret")

FIELD_TYPES = get_type_hints(TradierConfig)


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(
    config_path: Optional[str] = None,
    override_env: bool = True
) -> TradierConfig:
    """
    Load configuration from YAML file with optional environment overrides.

    Args:
        config_path: Path to YAML config file (optional)
        override_env: If True, apply environment variable overrides

    Returns:
        TradierConfig instance

    Example:
        config = load_config("config/gateway.yaml")
        print(config.rate_limit_capacity)  # 60
    """
    config = TradierConfig()

    if config_path:
        config = _load_from_yaml(config_path, config)

    if override_env:
        config = _apply_env_overrides(config)

    return config


def _load_from_yaml(config_path: str, base_config: TradierConfig) -> TradierConfig:
    """Load configuration from YAML file."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path) as f:
        yaml_data = yaml.safe_load(f)

    if yaml_data is None:
        return base_config

    for section, (prefix, owned) in SECTIONS.items():
        if section in yaml_data:
            _update_section(base_config, yaml_data[section], prefix, owned)

    return base_config


def _update_section(config: TradierConfig, data: Optional[dict], prefix: str, owned: tuple) -> None:
    """Update config fields owned by one YAML section."""
    if not data:
        return

    for key, value in data.items():
        normalized_key = str(key).replace(".", "_").replace("-", "_")

        if normalized_key in owned:
            name = normalized_key
        elif prefix + normalized_key in owned:
            name = prefix + normalized_key
        else:
            continue

        setattr(config, name, _coerce(name, value))


def _coerce(name: str, value: Any) -> Any:
    """Convert a YAML value to the type declared on TradierConfig."""
    if name == "endpoint_costs":
        try:
            return {str(k): int(v) for k, v in (value or {}).items()}
        except (AttributeError, TypeError, ValueError) as e:
            raise ConfigValidationError(f"endpoint_costs must map path prefixes to integers: {e}") from e

    target = FIELD_TYPES[name]
    if get_origin(target) is Union:
        if value is None:
            return None
        target = next(arg for arg in get_args(target) if arg is not type(None))
    elif value is None and target is str:
        return ""

    if isinstance(value, target) and not isinstance(value, bool):
        return value
    if target in (int, float) and isinstance(value, (bool, dict, list)):
        raise ConfigValidationError(f"{name} must be a number, got {value!r}")
    try:
        return target(value)
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"{name} must be {target.__name__}, got {value!r}") from e


def _apply_env_overrides(config: TradierConfig) -> TradierConfig:
    """Apply environment variable overrides to config."""

    # Credentials (always from env when present)
    if env_val := os.getenv("TRADIER_ACCESS_TOKEN"):
        config.access_token = env_val

    if env_val := os.getenv("TRADIER_REFRESH_TOKEN"):
        config.refresh_token = env_val

    if env_val := os.getenv("TRADIER_CLIENT_ID"):
        config.client_id = env_val

    if env_val := os.getenv("TRADIER_CLIENT_SECRET"):
        config.client_secret = env_val

    if env_val := os.getenv("TRADIER_ACCOUNT_ID"):
        config.account_id = env_val

    # Endpoints
    if env_val := os.getenv("TRADIER_SANDBOX"):
        if env_val.lower() in ("true", "1", "yes"):
            config.base_url = TRADIER_SANDBOX_BASE_URL

    if env_val := os.getenv("TRADIER_REST_BASE_URL"):
        config.base_url = env_val

    # Tuning
    if env_val := os.getenv("TRADIER_REST_TIMEOUT"):
        config.request_timeout = float(env_val)

    if env_val := os.getenv("TRADIER_RATE_LIMIT_CAPACITY"):
        config.rate_limit_capacity = int(env_val)

    if env_val := os.getenv("TRADIER_RATE_LIMIT_REFILL_PER_SEC"):
        config.rate_limit_refill_per_sec = float(env_val)

    if env_val := os.getenv("TRADIER_HEARTBEAT_TIMEOUT"):
        config.heartbeat_timeout = float(env_val)

    if env_val := os.getenv("TRADIER_MAX_RECONNECT_ATTEMPTS"):
        config.max_reconnect_attempts = int(env_val)

    return config


# =============================================================================
# Configuration Validation
# =============================================================================

class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


def validate_config(config: TradierConfig) -> list[str]:
    """
    Validate configuration values.

    Args:
        config: TradierConfig to validate

    Returns:
        List of validation warnings (empty if valid)

    Raises:
        ConfigValidationError: If critical validation fails
    """
    warnings = []
    errors = []

    # Credentials
    if not config.access_token:
        errors.append("Access token required - set TRADIER_ACCESS_TOKEN")

    if not config.account_id:
        warnings.append("No account_id configured - account endpoints and order tracking are unavailable")

    if config.refresh_token and not (config.client_id and config.client_secret):
        warnings.append("refresh_token set without client_id/client_secret - token refresh disabled")

    # Rate limiting
    if config.rate_limit_capacity <= 0:
        errors.append("rate_limit_capacity must be positive")

    if config.rate_limit_refill_per_sec <= 0:
        errors.append("rate_limit_refill_per_sec must be positive")

    for prefix, cost in config.endpoint_costs.items():
        if cost <= 0 or cost > config.rate_limit_capacity:
            errors.append(
                f"endpoint cost for {prefix} ({cost}) must be in 1..rate_limit_capacity "
                f"({config.rate_limit_capacity})"
            )

    # Retries
    if config.max_retries < 0:
        errors.append("max_retries cannot be negative")

    if config.max_backoff < config.initial_backoff:
        errors.append(
            f"max_backoff ({config.max_backoff}) must be >= initial_backoff ({config.initial_backoff})"
        )

    if not 0 <= config.backoff_jitter < 1:
        errors.append("backoff_jitter must be in [0, 1)")

    if config.request_timeout <= 0:
        errors.append("request_timeout must be positive")

    # Streaming
    if config.max_reconnect_backoff < config.initial_reconnect_backoff:
        errors.append(
            f"max_reconnect_backoff ({config.max_reconnect_backoff}) must be >= "
            f"initial_reconnect_backoff ({config.initial_reconnect_backoff})"
        )

    if config.heartbeat_timeout <= 0:
        errors.append("heartbeat_timeout must be positive")
    elif config.heartbeat_timeout < 5:
        warnings.append(
            f"heartbeat_timeout ({config.heartbeat_timeout}s) below 5s may cause spurious reconnects"
        )

    if config.event_buffer_size_per_subscriber <= 0:
        errors.append("event_buffer_size_per_subscriber must be positive")

    if config.max_subscribe_attempts < 1:
        errors.append("max_subscribe_attempts must be at least 1")

    if config.max_reconnect_attempts is not None and config.max_reconnect_attempts < 1:
        errors.append("max_reconnect_attempts must be at least 1 (or unset for unlimited)")

    # Orders
    if config.order_retention_seconds < 0:
        errors.append("order_retention_seconds cannot be negative")

    if config.pending_event_ttl <= 0:
        errors.append("pending_event_ttl must be positive")

    if errors:
        raise ConfigValidationError("Configuration validation failed:\n" +
                                   "\n".join(f"  - {e}" for e in errors))

    return warnings


# =============================================================================
# Configuration Export
# =============================================================================

def config_to_dict(config: TradierConfig) -> dict:
    """
    Convert TradierConfig to a sectioned dictionary for serialization.

    Args:
        config: Configuration to convert

    Returns:
        Dictionary representation (YAML-safe) with secrets redacted
    """
    flat = asdict(config)

    for name in SECRET_FIELDS:
        flat[name] = "***" if flat.get(name) else None

    result: dict[str, Any] = {}
    for section, (prefix, owned) in SECTIONS.items():
        result[section] = {}
        for name in owned:
            key = name[len(prefix):] if prefix and name.startswith(prefix) else name
            result[section][key] = flat[name]

    return result


def save_config(config: TradierConfig, path: str) -> None:
    """
    Save configuration to YAML file.

    Args:
        config: Configuration to save
        path: Output file path
    """
    data = config_to_dict(config)

    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
