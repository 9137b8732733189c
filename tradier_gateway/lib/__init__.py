"""
Shared utilities library for the gateway.

This module provides common utilities used across the codebase:
- constants: Tradier endpoints, rate limit, retry and streaming defaults
- config: Configuration loading from YAML and environment variables
  (import from tradier_gateway.lib.config; it depends on the api package)
- logging: Structured logging with rotation and formatting
"""

from tradier_gateway.lib.constants import (
    TRADIER_API_BASE_URL,
    TRADIER_SANDBOX_BASE_URL,
    TRADIER_MARKET_STREAM_URL,
    TRADIER_ACCOUNT_STREAM_URL,
    DEFAULT_RATE_LIMIT_CAPACITY,
    DEFAULT_RATE_LIMIT_REFILL_PER_SEC,
    DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
    DEFAULT_EVENT_BUFFER_SIZE,
)

from tradier_gateway.lib.logging_utils import (
    setup_logging,
    get_logger,
    GatewayLogger,
    GatewayFormatter,
)

__all__ = [
    # Constants
    "TRADIER_API_BASE_URL",
    "TRADIER_SANDBOX_BASE_URL",
    "TRADIER_MARKET_STREAM_URL",
    "TRADIER_ACCOUNT_STREAM_URL",
    "DEFAULT_RATE_LIMIT_CAPACITY",
    "DEFAULT_RATE_LIMIT_REFILL_PER_SEC",
    "DEFAULT_HEARTBEAT_TIMEOUT_SECONDS",
    "DEFAULT_EVENT_BUFFER_SIZE",
    # Logging
    "setup_logging",
    "get_logger",
    "GatewayLogger",
    "GatewayFormatter",
]
