"""
Tradier API constants and gateway defaults.

This module defines all constants used throughout the gateway:
- Tradier REST and streaming endpoints
- Rate limit defaults (Tradier brokerage quotas)
- Retry, reconnect and heartbeat defaults
- Order tracker retention defaults

All values are sourced from the Tradier brokerage API documentation.
"""

# =============================================================================
# Endpoints
# =============================================================================

TRADIER_API_BASE_URL = "https://api.tradier.com"
TRADIER_SANDBOX_BASE_URL = "https://sandbox.tradier.com"
TRADIER_WS_BASE_URL = "wss://ws.tradier.com"
TRADIER_STREAM_HTTP_BASE_URL = "https://stream.tradier.com"

TRADIER_MARKET_EVENTS_PATH = "/v1/markets/events"
TRADIER_ACCOUNT_EVENTS_PATH = "/v1/accounts/events"

TRADIER_MARKET_STREAM_URL = f"{TRADIER_WS_BASE_URL}{TRADIER_MARKET_EVENTS_PATH}"
TRADIER_ACCOUNT_STREAM_URL = f"{TRADIER_WS_BASE_URL}{TRADIER_ACCOUNT_EVENTS_PATH}"

# REST paths used by the core
TRADIER_MARKET_SESSION_PATH = "/v1/markets/events/session"
TRADIER_ACCOUNT_SESSION_PATH = "/v1/accounts/events/session"
TRADIER_OAUTH_REFRESH_PATH = "/v1/oauth/refreshtoken"
TRADIER_USER_PROFILE_PATH = "/v1/user/profile"


# =============================================================================
# Rate Limits
# =============================================================================

# Trading endpoints allow 60 requests per minute per token
DEFAULT_RATE_LIMIT_CAPACITY = 60
DEFAULT_RATE_LIMIT_REFILL_PER_SEC = 1.0

# Declared per-endpoint costs (path prefix -> tokens). Unlisted paths cost 1.
DEFAULT_ENDPOINT_COSTS = {
    "/v1/markets/history": 2,
    "/v1/markets/timesales": 2,
}


# =============================================================================
# Request Retry Defaults
# =============================================================================

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_BACKOFF_SECONDS = 0.5
DEFAULT_MAX_BACKOFF_SECONDS = 8.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_BACKOFF_JITTER = 0.1  # +/- 10% of the computed delay


# =============================================================================
# Credentials
# =============================================================================

# Tradier OAuth access tokens live for 24 hours
TRADIER_TOKEN_LIFETIME_SECONDS = 24 * 60 * 60
DEFAULT_CREDENTIAL_REFRESH_MARGIN_SECONDS = 300.0


# =============================================================================
# Streaming Defaults
# =============================================================================

# Stream session ids expire if unused for 5 minutes
TRADIER_STREAM_SESSION_TIMEOUT_SECONDS = 5 * 60

DEFAULT_INITIAL_RECONNECT_BACKOFF_SECONDS = 1.0
DEFAULT_MAX_RECONNECT_BACKOFF_SECONDS = 60.0
DEFAULT_HEARTBEAT_TIMEOUT_SECONDS = 30.0
DEFAULT_EVENT_BUFFER_SIZE = 1000
DEFAULT_MAX_SUBSCRIBE_ATTEMPTS = 3


# =============================================================================
# Order Tracking Defaults
# =============================================================================

DEFAULT_ORDER_RETENTION_SECONDS = 600.0
DEFAULT_PENDING_EVENT_TTL_SECONDS = 10.0
