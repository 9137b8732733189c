"""
Tradier API Integration Module.

This module provides the client layer for the Tradier brokerage API.

Key Components:
- CredentialStore: Owns the bearer credential, coalesces refreshes
- TokenBucket: Shared rate limiter for outbound requests
- RequestDispatcher: Authenticated, rate limited REST gateway with retries
- TradierREST: Thin wrappers for the endpoints the core needs
- StreamSessionManager: Reconnecting streaming session with resubscription

Usage:
    from tradier_gateway.api import (
        TradierConfig, Credential, CredentialStore, TokenBucket,
        RequestDispatcher, TradierREST,
    )

    config = TradierConfig.from_env()
    credentials = CredentialStore(config.credential())
    dispatcher = RequestDispatcher(config, credentials)

    rest = TradierREST(dispatcher, config.account_id)
    profile = await rest.get_user_profile()

Important Notes:
- Trading endpoints allow ~60 requests per minute per token
- Stream session ids expire if not used within 5 minutes
- Tradier returns a single object where a list has one element
"""

from tradier_gateway.api.errors import (
    TradierAPIError,
    AuthError,
    TransientError,
    RequestError,
    ConflictError,
    StreamError,
    AmbiguousResponseError,
    TransportError,
)
from tradier_gateway.api.backoff import BackoffPolicy
from tradier_gateway.api.credentials import (
    Credential,
    CredentialStore,
    OAuthRefresher,
)
from tradier_gateway.api.rate_limiter import TokenBucket
from tradier_gateway.api.client import (
    TradierConfig,
    HttpResponse,
    HttpTransport,
    AiohttpTransport,
    RequestOutcome,
    RequestDispatcher,
)
from tradier_gateway.api.rest import (
    TradierREST,
    OrderRequest,
    OrderSide,
    OrderType,
    OrderDuration,
    OrderAck,
    StreamKind,
    StreamSessionInfo,
    UserProfile,
    AccountBalances,
    PositionData,
    as_list,
)
from tradier_gateway.api.stream_codec import (
    DeliveryMode,
    EventKind,
    StreamSubscription,
    StreamEvent,
    StreamCodec,
    TradierMarketCodec,
    TradierAccountCodec,
)
from tradier_gateway.api.stream import (
    StreamState,
    STREAM_TRANSITIONS,
    StreamSessionManager,
    EventSubscriber,
    AiohttpStreamTransport,
    TradierStreamAuthenticator,
)

__all__ = [
    # Errors
    "TradierAPIError",
    "AuthError",
    "TransientError",
    "RequestError",
    "ConflictError",
    "StreamError",
    "AmbiguousResponseError",
    "TransportError",
    # Client
    "BackoffPolicy",
    "Credential",
    "CredentialStore",
    "OAuthRefresher",
    "TokenBucket",
    "TradierConfig",
    "HttpResponse",
    "HttpTransport",
    "AiohttpTransport",
    "RequestOutcome",
    "RequestDispatcher",
    # REST
    "TradierREST",
    "OrderRequest",
    "OrderSide",
    "OrderType",
    "OrderDuration",
    "OrderAck",
    "StreamKind",
    "StreamSessionInfo",
    "UserProfile",
    "AccountBalances",
    "PositionData",
    "as_list",
    # Streaming
    "DeliveryMode",
    "EventKind",
    "StreamSubscription",
    "StreamEvent",
    "StreamCodec",
    "TradierMarketCodec",
    "TradierAccountCodec",
    "StreamState",
    "STREAM_TRANSITIONS",
    "StreamSessionManager",
    "EventSubscriber",
    "AiohttpStreamTransport",
    "TradierStreamAuthenticator",
]
