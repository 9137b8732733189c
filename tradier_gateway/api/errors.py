"""
Exception hierarchy for the Tradier gateway.

Every error surfaced to callers derives from TradierAPIError and carries the
context needed to diagnose it (endpoint, status code, attempt count, order id)
without re-deriving it from logs.
"""

from typing import Optional


class TradierAPIError(Exception):
    """Base exception for Tradier gateway errors."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        attempts: Optional[int] = None,
        order_id: Optional[str] = None,
        body: Optional[str] = None,
    ):
        self.message = message
        self.endpoint = endpoint
        self.status_code = status_code
        self.attempts = attempts
        self.order_id = order_id
        self.body = body
        super().__init__(message)

    def __str__(self) -> str:
        context = []
        if self.endpoint is not None:
            context.append(f"endpoint={self.endpoint}")
        if self.status_code is not None:
            context.append(f"status={self.status_code}")
        if self.attempts is not None:
            context.append(f"attempts={self.attempts}")
        if self.order_id is not None:
            context.append(f"order_id={self.order_id}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class AuthError(TradierAPIError):
    """Credential invalid or expired and could not be refreshed."""
    pass


class TransientError(TradierAPIError):
    """Rate limited or server-side failure that outlived the retry budget."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class RequestError(TradierAPIError):
    """Request rejected by the API as malformed or invalid. Never retried."""
    pass


class ConflictError(TradierAPIError):
    """A mutating request was attempted on an order that cannot accept it."""
    pass


class StreamError(TradierAPIError):
    """Streaming session gave up after exhausting its reconnect policy."""
    pass


class TransportError(TradierAPIError):
    """Network-level failure raised by the HTTP or WebSocket collaborators."""
    pass


class AmbiguousResponseError(TradierAPIError):
    """A 2xx response whose body could not be read; the request may have taken effect."""
    pass
