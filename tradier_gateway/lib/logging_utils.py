"""
Structured logging utilities for gateway operations.

This module provides:
- Configured logging with rotation and formatting
- A formatter that renders `extra` fields as key=value pairs
- Structured helpers for the events the core emits (requests, retries,
  stream state changes, order transitions, dropped events)

Log Format:
    YYYY-MM-DD HH:MM:SS.mmm [LEVEL] module - message [key=value ...]

Example usage:
    from tradier_gateway.lib.logging_utils import setup_logging, get_logger

    # Setup logging at application start
    setup_logging(level="INFO", log_dir="./logs")

    # Get logger in modules
    logger = get_logger(__name__)
    logger.info("Order accepted", extra={"order_id": "123"})
"""

import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional


# Attributes present on every LogRecord; anything else came in through `extra`
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}


# =============================================================================
# Log Formatting
# =============================================================================

class GatewayFormatter(logging.Formatter):
    """
    Formatter for gateway logs.

    Features:
    - Millisecond precision UTC timestamps
    - Colored output for terminal (optional)
    - Extra fields appended as key=value pairs
    """

    # ANSI color codes
    COLORS = {
        logging.DEBUG: "\033[36m",     # Cyan
        logging.INFO: "\033[32m",      # Green
        logging.WARNING: "\033[33m",   # Yellow
        logging.ERROR: "\033[31m",     # Red
        logging.CRITICAL: "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False, include_extras: bool = True):
        """
        Initialize formatter.

        Args:
            use_colors: Enable ANSI colors for terminal output
            include_extras: Include extra fields in output
        """
        self.use_colors = use_colors
        self.include_extras = include_extras
        super().__init__("[%(levelname)-8s] %(name)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with timestamp, extras and optional colors."""
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        timestamp = created.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

        message = super().format(record)

        if self.include_extras:
            extras = {
                k: v for k, v in record.__dict__.items()
                if k not in _RESERVED_ATTRS and not k.startswith("_")
            }
            if extras:
                extras_str = " ".join(f"{k}={v}" for k, v in extras.items())
                message = f"{message} [{extras_str}]"

        full_message = f"{timestamp} {message}"

        if self.use_colors and sys.stderr.isatty():
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{full_message}{self.RESET}"

        return full_message


# =============================================================================
# Logging Setup
# =============================================================================

def setup_logging(
    level: str = "INFO",
    log_dir: Optional[str] = None,
    log_file: Optional[str] = None,
    use_colors: bool = True,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Setup application-wide logging configuration.

    Creates handlers for:
    - Console output (with colors if terminal)
    - File output with rotation (if log_dir provided)

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for log files (optional)
        log_file: Specific log file name (default: gateway_YYYY-MM-DD.log)
        use_colors: Enable colored console output
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep

    Returns:
        Root logger
    """
    root_logger = logging.getLogger()

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(GatewayFormatter(use_colors=use_colors))
    root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        if not log_file:
            today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
            log_file = f"gateway_{today}.log"

        file_handler = RotatingFileHandler(
            log_path / log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8"
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(GatewayFormatter(use_colors=False))
        root_logger.addHandler(file_handler)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for the given module name.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


# =============================================================================
# Gateway Logger
# =============================================================================

class GatewayLogger:
    """
    Structured logger for the events the gateway core emits.

    Every method passes its fields through `extra` so that sinks attached
    to the standard logging tree receive them as record attributes.
    """

    def __init__(self, name: str = "tradier_gateway"):
        self._logger = logging.getLogger(name)

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def request(
        self,
        method: str,
        endpoint: str,
        status: int,
        attempts: int,
        latency_ms: float,
        **kwargs: Any
    ) -> None:
        """Log a completed REST request."""
        self._logger.debug(
            f"REQUEST: {method} {endpoint} -> {status} ({latency_ms:.1f}ms)",
            extra={"endpoint": endpoint, "status": status, "attempts": attempts,
                   "latency_ms": round(latency_ms, 2), **kwargs}
        )

    def retry(
        self,
        endpoint: str,
        reason: str,
        attempt: int,
        delay: float,
        **kwargs: Any
    ) -> None:
        """Log a retry decision made by the dispatcher."""
        self._logger.warning(
            f"RETRY: {endpoint} after {reason}, attempt {attempt} in {delay:.2f}s",
            extra={"endpoint": endpoint, "reason": reason, "attempt": attempt,
                   "delay": round(delay, 3), **kwargs}
        )

    def state_change(
        self,
        stream: str,
        old_state: str,
        new_state: str,
        reason: Optional[str] = None,
        **kwargs: Any
    ) -> None:
        """Log a streaming session state transition."""
        suffix = f" ({reason})" if reason else ""
        self._logger.info(
            f"STREAM: {stream} {old_state} -> {new_state}{suffix}",
            extra={"stream": stream, "old_state": old_state,
                   "new_state": new_state, **kwargs}
        )

    def order_transition(
        self,
        correlation_id: str,
        old_state: str,
        new_state: str,
        broker_order_id: Optional[str] = None,
        filled_quantity: float = 0,
        **kwargs: Any
    ) -> None:
        """Log an order lifecycle transition."""
        self._logger.info(
            f"ORDER: {correlation_id} {old_state} -> {new_state} filled={filled_quantity}",
            extra={"correlation_id": correlation_id, "broker_order_id": broker_order_id,
                   "old_state": old_state, "new_state": new_state,
                   "filled_quantity": filled_quantity, **kwargs}
        )

    def events_dropped(
        self,
        stream: str,
        subscriber: str,
        dropped_total: int,
        **kwargs: Any
    ) -> None:
        """Log that a slow subscriber lost buffered events."""
        self._logger.warning(
            f"DROPPED: {stream} subscriber {subscriber} total={dropped_total}",
            extra={"stream": stream, "subscriber": subscriber,
                   "dropped_total": dropped_total, **kwargs}
        )
