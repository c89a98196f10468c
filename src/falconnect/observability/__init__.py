"""Observability module for logging."""

from falconnect.observability.logging import (
    bind_client_context,
    clear_client_context,
    configure_logging,
    get_logger,
    redact_credentials,
)


__all__ = [
    "bind_client_context",
    "clear_client_context",
    "configure_logging",
    "get_logger",
    "redact_credentials",
]
