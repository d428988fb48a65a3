"""HTTP middleware: request id propagation and structured access logs."""

from src.enrollsync.api.middleware.logging import LoggingMiddleware, configure_structlog

__all__ = ["LoggingMiddleware", "configure_structlog"]
