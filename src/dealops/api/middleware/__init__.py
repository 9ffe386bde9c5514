"""API middleware package."""

from src.dealops.api.middleware.errors import register_error_handlers
from src.dealops.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware", "register_error_handlers"]
