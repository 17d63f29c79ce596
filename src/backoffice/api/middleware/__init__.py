"""API middleware package."""

from src.backoffice.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
