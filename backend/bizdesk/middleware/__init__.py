"""Middleware package."""

from bizdesk.middleware.logging import LoggingMiddleware
from bizdesk.middleware.request_id import RequestIDMiddleware

__all__ = ["LoggingMiddleware", "RequestIDMiddleware"]
