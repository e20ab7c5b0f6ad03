"""Middleware components for the reporting API."""

from __future__ import annotations

from reporting_api.middleware.auth import AuthenticationMiddleware
from reporting_api.middleware.logging import RequestLoggingMiddleware
from reporting_api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware, SlidingWindowCounter

__all__ = [
    "AuthenticationMiddleware",
    "RateLimitConfig",
    "RateLimitMiddleware",
    "RequestLoggingMiddleware",
    "SlidingWindowCounter",
]
