"""Middleware for request validation and logging."""
from .logging import RequestLoggingMiddleware, setup_logging
from .headers import HeaderPolicy, SecurityHeaderSet
from .rate_limit import RateLimiter, RateLimiterConfig
from .csrf import CSRFConfig, CSRFGuard
from .security import SecurityMiddleware, SecurityPipeline

__all__ = [
    "RequestLoggingMiddleware",
    "setup_logging",
    "HeaderPolicy",
    "SecurityHeaderSet",
    "RateLimiter",
    "RateLimiterConfig",
    "CSRFConfig",
    "CSRFGuard",
    "SecurityMiddleware",
    "SecurityPipeline",
]
