from .auth import require_role
from .logging import RequestLoggingMiddleware
from .rate_limiting import RateLimitMiddleware, SlidingWindowLimiter

__all__ = ["require_role", "RequestLoggingMiddleware", "RateLimitMiddleware", "SlidingWindowLimiter"]
