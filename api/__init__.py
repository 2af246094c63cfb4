# API module - admission control and the HTTP client for the tool service
# Rate limits are per caller identity; secrets never leave the server

from .rate_limiter import RateLimiter, RateLimitConfig, RateLimitInfo
from .client import ToolClient, ToolClientResponse, ClientStatus

__all__ = [
    "RateLimiter",
    "RateLimitConfig",
    "RateLimitInfo",
    "ToolClient",
    "ToolClientResponse",
    "ClientStatus",
]
