"""
Rate limiting middleware using slowapi.

Only operator endpoints are limited; tracking endpoints must always answer.
"""

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request


def client_ip(request: Request) -> str:
    """Originating client address, honouring the proxy headers in front of us."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return get_remote_address(request) if request.client else "Unknown"


limiter = Limiter(
    key_func=client_ip,
    storage_uri="memory://",  # Use Redis when running more than one API process
)


def setup_rate_limiting(app):
    """Configure rate limiting for the FastAPI app."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
