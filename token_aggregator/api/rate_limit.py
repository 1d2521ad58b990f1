"""
Inbound request throttling.
Fixed-window request counter per client IP, stored in the cache.
"""

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .schemas import ErrorResponse
from ..core.logging_config import create_logger

logger = create_logger(__name__)


async def throttle_requests(request: Request, call_next):
    """Reject clients that exceed the request budget. Fails open when the cache is unavailable."""
    settings = request.app.state.settings
    cache = request.app.state.cache
    identifier = request.client.host if request.client else "unknown"
    max_requests = settings.rate_limit_max_requests
    
    try:
        request_count = await cache.increment(
            f"rate-limit:{identifier}",
            settings.rate_limit_window_seconds
        )
    except Exception as e:
        logger.error("Rate limiter error", extra={"client_ip": identifier, "error": str(e)})
        request_count = 0
    
    headers = {
        "X-RateLimit-Limit": str(max_requests),
        "X-RateLimit-Remaining": str(max(0, max_requests - request_count))
    }
    
    if request_count > max_requests:
        logger.warning("Rate limit exceeded", extra={
            "client_ip": identifier,
            "request_count": request_count
        })
        return JSONResponse(
            status_code=429,
            headers={**headers, "Retry-After": str(settings.rate_limit_window_seconds)},
            content=jsonable_encoder(ErrorResponse(
                error="Too many requests",
                error_code="RATE_LIMITED",
                details={"retry_after": settings.rate_limit_window_seconds}
            ))
        )
    
    response = await call_next(request)
    response.headers.update(headers)
    return response
