"""
Outbound rate limiter for upstream providers.
Fixed request budget per rolling window with lazy window reset.
"""

import asyncio
import time
from typing import Optional

from ..core.logging_config import create_logger

logger = create_logger(__name__)


class RateLimiter:
    """
    Gates calls into ``max_requests`` per ``window_seconds``.
    
    The window is reset lazily on the next acquisition, never by a timer.
    Callers that arrive while the budget is exhausted sleep until the window
    ends and are then all admitted together; there is no queue and no
    staggering between them.
    """
    
    def __init__(self, max_requests: int, window_seconds: float = 60.0, name: Optional[str] = None):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        
        self.name = name or "rate_limiter"
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.request_count = 0
        self.window_start = time.monotonic()
    
    async def acquire(self) -> None:
        """Return once the caller may issue one request."""
        now = time.monotonic()
        
        if now - self.window_start >= self.window_seconds:
            self.request_count = 0
            self.window_start = now
        
        if self.request_count < self.max_requests:
            self.request_count += 1
            return
        
        wait_time = self.window_seconds - (now - self.window_start)
        logger.debug("Rate limit reached, waiting for window rollover", extra={
            "limiter": self.name,
            "wait_time": wait_time,
            "max_requests": self.max_requests
        })
        await asyncio.sleep(max(wait_time, 0.0))
        
        self.request_count = 1
        self.window_start = time.monotonic()
    
    def remaining(self) -> int:
        """Requests still available in the current window."""
        if time.monotonic() - self.window_start >= self.window_seconds:
            return self.max_requests
        return max(self.max_requests - self.request_count, 0)
