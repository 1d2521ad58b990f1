"""
Exponential backoff retry wrapper for upstream calls.
"""

import asyncio
from typing import Awaitable, Callable, FrozenSet, Iterable, Optional, TypeVar

from pydantic import BaseModel, Field

from ..core.config import Settings
from ..core.logging_config import create_logger

logger = create_logger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Retry policy for a fallible asynchronous operation. Delays are in seconds."""
    max_retries: int = Field(3, ge=0, description="Retries after the first attempt")
    initial_delay: float = Field(1.0, ge=0, description="Delay before the first retry")
    max_delay: float = Field(10.0, ge=0, description="Upper bound for any single delay")
    backoff_multiplier: float = Field(2.0, ge=1, description="Growth factor between delays")
    non_retryable_statuses: FrozenSet[int] = Field(
        default_factory=lambda: frozenset({404, 401, 403}),
        description="HTTP statuses that are raised without retrying"
    )
    
    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.retry_max_retries,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            non_retryable_statuses=frozenset(settings.get_non_retryable_statuses())
        )


def compute_backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay to wait after the failed attempt with zero-based index ``attempt``."""
    return min(policy.initial_delay * (policy.backoff_multiplier ** attempt), policy.max_delay)


def get_status_code(error: BaseException) -> Optional[int]:
    """Extract an HTTP status from provider errors or raw httpx status errors."""
    status_code = getattr(error, "status_code", None)
    if status_code is None:
        response = getattr(error, "response", None)
        status_code = getattr(response, "status_code", None)
    return status_code if isinstance(status_code, int) else None


def is_retryable(error: BaseException, non_retryable_statuses: Iterable[int]) -> bool:
    return get_status_code(error) not in set(non_retryable_statuses)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    context: str = "operation"
) -> T:
    """
    Run ``operation`` until it succeeds or the policy is exhausted.
    
    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Retry policy
        context: Label used in log records
        
    Returns:
        The result of the first successful attempt
        
    Raises:
        The failure of the last attempt, or immediately any failure whose
        HTTP status is in ``policy.non_retryable_statuses``
    """
    attempts = policy.max_retries + 1
    
    for attempt in range(attempts):
        try:
            return await operation()
        
        except Exception as e:
            if not is_retryable(e, policy.non_retryable_statuses):
                logger.warning("Non-retryable failure", extra={
                    "context": context,
                    "status_code": get_status_code(e),
                    "error": str(e)
                })
                raise
            
            if attempt >= attempts - 1:
                logger.error("Operation failed after all attempts", extra={
                    "context": context,
                    "attempts": attempts,
                    "error": str(e)
                })
                raise
            
            delay = compute_backoff_delay(policy, attempt)
            logger.warning("Operation failed, retrying", extra={
                "context": context,
                "attempt": attempt + 1,
                "max_attempts": attempts,
                "delay_seconds": delay,
                "error": str(e)
            })
            await asyncio.sleep(delay)
    
    # max_retries is validated as >= 0, so the loop always returns or raises
    raise RuntimeError(f"{context}: retry loop exited without a result")
