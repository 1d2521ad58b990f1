"""
Abstract base class for upstream token data providers.
Defines the interface all providers implement and composes rate limiting,
retry with backoff and record transformation around every upstream call.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional
import httpx

from ..api.schemas import Token
from ..core.config import Settings, settings as default_settings
from ..core.logging_config import create_logger
from ..services.rate_limiter import RateLimiter
from ..services.retry import RetryPolicy, retry_with_backoff

logger = create_logger(__name__)


class ProviderError(Exception):
    """Base exception for provider errors."""
    
    def __init__(self, message: str, provider: str, status_code: Optional[int] = None):
        self.message = message
        self.provider = provider
        self.status_code = status_code
        super().__init__(self.message)


class RateLimitError(ProviderError):
    """Exception raised when provider rate limit is exceeded."""
    pass


class AuthenticationError(ProviderError):
    """Exception raised when provider authentication fails."""
    
    def __init__(self, message: str, provider: str, status_code: Optional[int] = 401):
        super().__init__(message, provider, status_code)


class DataNotFoundError(ProviderError):
    """Exception raised when requested data is not found."""
    
    def __init__(self, message: str, provider: str, status_code: Optional[int] = 404):
        super().__init__(message, provider, status_code)


class InvalidResponseError(ProviderError):
    """Exception raised when a provider response cannot be interpreted."""
    pass


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def to_float(value: Any, default: float = 0.0) -> float:
    """Parse a loosely typed numeric field, falling back to ``default``."""
    if value is None or value == "":
        return default
    return float(value)


def to_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    return int(float(value))


class BaseTokenProvider(ABC):
    """Abstract base class for token market data providers."""
    
    def __init__(
        self,
        name: str,
        base_url: str,
        rate_limit: int,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.settings = settings or default_settings
        self.name = name
        self.base_url = base_url.rstrip('/')
        self.client: Optional[httpx.AsyncClient] = None
        self.rate_limiter = RateLimiter(
            max_requests=rate_limit,
            window_seconds=self.settings.provider_rate_window_seconds,
            name=name
        )
        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self._transport = transport
    
    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self
    
    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.disconnect()
    
    async def connect(self) -> None:
        """Initialize HTTP client connection."""
        if self.client is None:
            limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
            
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.settings.http_timeout),
                limits=limits,
                headers=self._get_default_headers(),
                follow_redirects=True,
                transport=self._transport
            )
            
            logger.debug("Connected to provider", extra={"provider": self.name})
    
    async def disconnect(self) -> None:
        """Close HTTP client connection."""
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.debug("Disconnected from provider", extra={"provider": self.name})
    
    def _get_default_headers(self) -> Dict[str, str]:
        """Get default HTTP headers for requests."""
        return {
            'User-Agent': 'Token-Aggregator/1.0.0',
            'Accept': 'application/json'
        }
    
    async def _make_request(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Perform one GET request and map failures onto provider errors."""
        if not self.client:
            await self.connect()
        
        logger.debug("Making request to provider", extra={
            "provider": self.name,
            "path": path,
            "params": params
        })
        
        try:
            response = await self.client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Request timeout for {self.name}: {e}", self.name) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"HTTP error for {self.name}: {e}", self.name) from e
        
        status = response.status_code
        if status == 429:
            raise RateLimitError(f"Rate limited by {self.name}", self.name, status)
        if status in (401, 403):
            raise AuthenticationError(f"Authentication failed for {self.name}", self.name, status)
        if status == 404:
            raise DataNotFoundError(f"Resource not found on {self.name}: {path}", self.name, status)
        if status >= 400:
            raise ProviderError(f"HTTP {status} from {self.name}", self.name, status)
        
        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponseError(
                f"Invalid JSON response from {self.name}: {str(e)}",
                self.name,
                status
            ) from e
        
        logger.debug("Received response from provider", extra={
            "provider": self.name,
            "status_code": status,
            "response_size": len(response.content)
        })
        return data
    
    async def _fetch(
        self,
        path: str,
        params: Optional[Dict[str, Any]],
        transform: Callable[[Any], List[Token]],
        context: str
    ) -> List[Token]:
        """
        Acquire a rate limiter slot, then request and transform inside the retry wrapper.
        
        Args:
            path: Request path relative to the provider base URL
            params: Query parameters
            transform: Maps the decoded response body to canonical tokens
            context: Label used in log records
            
        Returns:
            Canonical tokens, possibly empty
            
        Raises:
            ProviderError: If the call failed after retries or hit a non-retryable status
        """
        await self.rate_limiter.acquire()
        
        async def attempt() -> List[Token]:
            data = await self._make_request(path, params)
            return transform(data)
        
        return await retry_with_backoff(attempt, self.retry_policy, f"{self.name} {context}")
    
    def _transform_records(self, records: Iterable[Any], transform: Callable[[Any], Optional[Token]]) -> List[Token]:
        """Transform raw records one by one, dropping any record that fails."""
        tokens: List[Token] = []
        for record in records:
            try:
                token = transform(record)
            except Exception as e:
                logger.warning("Dropping malformed record", extra={
                    "provider": self.name,
                    "record": record,
                    "error": str(e)
                })
                continue
            if token is not None:
                tokens.append(token)
        return tokens
    
    def _convert_usd(self, value: Any) -> float:
        """Convert a USD amount into the quote currency using the configured rate."""
        return to_float(value) / self.settings.quote_conversion_rate
    
    @abstractmethod
    async def fetch_all(self) -> List[Token]:
        """
        Get the provider's default token listing.
        
        Returns:
            List of canonical Token objects
            
        Raises:
            ProviderError: If unable to fetch the listing
        """
        pass
    
    @abstractmethod
    async def search(self, query: str) -> List[Token]:
        """
        Search tokens by free-text query.
        
        Args:
            query: Name, ticker or address fragment
            
        Returns:
            List of matching Token objects
            
        Raises:
            ProviderError: If unable to search
        """
        pass
    
    @abstractmethod
    async def fetch_by_address(self, address: str) -> List[Token]:
        """
        Get the listings for one token address.
        
        Some providers return one record per trading pair, so the result may
        hold several records for the same address, or none.
        """
        pass
