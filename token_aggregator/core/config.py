"""
Configuration management for Token Aggregator Service.
Uses pydantic-settings for environment variable management.
"""

from typing import List, Optional
from pydantic import Field, validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    # Application metadata
    app_name: str = Field(default="Token Aggregator", env="APP_NAME")
    app_version: str = Field(default="1.0.0", env="APP_VERSION")
    debug: bool = Field(default=False, env="DEBUG")
    server_host: str = Field(default="0.0.0.0", env="SERVER_HOST")
    server_port: int = Field(default=3000, env="SERVER_PORT")
    
    # Redis configuration
    redis_host: str = Field(default="localhost", env="REDIS_HOST")
    redis_port: int = Field(default=6379, env="REDIS_PORT")
    redis_db: int = Field(default=0, env="REDIS_DB")
    redis_password: Optional[str] = Field(default=None, env="REDIS_PASSWORD")
    
    # Cache settings (TTL in seconds)
    cache_prefix: str = Field(default="token-aggregator:", env="CACHE_PREFIX")
    cache_ttl: int = Field(default=30, env="CACHE_TTL")
    
    # Pagination
    pagination_default_limit: int = Field(default=20, env="PAGINATION_DEFAULT_LIMIT")
    pagination_max_limit: int = Field(default=100, env="PAGINATION_MAX_LIMIT")
    
    # Retry policy for upstream calls (delays in seconds)
    retry_max_retries: int = Field(default=3, env="RETRY_MAX_RETRIES")
    retry_initial_delay: float = Field(default=1.0, env="RETRY_INITIAL_DELAY")
    retry_max_delay: float = Field(default=10.0, env="RETRY_MAX_DELAY")
    retry_backoff_multiplier: float = Field(default=2.0, env="RETRY_BACKOFF_MULTIPLIER")
    retry_non_retryable_statuses: str = Field(default="404,401,403", env="RETRY_NON_RETRYABLE_STATUSES")
    
    # Upstream sources
    dexscreener_api_url: str = Field(default="https://api.dexscreener.com/latest/dex", env="DEXSCREENER_API_URL")
    dexscreener_rate_limit: int = Field(default=300, env="DEXSCREENER_RATE_LIMIT")
    jupiter_api_url: str = Field(default="https://lite-api.jup.ag", env="JUPITER_API_URL")
    jupiter_rate_limit: int = Field(default=600, env="JUPITER_RATE_LIMIT")
    provider_rate_window_seconds: float = Field(default=60.0, env="PROVIDER_RATE_WINDOW_SECONDS")
    http_timeout: float = Field(default=10.0, env="HTTP_TIMEOUT")
    chain_id: str = Field(default="solana", env="CHAIN_ID")
    trending_query: str = Field(default="solana", env="TRENDING_QUERY")
    jupiter_token_limit: int = Field(default=50, env="JUPITER_TOKEN_LIMIT")
    # Approximate USD value of one quote-currency unit
    quote_conversion_rate: float = Field(default=100.0, env="QUOTE_CONVERSION_RATE")
    
    # Realtime broadcasting
    broadcast_interval: float = Field(default=5.0, env="BROADCAST_INTERVAL")
    broadcast_top_n: int = Field(default=50, env="BROADCAST_TOP_N")
    initial_data_limit: int = Field(default=30, env="INITIAL_DATA_LIMIT")
    price_change_threshold: float = Field(default=1.0, env="PRICE_CHANGE_THRESHOLD")
    volume_spike_threshold: float = Field(default=50.0, env="VOLUME_SPIKE_THRESHOLD")
    
    # Inbound request throttling
    rate_limit_window_seconds: int = Field(default=60, env="RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_requests: int = Field(default=100, env="RATE_LIMIT_MAX_REQUESTS")
    
    # Logging configuration
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")
    
    @validator('retry_non_retryable_statuses')
    def validate_non_retryable_statuses(cls, v: str) -> str:
        """Validate that non-retryable statuses are comma-separated integers."""
        for part in v.split(','):
            if part.strip() and not part.strip().isdigit():
                raise ValueError(f"invalid HTTP status in retry_non_retryable_statuses: {part!r}")
        return v.strip()
    
    @validator('pagination_max_limit')
    def validate_pagination_max_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError("pagination_max_limit must be at least 1")
        return v
    
    @validator('broadcast_top_n', 'initial_data_limit')
    def validate_realtime_page_size(cls, v: int, values) -> int:
        """Realtime snapshots are paginated, so they cannot exceed the page size cap."""
        max_limit = values.get('pagination_max_limit')
        if v < 1:
            raise ValueError("realtime snapshot size must be at least 1")
        if max_limit is not None and v > max_limit:
            raise ValueError(f"realtime snapshot size {v} cannot exceed pagination_max_limit ({max_limit})")
        return v

    @validator('log_level')
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(valid_levels)}")
        return v.upper()
    
    @validator('log_format')
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = {'json', 'text'}
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {', '.join(valid_formats)}")
        return v.lower()
    
    def get_non_retryable_statuses(self) -> List[int]:
        """Get the HTTP statuses that must not be retried as a list."""
        return [int(part.strip()) for part in self.retry_non_retryable_statuses.split(',') if part.strip()]
    
    def get_redis_url(self) -> str:
        """Get Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"
    
    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
