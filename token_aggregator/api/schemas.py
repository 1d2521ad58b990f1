"""
Pydantic schemas for Token Aggregator Service.
Canonical token records, query options, paginated results and realtime events.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any, Literal, Union
from pydantic import BaseModel, Field, validator


class SortField(str, Enum):
    """Fields a token collection can be sorted by."""
    VOLUME = "volume"
    MARKET_CAP = "market_cap"
    LIQUIDITY = "liquidity"
    PRICE_CHANGE = "price_change"


class SortOrder(str, Enum):
    """Sort direction."""
    ASC = "asc"
    DESC = "desc"


class Token(BaseModel):
    """Canonical per-asset market snapshot. The address is the identity key."""
    token_address: str = Field(..., description="Token mint/contract address")
    token_name: str = Field("Unknown", description="Display name")
    token_ticker: str = Field("UNKNOWN", description="Ticker symbol")
    price_sol: float = Field(0.0, description="Price in quote currency")
    market_cap_sol: float = Field(0.0, description="Market capitalization in quote currency")
    volume_sol: float = Field(0.0, description="Rolling 24h trading volume in quote currency")
    liquidity_sol: float = Field(0.0, description="Liquidity depth in quote currency")
    transaction_count: int = Field(0, description="Rolling 24h transaction count")
    price_1hr_change: float = Field(0.0, description="1 hour price change percentage")
    price_24hr_change: Optional[float] = Field(None, description="24 hour price change percentage")
    price_7d_change: Optional[float] = Field(None, description="7 day price change percentage")
    protocol: str = Field("Unknown", description="Source protocol or venue label")
    dex_id: Optional[str] = Field(None, description="Originating source identifier")
    last_updated: int = Field(..., description="Last update timestamp in epoch milliseconds")
    
    @validator('token_address')
    def validate_address(cls, v: str) -> str:
        """Validate token address."""
        if not v or not v.strip():
            raise ValueError("token_address cannot be empty")
        return v.strip()


class QueryOptions(BaseModel):
    """Filter, sort and pagination options. Unset options stay None."""
    limit: Optional[int] = Field(None, description="Page size, clamped to the configured maximum")
    cursor: Optional[str] = Field(None, description="Opaque pagination cursor")
    sort_by: Optional[SortField] = Field(None, description="Sort field, defaults to volume")
    sort_order: Optional[SortOrder] = Field(None, description="Sort direction, defaults to desc")
    min_volume: Optional[float] = Field(None, description="Minimum 24h volume")
    min_liquidity: Optional[float] = Field(None, description="Minimum liquidity")


class TokenCollection(BaseModel):
    """Filtered and sorted token collection as stored in the cache."""
    tokens: List[Token] = Field(default_factory=list)
    timestamp: int = Field(..., description="Generation timestamp in epoch milliseconds")


class PageResult(BaseModel):
    """One page of a filtered and sorted token collection."""
    tokens: List[Token] = Field(default_factory=list, description="Tokens on this page")
    next_cursor: Optional[str] = Field(None, description="Cursor for the next page, absent when exhausted")
    total_count: int = Field(..., description="Size of the filtered collection before pagination")
    timestamp: int = Field(..., description="Result generation timestamp in epoch milliseconds")


class RealtimeEvent(BaseModel):
    """Payload of a change notification pushed to realtime clients."""
    type: Literal["price_update", "volume_spike", "new_token"] = Field(..., description="Event type")
    data: Union[List[Token], Token] = Field(..., description="Affected token or tokens")
    timestamp: int = Field(..., description="Event timestamp in epoch milliseconds")


class HealthResponse(BaseModel):
    """Model for health check response."""
    status: Literal["healthy", "degraded"] = Field(..., description="Service status")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Health check timestamp")
    version: str = Field(..., description="Service version")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")
    redis_connected: bool = Field(..., description="Redis connection status")
    broadcaster_running: bool = Field(..., description="Realtime broadcaster status")
    connected_clients: int = Field(0, description="Number of open realtime connections")


class ErrorResponse(BaseModel):
    """Model for error responses."""
    error: str = Field(..., description="Error message")
    error_code: str = Field(..., description="Error code")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Error timestamp")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
