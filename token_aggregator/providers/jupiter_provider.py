"""
Jupiter data provider implementation.
Provides token metadata and, where available, market statistics from the Jupiter token API.
"""

from typing import Any, Dict, List, Optional
import httpx

from .base import BaseTokenProvider, InvalidResponseError, now_ms, to_float, to_int
from ..api.schemas import Token
from ..core.config import Settings, settings as default_settings
from ..core.logging_config import create_logger

logger = create_logger(__name__)


class JupiterProvider(BaseTokenProvider):
    """Jupiter provider. Metrics the API does not supply default to zero."""
    
    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        settings = settings or default_settings
        super().__init__(
            name="jupiter",
            base_url=settings.jupiter_api_url,
            rate_limit=settings.jupiter_rate_limit,
            settings=settings,
            transport=transport
        )
    
    async def fetch_all(self) -> List[Token]:
        """Get the top of the Jupiter token list."""
        logger.info("Fetching all tokens from Jupiter")
        return await self._fetch("/tokens/v2", None, self._transform_token_list, "all tokens")
    
    async def search(self, query: str) -> List[Token]:
        logger.info("Searching Jupiter", extra={"query": query})
        return await self._fetch(
            "/tokens/v2/search",
            {"query": query},
            self._transform_response,
            "search"
        )
    
    async def fetch_by_address(self, address: str) -> List[Token]:
        """Search by address and keep exact address matches only."""
        tokens = await self.search(address)
        wanted = address.lower()
        return [token for token in tokens if token.token_address.lower() == wanted]
    
    def _transform_response(self, data: Any) -> List[Token]:
        """Transform a Jupiter search response."""
        if not isinstance(data, list):
            raise InvalidResponseError(
                f"Unexpected search response type from Jupiter: {type(data).__name__}",
                self.name
            )
        return self._transform_records(data, self._transform_token)
    
    def _transform_token_list(self, data: Any) -> List[Token]:
        """Transform the token list, which is either a bare list or wrapped in ``tokens``."""
        if isinstance(data, list):
            records = data
        elif isinstance(data, dict) and isinstance(data.get('tokens', []), list):
            records = data.get('tokens', [])
        else:
            raise InvalidResponseError(
                f"Unexpected token list response from Jupiter: {type(data).__name__}",
                self.name
            )
        return self._transform_records(records[:self.settings.jupiter_token_limit], self._transform_token)
    
    def _transform_token(self, token: Dict[str, Any]) -> Optional[Token]:
        address = token.get('address') or token.get('id')
        if not address:
            return None
        
        stats_1h = token.get('stats1h') or {}
        stats_24h = token.get('stats24h') or {}
        volume_24h = to_float(stats_24h.get('buyVolume')) + to_float(stats_24h.get('sellVolume'))
        
        return Token(
            token_address=address,
            token_name=token.get('name') or 'Unknown',
            token_ticker=token.get('symbol') or 'UNKNOWN',
            price_sol=self._convert_usd(token.get('usdPrice')),
            market_cap_sol=self._convert_usd(token.get('mcap')),
            volume_sol=self._convert_usd(volume_24h),
            liquidity_sol=self._convert_usd(token.get('liquidity')),
            transaction_count=to_int(stats_24h.get('numBuys')) + to_int(stats_24h.get('numSells')),
            price_1hr_change=to_float(stats_1h.get('priceChange')),
            price_24hr_change=to_float(stats_24h.get('priceChange')),
            protocol='Jupiter',
            dex_id='jupiter',
            last_updated=now_ms()
        )
