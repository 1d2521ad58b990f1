"""
DexScreener data provider implementation.
Provides per-pair token market data from the DexScreener API.
"""

from typing import Any, Dict, List, Optional
import httpx

from .base import BaseTokenProvider, InvalidResponseError, now_ms, to_float, to_int
from ..api.schemas import Token
from ..core.config import Settings, settings as default_settings
from ..core.logging_config import create_logger

logger = create_logger(__name__)


class DexScreenerProvider(BaseTokenProvider):
    """DexScreener provider. Responses list trading pairs, one or more per token."""
    
    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        settings = settings or default_settings
        super().__init__(
            name="dexscreener",
            base_url=settings.dexscreener_api_url,
            rate_limit=settings.dexscreener_rate_limit,
            settings=settings,
            transport=transport
        )
    
    async def fetch_all(self) -> List[Token]:
        """Get trending tokens on the configured chain."""
        logger.info("Fetching trending tokens from DexScreener", extra={
            "query": self.settings.trending_query
        })
        return await self._fetch(
            "/search",
            {"q": self.settings.trending_query},
            self._transform_response,
            "trending"
        )
    
    async def search(self, query: str) -> List[Token]:
        logger.info("Searching DexScreener", extra={"query": query})
        return await self._fetch("/search", {"q": query}, self._transform_response, "search")
    
    async def fetch_by_address(self, address: str) -> List[Token]:
        logger.info("Fetching DexScreener token", extra={"address": address})
        return await self._fetch(f"/tokens/{address}", None, self._transform_response, "token fetch")
    
    def _transform_response(self, data: Any) -> List[Token]:
        """Transform a DexScreener response into tokens on the configured chain."""
        if not isinstance(data, dict):
            raise InvalidResponseError(
                f"Unexpected response type from DexScreener: {type(data).__name__}",
                self.name
            )
        
        pairs = data.get('pairs')
        if not isinstance(pairs, list):
            return []
        
        chain_pairs = [
            pair for pair in pairs
            if isinstance(pair, dict) and pair.get('chainId') == self.settings.chain_id
        ]
        tokens = self._transform_records(chain_pairs, self._transform_pair)
        
        logger.debug("Transformed DexScreener pairs", extra={
            "pairs": len(pairs),
            "chain_pairs": len(chain_pairs),
            "tokens": len(tokens)
        })
        return tokens
    
    def _transform_pair(self, pair: Dict[str, Any]) -> Optional[Token]:
        """Transform a single pair. Pairs without a base token address are skipped."""
        base_token = pair.get('baseToken') or {}
        address = base_token.get('address')
        if not address:
            return None
        
        volume = pair.get('volume') or {}
        liquidity = pair.get('liquidity') or {}
        price_change = pair.get('priceChange') or {}
        txns_24h = (pair.get('txns') or {}).get('h24') or {}
        price_7d = price_change.get('h7d')
        
        return Token(
            token_address=address,
            token_name=base_token.get('name') or 'Unknown',
            token_ticker=base_token.get('symbol') or 'UNKNOWN',
            price_sol=self._convert_usd(pair.get('priceUsd')),
            market_cap_sol=self._convert_usd(pair.get('marketCap') or pair.get('fdv')),
            volume_sol=self._convert_usd(volume.get('h24')),
            liquidity_sol=self._convert_usd(liquidity.get('usd')),
            transaction_count=to_int(txns_24h.get('buys')) + to_int(txns_24h.get('sells')),
            price_1hr_change=to_float(price_change.get('h1')),
            price_24hr_change=to_float(price_change.get('h24')),
            price_7d_change=to_float(price_7d) if price_7d is not None else None,
            protocol=pair.get('dexId') or 'Unknown',
            dex_id=pair.get('dexId'),
            last_updated=now_ms()
        )
