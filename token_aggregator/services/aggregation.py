"""
Token aggregation service.
Fetches from every provider concurrently, merges duplicate records by address,
then filters, sorts and paginates the result behind a cache-aside layer.
"""

import asyncio
import base64
import json
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from ..api.schemas import PageResult, QueryOptions, SortField, SortOrder, Token, TokenCollection
from ..core.config import Settings, settings as default_settings
from ..core.logging_config import create_logger
from ..providers.base import BaseTokenProvider, now_ms
from .cache import CacheService

logger = create_logger(__name__)

CACHE_KEY_PREFIX = "tokens:"

SORT_VALUES = {
    SortField.VOLUME: lambda token: token.volume_sol,
    SortField.MARKET_CAP: lambda token: token.market_cap_sol,
    SortField.LIQUIDITY: lambda token: token.liquidity_sol,
    SortField.PRICE_CHANGE: lambda token: token.price_1hr_change or 0.0,
}


# Merge

def _is_missing(value: Any) -> bool:
    """True for values a provider fills in when it has nothing better."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in ("", "unknown")
    if isinstance(value, (int, float)):
        return value == 0
    return False


def _first_present(first: Any, second: Any) -> Any:
    return second if _is_missing(first) else first


def merge_pair(first: Token, second: Token) -> Token:
    """
    Merge two records for the same address.

    Identity fields keep the first non-missing value, so ``first`` wins ties.
    Cumulative fields take the maximum of both records.
    """
    return Token(
        token_address=first.token_address,
        token_name=_first_present(first.token_name, second.token_name),
        token_ticker=_first_present(first.token_ticker, second.token_ticker),
        price_sol=_first_present(first.price_sol, second.price_sol),
        market_cap_sol=max(first.market_cap_sol, second.market_cap_sol),
        volume_sol=max(first.volume_sol, second.volume_sol),
        liquidity_sol=max(first.liquidity_sol, second.liquidity_sol),
        transaction_count=max(first.transaction_count, second.transaction_count),
        price_1hr_change=_first_present(first.price_1hr_change, second.price_1hr_change),
        price_24hr_change=_first_present(first.price_24hr_change, second.price_24hr_change),
        price_7d_change=_first_present(first.price_7d_change, second.price_7d_change),
        protocol=_first_present(first.protocol, second.protocol),
        dex_id=_first_present(first.dex_id, second.dex_id),
        last_updated=max(first.last_updated, second.last_updated)
    )


def merge_tokens(tokens: Sequence[Token]) -> List[Token]:
    """Collapse records sharing a case-insensitive address, keeping first-seen order."""
    merged: Dict[str, Token] = {}
    for token in tokens:
        address = token.token_address.lower()
        existing = merged.get(address)
        merged[address] = token if existing is None else merge_pair(existing, token)
    return list(merged.values())


# Filter / sort

def apply_filters(tokens: Sequence[Token], options: QueryOptions) -> List[Token]:
    """Keep tokens meeting the volume and liquidity thresholds that are set."""
    filtered = list(tokens)

    if options.min_volume is not None:
        filtered = [token for token in filtered if token.volume_sol >= options.min_volume]

    if options.min_liquidity is not None:
        filtered = [token for token in filtered if token.liquidity_sol >= options.min_liquidity]

    return filtered


def apply_sort(tokens: Sequence[Token], options: QueryOptions) -> List[Token]:
    """Stable sort by the requested field. Unknown fields sort by volume."""
    sort_value = SORT_VALUES.get(options.sort_by, SORT_VALUES[SortField.VOLUME])
    descending = (options.sort_order or SortOrder.DESC) == SortOrder.DESC
    return sorted(tokens, key=sort_value, reverse=descending)


# Pagination

def encode_cursor(offset: int) -> str:
    return base64.b64encode(str(offset).encode("utf-8")).decode("ascii")


def decode_cursor(cursor: Optional[str]) -> int:
    """Decode a cursor into an offset. Undecodable cursors restart from zero."""
    if not cursor:
        return 0
    try:
        offset = int(base64.b64decode(cursor.encode("ascii"), validate=True).decode("utf-8"))
    except ValueError:
        logger.warning("Invalid cursor provided, starting from beginning", extra={"cursor": cursor})
        return 0
    if offset < 0:
        logger.warning("Negative cursor offset, starting from beginning", extra={"cursor": cursor})
        return 0
    return offset


def resolve_limit(limit: Optional[int], default_limit: int, max_limit: int) -> int:
    """Clamp the requested page size to [1, max_limit]."""
    if limit is None:
        return max(1, min(default_limit, max_limit))
    return max(1, min(limit, max_limit))


def paginate(collection: TokenCollection, limit: int, cursor: Optional[str]) -> PageResult:
    tokens = collection.tokens
    start = decode_cursor(cursor)
    end = start + limit

    return PageResult(
        tokens=tokens[start:end],
        next_cursor=encode_cursor(end) if end < len(tokens) else None,
        total_count=len(tokens),
        timestamp=collection.timestamp
    )


# Cache keys

def _format_threshold(value: Optional[float]) -> str:
    return "any" if value is None else repr(float(value))


def _canonical_options(options: QueryOptions) -> Dict[str, Any]:
    """Options that define the unpaginated collection, with defaults resolved."""
    return {
        "sort_by": SortField(options.sort_by or SortField.VOLUME).value,
        "sort_order": SortOrder(options.sort_order or SortOrder.DESC).value,
        "min_volume": options.min_volume,
        "min_liquidity": options.min_liquidity,
    }


def get_cache_key(options: QueryOptions) -> str:
    """Cache key for an aggregate. Limit and cursor are deliberately not part of it."""
    canonical = _canonical_options(options)
    return ":".join([
        f"{CACHE_KEY_PREFIX}aggregate",
        canonical["sort_by"],
        canonical["sort_order"],
        _format_threshold(canonical["min_volume"]),
        _format_threshold(canonical["min_liquidity"]),
    ])


def get_search_cache_key(query: str, options: QueryOptions) -> str:
    serialized = json.dumps(_canonical_options(options), sort_keys=True, separators=(",", ":"))
    return f"{CACHE_KEY_PREFIX}search:{query}:{serialized}"


def get_address_cache_key(address: str) -> str:
    return f"{CACHE_KEY_PREFIX}address:{address.lower()}"


class AggregationService:
    """
    Aggregates tokens from an ordered list of providers.

    Provider order is significant: when two providers report the same token,
    identity fields come from the provider listed first.
    """

    def __init__(
        self,
        providers: Sequence[BaseTokenProvider],
        cache: CacheService,
        settings: Optional[Settings] = None
    ):
        self.providers = list(providers)
        self.cache = cache
        self.settings = settings or default_settings

    async def aggregate(self, options: Optional[QueryOptions] = None) -> PageResult:
        """Get one page of the merged, filtered and sorted token listing."""
        options = options or QueryOptions()
        collection = await self._load_collection(get_cache_key(options), options, "fetch_all")
        return self._paginate(collection, options)

    async def search(self, query: str, options: Optional[QueryOptions] = None) -> PageResult:
        """Search every provider and return one page of the merged results."""
        options = options or QueryOptions()
        collection = await self._load_collection(
            get_search_cache_key(query, options), options, "search", query
        )
        return self._paginate(collection, options)

    async def get_by_address(self, address: str) -> Optional[Token]:
        """Get a single token, asking providers in order until one has it."""
        cache_key = get_address_cache_key(address)

        cached = await self._cache_get(cache_key)
        if cached is not None:
            try:
                return Token(**cached)
            except (ValidationError, TypeError) as e:
                logger.warning("Discarding malformed cached token", extra={
                    "key": cache_key,
                    "error": str(e)
                })

        wanted = address.lower()
        for provider in self.providers:
            try:
                tokens = await provider.fetch_by_address(address)
            except Exception as e:
                logger.error("Provider token lookup failed", extra={
                    "provider": provider.name,
                    "address": address,
                    "error": str(e)
                })
                continue

            # Pair listings may carry the requested token on the quote side only
            token = next((t for t in tokens if t.token_address.lower() == wanted), None)
            if token is None:
                continue

            await self._cache_set(cache_key, token.dict())
            return token

        logger.info("Token not found", extra={"address": address})
        return None

    async def invalidate(self) -> int:
        """Drop every cached aggregate, search and token entry."""
        try:
            deleted = await self.cache.delete_pattern(f"{CACHE_KEY_PREFIX}*")
        except Exception as e:
            logger.error("Cache invalidation failed", extra={"error": str(e)})
            return 0
        logger.info("Token cache invalidated", extra={"deleted": deleted})
        return deleted

    async def _load_collection(self, cache_key: str, options: QueryOptions, operation: str, *args: Any) -> TokenCollection:
        """Cache-aside read of the filtered and sorted collection."""
        cached = await self._cache_get(cache_key)
        if cached is not None:
            try:
                collection = TokenCollection(**cached)
                logger.info("Returning cached token data", extra={"key": cache_key})
                return collection
            except (ValidationError, TypeError) as e:
                logger.warning("Discarding malformed cache entry", extra={
                    "key": cache_key,
                    "error": str(e)
                })

        logger.info("Fetching fresh token data from all providers", extra={
            "operation": operation,
            "providers": [provider.name for provider in self.providers]
        })

        batches = await self._gather(operation, *args)
        all_tokens = [token for batch in batches for token in batch]

        merged = merge_tokens(all_tokens)
        filtered = apply_filters(merged, options)
        collection = TokenCollection(tokens=apply_sort(filtered, options), timestamp=now_ms())

        logger.info("Aggregated token data", extra={
            "operation": operation,
            "fetched": len(all_tokens),
            "merged": len(merged),
            "filtered": len(collection.tokens)
        })

        await self._cache_set(cache_key, collection.dict())
        return collection

    async def _gather(self, operation: str, *args: Any) -> List[List[Token]]:
        """
        Run ``operation`` on every provider concurrently.

        Returns one token list per provider, in provider order. A provider
        that fails contributes an empty list and the failure is logged.
        """
        results = await asyncio.gather(
            *(getattr(provider, operation)(*args) for provider in self.providers),
            return_exceptions=True
        )

        batches: List[List[Token]] = []
        for provider, result in zip(self.providers, results):
            if isinstance(result, BaseException):
                logger.error("Provider fetch failed", extra={
                    "provider": provider.name,
                    "operation": operation,
                    "error": str(result),
                    "error_type": type(result).__name__
                })
                batches.append([])
            else:
                batches.append(list(result))
        return batches

    def _paginate(self, collection: TokenCollection, options: QueryOptions) -> PageResult:
        limit = resolve_limit(
            options.limit,
            self.settings.pagination_default_limit,
            self.settings.pagination_max_limit
        )
        return paginate(collection, limit, options.cursor)

    async def _cache_get(self, key: str) -> Optional[Any]:
        try:
            return await self.cache.get(key)
        except Exception as e:
            logger.error("Cache read failed, treating as miss", extra={"key": key, "error": str(e)})
            return None

    async def _cache_set(self, key: str, value: Any) -> None:
        try:
            await self.cache.set(key, value, self.settings.cache_ttl)
        except Exception as e:
            logger.error("Cache write failed", extra={"key": key, "error": str(e)})
