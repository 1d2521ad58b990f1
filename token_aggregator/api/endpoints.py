"""
FastAPI endpoints for Token Aggregator Service.
Serves the aggregated, filterable and paginated token feed.
"""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from .dependencies import get_aggregation_service, get_broadcaster, get_cache_service
from .schemas import HealthResponse, PageResult, QueryOptions, SortField, SortOrder, Token
from ..core.logging_config import create_logger
from ..services.aggregation import AggregationService
from ..services.broadcaster import TokenBroadcaster
from ..services.cache import CacheService

logger = create_logger(__name__)

# Create API router
router = APIRouter(prefix="/api")


@router.get("/health", response_model=HealthResponse)
async def health_check(
    request: Request,
    cache: CacheService = Depends(get_cache_service),
    broadcaster: TokenBroadcaster = Depends(get_broadcaster)
):
    """
    Health check endpoint.
    The service keeps serving without Redis, so a missing cache reports "degraded".
    """
    redis_healthy = await cache.health_check()
    uptime_seconds = (datetime.utcnow() - request.app.state.started_at).total_seconds()

    return HealthResponse(
        status="healthy" if redis_healthy else "degraded",
        version=request.app.state.settings.app_version,
        uptime_seconds=uptime_seconds,
        redis_connected=redis_healthy,
        broadcaster_running=broadcaster.is_running(),
        connected_clients=broadcaster.connected_clients()
    )


@router.get("/tokens", response_model=PageResult)
async def get_tokens(
    limit: Optional[int] = Query(None, description="Page size"),
    cursor: Optional[str] = Query(None, description="Cursor from a previous page"),
    sort_by: Optional[SortField] = Query(None, description="Sort field"),
    sort_order: Optional[SortOrder] = Query(None, description="Sort direction"),
    min_volume: Optional[float] = Query(None, description="Minimum 24h volume"),
    min_liquidity: Optional[float] = Query(None, description="Minimum liquidity"),
    aggregation: AggregationService = Depends(get_aggregation_service)
):
    """
    Get aggregated tokens from all providers.

    Returns:
        One page of merged tokens with the cursor for the next page
    """
    options = QueryOptions(
        limit=limit,
        cursor=cursor,
        sort_by=sort_by,
        sort_order=sort_order,
        min_volume=min_volume,
        min_liquidity=min_liquidity
    )
    logger.info("Tokens request received", extra=options.dict(exclude_none=True))

    try:
        return await aggregation.aggregate(options)
    except Exception as e:
        logger.error("Failed to aggregate tokens", extra={"error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to retrieve tokens")


@router.get("/tokens/search", response_model=PageResult)
async def search_tokens(
    q: Optional[str] = Query(None, description="Name, ticker or address to search for"),
    limit: Optional[int] = Query(None, description="Page size"),
    cursor: Optional[str] = Query(None, description="Cursor from a previous page"),
    sort_by: Optional[SortField] = Query(None, description="Sort field"),
    sort_order: Optional[SortOrder] = Query(None, description="Sort direction"),
    aggregation: AggregationService = Depends(get_aggregation_service)
):
    """Search tokens across all providers."""
    if not q or not q.strip():
        raise HTTPException(status_code=400, detail='Query parameter "q" is required')

    query = q.strip()
    options = QueryOptions(limit=limit, cursor=cursor, sort_by=sort_by, sort_order=sort_order)
    logger.info("Token search received", extra={"query": query})

    try:
        return await aggregation.search(query, options)
    except Exception as e:
        logger.error("Failed to search tokens", extra={"query": query, "error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to search tokens")


@router.get("/tokens/{address}", response_model=Token)
async def get_token(
    address: str,
    aggregation: AggregationService = Depends(get_aggregation_service)
):
    """Get a single token by address."""
    address = address.strip()
    logger.info("Token request received", extra={"address": address})

    try:
        token = await aggregation.get_by_address(address)
    except Exception as e:
        logger.error("Failed to retrieve token", extra={"address": address, "error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to retrieve token")

    if token is None:
        raise HTTPException(status_code=404, detail=f"Token not found: {address}")

    return token


@router.post("/tokens/refresh")
async def refresh_tokens(aggregation: AggregationService = Depends(get_aggregation_service)):
    """Invalidate every cached token result."""
    logger.info("Manual cache refresh requested")
    deleted = await aggregation.invalidate()

    return {
        "success": True,
        "message": "Cache refreshed successfully",
        "deleted_keys": deleted,
        "timestamp": datetime.utcnow()
    }
