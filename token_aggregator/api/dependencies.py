"""
FastAPI dependency providers.
Components are built once in the application factory and kept on ``app.state``.
"""

from fastapi import Request

from ..services.aggregation import AggregationService
from ..services.broadcaster import TokenBroadcaster
from ..services.cache import CacheService


def get_cache_service(request: Request) -> CacheService:
    return request.app.state.cache


def get_aggregation_service(request: Request) -> AggregationService:
    return request.app.state.aggregation


def get_broadcaster(request: Request) -> TokenBroadcaster:
    return request.app.state.broadcaster
