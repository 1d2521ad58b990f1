"""
Main FastAPI application for Token Aggregator Service.
Builds every component explicitly and manages their lifecycle.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import time

from .api.endpoints import router as api_router
from .api.rate_limit import throttle_requests
from .api.schemas import ErrorResponse
from .api.websocket import router as websocket_router
from .core.config import Settings, settings as default_settings
from .core.logging_config import setup_logging, create_logger
from .providers.base import BaseTokenProvider
from .providers.dexscreener_provider import DexScreenerProvider
from .providers.jupiter_provider import JupiterProvider
from .services.aggregation import AggregationService
from .services.broadcaster import TokenBroadcaster
from .services.cache import CacheService
from .services.connection_manager import ConnectionManager

logger = create_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    cache: Optional[CacheService] = None,
    providers: Optional[List[BaseTokenProvider]] = None
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Application settings, defaults to the environment-loaded instance
        cache: Cache service, defaults to a Redis-backed CacheService
        providers: Upstream providers in merge priority order,
            defaults to DexScreener followed by Jupiter
    """
    settings = settings or default_settings
    setup_logging(settings)

    cache = cache if cache is not None else CacheService(settings)
    if providers is None:
        providers = [DexScreenerProvider(settings), JupiterProvider(settings)]

    aggregation = AggregationService(providers, cache, settings)
    manager = ConnectionManager()
    broadcaster = TokenBroadcaster(aggregation, manager, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Connect the cache and providers, run the broadcaster, and tear everything down on exit."""
        logger.info("Starting Token Aggregator Service", extra={
            "version": settings.app_version,
            "debug": settings.debug
        })

        await cache.connect()
        for provider in providers:
            await provider.connect()
        broadcaster.start()
        app.state.started_at = datetime.utcnow()

        logger.info("Token Aggregator Service started successfully", extra={
            "providers": [provider.name for provider in providers]
        })

        yield  # Application is running

        logger.info("Shutting down Token Aggregator Service")

        await broadcaster.stop()
        for provider in providers:
            try:
                await provider.disconnect()
            except Exception as e:
                logger.warning("Error disconnecting provider", extra={
                    "provider": provider.name,
                    "error": str(e)
                })
        await cache.disconnect()

        logger.info("Token Aggregator Service shutdown completed")

    app = FastAPI(
        title=settings.app_name,
        description="Token market data aggregation with realtime change notifications",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan
    )

    app.state.settings = settings
    app.state.cache = cache
    app.state.providers = providers
    app.state.aggregation = aggregation
    app.state.connection_manager = manager
    app.state.broadcaster = broadcaster
    app.state.started_at = datetime.utcnow()

    # Middleware registered later runs first: logging wraps throttling
    app.middleware("http")(throttle_requests)
    app.middleware("http")(log_requests)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, internal_error_handler)

    app.include_router(api_router, tags=["Tokens"])
    app.include_router(websocket_router)

    @app.get("/", include_in_schema=False)
    async def root():
        """Root endpoint with service information."""
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "status": "running",
            "endpoints": {
                "health": "/api/health",
                "tokens": "/api/tokens",
                "search": "/api/tokens/search?q=<query>",
                "token_by_address": "/api/tokens/{address}",
                "refresh": "/api/tokens/refresh (POST)"
            },
            "websocket": {
                "url": "/ws",
                "inbound_events": ["set_filters", "subscribe_token", "unsubscribe_token", "refresh"],
                "outbound_events": [
                    "initial_data", "filtered_data", "price_updates",
                    "volume_spikes", "token_update", "error"
                ]
            },
            "timestamp": datetime.utcnow()
        }

    return app


async def log_requests(request: Request, call_next):
    """Log all HTTP requests and responses."""
    start_time = time.time()

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info("Request completed", extra={
        "method": request.method,
        "url": str(request.url),
        "status_code": response.status_code,
        "process_time": round(process_time, 4),
        "client_ip": request.client.host if request.client else None
    })

    response.headers["X-Process-Time"] = str(process_time)
    return response


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions with structured error response."""
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(ErrorResponse(
            error=str(exc.detail),
            error_code="NOT_FOUND" if exc.status_code == 404 else f"HTTP_{exc.status_code}",
            details={"path": request.url.path, "method": request.method}
        ))
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report invalid query parameters as client errors."""
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder(ErrorResponse(
            error="Validation error",
            error_code="VALIDATION_ERROR",
            details={"errors": [
                {"loc": list(error.get("loc", ())), "msg": error.get("msg")}
                for error in exc.errors()
            ]}
        ))
    )


async def internal_error_handler(request: Request, exc: Exception):
    """Handle unexpected errors with a generic structured response."""
    logger.error("Internal server error", extra={
        "path": request.url.path,
        "method": request.method,
        "error": str(exc)
    })

    return JSONResponse(
        status_code=500,
        content=jsonable_encoder(ErrorResponse(
            error="Internal server error",
            error_code="INTERNAL_ERROR"
        ))
    )


# Application instance for uvicorn
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "token_aggregator.main:app",
        host=default_settings.server_host,
        port=default_settings.server_port,
        reload=default_settings.debug,
        log_level=default_settings.log_level.lower(),
        access_log=True
    )
