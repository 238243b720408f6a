"""
FastAPI Production Application

Main entry point for the seller operations API.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from sellerops.config import get_settings
from sellerops.config.logging import configure_logging
from sellerops.database.connection import close_database, init_database
from sellerops.errors import (
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    SellerOpsError,
    StateConflictError,
    VendorApiError,
)
from sellerops.serving.api import (
    RequestLoggingMiddleware,
    health_router,
    profit_router,
    reconciliation_router,
    sync_router,
)
from sellerops.serving.cache import close_redis, init_redis

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()
    logger.info("Starting seller operations API", environment=settings.app_env)

    await init_database(create_schema=not settings.is_production)

    try:
        await init_redis()
    except (RedisError, OSError) as e:
        # profit reads fall through to the database
        logger.warning("Redis unavailable, caching disabled", error=str(e))

    yield

    logger.info("Shutting down...")
    await close_redis()
    await close_database()


app = FastAPI(
    title="Seller Operations API",
    description="Amazon SP-API sync, FBA reconciliation and profit reporting",
    version=settings.version,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(StateConflictError)
async def state_conflict_handler(request: Request, exc: StateConflictError) -> JSONResponse:
    logger.warning("State conflict", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=409, content=exc.to_dict())


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"error": str(exc)})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(VendorApiError)
async def vendor_error_handler(request: Request, exc: VendorApiError) -> JSONResponse:
    logger.error("Vendor API error", path=request.url.path, status_code=exc.status_code, error=str(exc))
    return JSONResponse(status_code=502, content={"error": str(exc), "vendor_status": exc.status_code})


@app.exception_handler(SellerOpsError)
async def sellerops_error_handler(request: Request, exc: SellerOpsError) -> JSONResponse:
    logger.error("Unhandled service error", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(status_code=500, content={"status": "failed", "error": str(exc), "error_type": type(exc).__name__})


# =============================================================================
# ROUTES
# =============================================================================

app.include_router(health_router, prefix="/api/v1", tags=["Health"])
app.include_router(sync_router, prefix="/api/v1/sync", tags=["Sync"])
app.include_router(reconciliation_router, prefix="/api/v1/fba-shipments", tags=["FBA Shipments"])
app.include_router(profit_router, prefix="/api/v1/profit", tags=["Profit"])


@app.get("/api/v1/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": "Seller Operations API",
        "version": settings.version,
        "environment": settings.app_env,
        "documentation": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
