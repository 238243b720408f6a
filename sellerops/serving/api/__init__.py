"""
API Module
"""
from .middleware import RequestLoggingMiddleware
from .routes import health_router, profit_router, reconciliation_router, sync_router

__all__ = [
    "RequestLoggingMiddleware",
    "health_router",
    "profit_router",
    "reconciliation_router",
    "sync_router",
]
