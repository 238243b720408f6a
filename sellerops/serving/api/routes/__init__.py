"""
API Routes Module
"""
from .health import router as health_router
from .profit import router as profit_router
from .reconciliation import router as reconciliation_router
from .sync import router as sync_router

__all__ = [
    "health_router",
    "profit_router",
    "reconciliation_router",
    "sync_router",
]
