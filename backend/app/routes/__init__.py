"""API routes."""

from .admin import router as admin_router
from .cron import router as cron_router
from .orders import router as orders_router
from .products import router as products_router

__all__ = [
    "admin_router",
    "cron_router",
    "orders_router",
    "products_router",
]
