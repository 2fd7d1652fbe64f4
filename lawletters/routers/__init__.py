"""Talk to My Lawyer - API Routers"""
from .auth import router as auth_router
from .letters import router as letters_router
from .coupons import router as coupons_router
from .subscriptions import router as subscriptions_router
from .webhooks import router as webhooks_router
from .admin import router as admin_router
from .events import router as events_router

__all__ = [
    "auth_router",
    "letters_router",
    "coupons_router",
    "subscriptions_router",
    "webhooks_router",
    "admin_router",
    "events_router",
]
