# api/__init__.py
from api.auth import (
    AuthConfig,
    require_user,
)
from api.payment_routes import router as payment_router

__all__ = [
    "AuthConfig",
    "require_user",
    "payment_router",
]
