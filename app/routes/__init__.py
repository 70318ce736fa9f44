"""API routes for the Identity Core service."""

from .auth import router as auth_router
from .health import router as health_router
from .mfa import router as mfa_router
from .scim import router as scim_router
from .security import router as security_router
from .security import scim_token_router
from .sessions import router as sessions_router
from .sso import router as sso_router
from .sso_admin import router as sso_admin_router

__all__ = [
    "auth_router",
    "health_router",
    "mfa_router",
    "scim_router",
    "scim_token_router",
    "security_router",
    "sessions_router",
    "sso_admin_router",
    "sso_router",
]
