"""
FastAPI dependencies for the Identity Core API.

This module provides reusable dependencies for:
- Service construction over the configured stores
- Session and current-user resolution
- Organization admin authorization

Usage:
    from app.dependencies import (
        get_current_session,
        require_org_admin,
        get_sso_config_service,
    )
"""

from app.dependencies.services import (
    get_backchannel_handler,
    get_mfa_service,
    get_scim_service,
    get_session_manager,
    get_sso_config_service,
    get_state_store,
    get_store,
    get_ttl,
)
from app.dependencies.session import (
    AdminContext,
    clear_session_cookies,
    get_client_ip,
    get_current_session,
    get_current_user,
    get_optional_session,
    get_session_allow_pending_mfa,
    get_session_token,
    get_user_allow_pending_mfa,
    require_org_admin,
    set_session_cookie,
)

__all__ = [
    # Services
    "get_backchannel_handler",
    "get_mfa_service",
    "get_scim_service",
    "get_session_manager",
    "get_sso_config_service",
    "get_state_store",
    "get_store",
    "get_ttl",
    # Session
    "AdminContext",
    "clear_session_cookies",
    "get_client_ip",
    "get_current_session",
    "get_current_user",
    "get_optional_session",
    "get_session_allow_pending_mfa",
    "get_session_token",
    "get_user_allow_pending_mfa",
    "require_org_admin",
    "set_session_cookie",
]
