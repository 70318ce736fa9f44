"""
FastAPI dependencies for the caller's session and organization role.

This module provides:
- Session lookup from the session cookie
- Current user resolution
- Organization admin checks for configuration endpoints
- Session cookie helpers

Usage:
    @router.get("/items")
    async def list_items(session: UserSession = Depends(get_current_session)):
        ...

    @router.put("/organizations/{org_id}/sso")
    async def update(admin: AdminContext = Depends(require_org_admin)):
        ...
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from fastapi import Depends, Path, Request, Response

from app.dependencies.services import get_session_manager, get_store
from app.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ErrorCode,
    ResourceNotFoundError,
)
from src.auth.sessions import SessionManager, UserSession
from src.config import get_settings
from src.security.network import is_ip_allowed
from src.storage.directory import DirectoryStore
from src.types.directory import Membership, Organization, User
from src.types.security import ADMIN_ROLES
from src.utils.logging import set_request_context

logger = logging.getLogger(__name__)


# =============================================================================
# Request Context Extraction
# =============================================================================


def get_client_ip(
    request: Request,
    trusted_proxies: Optional[List[str]] = None,
) -> Optional[str]:
    """
    Client IP address.

    ``X-Forwarded-For`` is only read when the connecting peer is a trusted
    proxy (``TRUSTED_PROXIES``). The chain is walked from the nearest hop
    and the first address that is not itself a trusted proxy is the client.
    """
    if trusted_proxies is None:
        trusted_proxies = get_settings().app.trusted_proxies_list

    peer = request.client.host if request.client else None
    forwarded_for = request.headers.get("X-Forwarded-For")
    if not forwarded_for or not peer or not is_ip_allowed(peer, trusted_proxies):
        return peer

    hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not is_ip_allowed(hop, trusted_proxies):
            return hop
    return hops[0] if hops else peer


def get_session_token(request: Request) -> Optional[str]:
    """Session token from either cookie name."""
    app_settings = get_settings().app
    return request.cookies.get(app_settings.cookie_name) or request.cookies.get(
        app_settings.session_cookie_name
    )


# =============================================================================
# Cookie Helpers
# =============================================================================


def set_session_cookie(response: Response, token: str, max_age_seconds: int) -> None:
    app_settings = get_settings().app
    response.set_cookie(
        key=app_settings.cookie_name,
        value=token,
        max_age=max_age_seconds,
        httponly=True,
        secure=app_settings.is_production,
        samesite="lax",
        path="/",
    )


def clear_session_cookies(response: Response) -> None:
    app_settings = get_settings().app
    for name in (app_settings.session_cookie_name, app_settings.secure_session_cookie_name):
        response.delete_cookie(
            key=name,
            path="/",
            secure=name.startswith("__Secure-"),
            httponly=True,
            samesite="lax",
        )


# =============================================================================
# Session Dependencies
# =============================================================================


async def get_optional_session(
    request: Request,
    sessions: SessionManager = Depends(get_session_manager),
) -> Optional[UserSession]:
    session = await sessions.get(get_session_token(request))
    if session is not None:
        request.state.user_id = session.user_id
        set_request_context(user_id=session.user_id, organization_id=session.organization_id)
    return session


async def get_session_allow_pending_mfa(
    session: Optional[UserSession] = Depends(get_optional_session),
) -> UserSession:
    """A session that may still be waiting for its second factor."""
    if session is None:
        raise AuthenticationError()
    return session


async def get_current_session(
    session: UserSession = Depends(get_session_allow_pending_mfa),
) -> UserSession:
    """A fully authenticated session."""
    if session.mfa_pending:
        raise AuthenticationError(
            "Multi-factor verification is required to continue",
            error_code=ErrorCode.MFA_REQUIRED,
        )
    return session


async def _load_user(store: DirectoryStore, session: UserSession) -> User:
    user = await store.get_user(session.user_id)
    if user is None:
        logger.warning(f"Session references missing user {session.user_id}")
        raise AuthenticationError(error_code=ErrorCode.SESSION_EXPIRED)
    return user


async def get_current_user(
    session: UserSession = Depends(get_current_session),
    store: DirectoryStore = Depends(get_store),
) -> User:
    return await _load_user(store, session)


async def get_user_allow_pending_mfa(
    session: UserSession = Depends(get_session_allow_pending_mfa),
    store: DirectoryStore = Depends(get_store),
) -> User:
    return await _load_user(store, session)


# =============================================================================
# Organization Authorization
# =============================================================================


@dataclass
class AdminContext:
    """An organization admin acting on their organization."""

    user: User
    organization: Organization
    membership: Membership


async def require_org_admin(
    org_id: str = Path(..., description="Organization ID"),
    user: User = Depends(get_current_user),
    store: DirectoryStore = Depends(get_store),
) -> AdminContext:
    """
    Require the owner or admin role in the addressed organization.

    Raises:
        ResourceNotFoundError: Unknown organization
        AuthorizationError: Caller is not an owner or admin there
    """
    organization = await store.get_organization(org_id)
    if organization is None:
        raise ResourceNotFoundError(
            resource_type="Organization",
            error_code=ErrorCode.ORGANIZATION_NOT_FOUND,
        )

    membership = await store.get_membership(org_id, user.id)
    if membership is None or membership.role not in ADMIN_ROLES:
        logger.warning(f"User {user.id} denied admin access to org {org_id}")
        raise AuthorizationError(
            "Organization owner or admin role required",
            required_role="admin",
            error_code=ErrorCode.INSUFFICIENT_PERMISSIONS,
        )

    return AdminContext(user=user, organization=organization, membership=membership)
