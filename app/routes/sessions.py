"""
Organization session administration.

Owners and admins can list the live sessions in their organization and
revoke one of them, or all of them except their own user's.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from app.dependencies import (
    AdminContext,
    get_current_session,
    get_session_manager,
    require_org_admin,
)
from app.exceptions import ResourceNotFoundError
from src.auth.sessions import SessionManager, UserSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/organizations/{org_id}/sessions", tags=["sessions"])


def _session_summary(session: UserSession, current: UserSession) -> Dict[str, Any]:
    return {
        "id": session.session_hash,
        "user_id": session.user_id,
        "email": session.email,
        "protocol": session.protocol.value if session.protocol else "password",
        "ip_address": session.ip_address,
        "mfa_pending": session.mfa_pending,
        "current": session.session_hash == current.session_hash,
        "created_at": session.created_at.isoformat(),
        "expires_at": session.expires_at.isoformat(),
    }


@router.get(
    "",
    summary="List Sessions",
    description="List the live sessions in the organization, newest first.",
)
async def list_sessions(
    admin: AdminContext = Depends(require_org_admin),
    current: UserSession = Depends(get_current_session),
    sessions: SessionManager = Depends(get_session_manager),
) -> Dict[str, Any]:
    listed = await sessions.list_for_organization(admin.organization.id)
    return {"sessions": [_session_summary(s, current) for s in listed]}


@router.delete(
    "",
    summary="Revoke All Sessions",
    description="Revoke every session in the organization except the caller's own.",
)
async def revoke_all_sessions(
    admin: AdminContext = Depends(require_org_admin),
    sessions: SessionManager = Depends(get_session_manager),
) -> Dict[str, Any]:
    count = await sessions.revoke_organization(
        admin.organization.id, except_user_id=admin.user.id
    )
    logger.info(
        f"{count} sessions revoked in org {admin.organization.id} by user {admin.user.id}"
    )
    return {"message": f"{count} sessions revoked", "count": count}


@router.delete(
    "/{session_id}",
    summary="Revoke Session",
    description="Revoke one session in the organization.",
)
async def revoke_session(
    session_id: str,
    admin: AdminContext = Depends(require_org_admin),
    sessions: SessionManager = Depends(get_session_manager),
) -> Dict[str, Any]:
    revoked = await sessions.revoke_in_organization(admin.organization.id, session_id)
    if revoked is None:
        raise ResourceNotFoundError(resource_type="Session")

    logger.info(
        f"Session of user {revoked.user_id} revoked in org {admin.organization.id} "
        f"by user {admin.user.id}"
    )
    return {"message": "Session revoked"}
