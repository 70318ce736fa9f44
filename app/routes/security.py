"""
Organization security settings endpoints.

This module provides:
- Security policy read and update (password rules, session timeout,
  MFA enforcement, IP allow-list)
- Password checks against the organization's policy
- SCIM bearer token rotation and revocation

All endpoints require the owner or admin role in the organization.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.dependencies import AdminContext, get_store, require_org_admin
from src.auth.sso.helpers import scim_base_url
from src.config import get_settings
from src.scim.auth import issue_scim_token, revoke_scim_token
from src.security.policies import validate_password
from src.storage.directory import DirectoryStore
from src.types.security import SecurityPolicy, SecurityPolicyUpdate, default_security_policy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/organizations/{org_id}/security", tags=["security"])
scim_token_router = APIRouter(prefix="/organizations/{org_id}/scim", tags=["security"])


class PasswordCheckRequest(BaseModel):
    password: str = Field(..., max_length=256)


# =============================================================================
# Security Policy
# =============================================================================


@router.get(
    "",
    response_model=SecurityPolicy,
    summary="Get Security Policy",
    description="Get the organization's security policy, or the defaults if none was saved.",
)
async def get_security_policy(
    admin: AdminContext = Depends(require_org_admin),
    store: DirectoryStore = Depends(get_store),
) -> SecurityPolicy:
    policy = await store.get_security_policy(admin.organization.id)
    return policy or default_security_policy(admin.organization.id)


@router.put(
    "",
    response_model=SecurityPolicy,
    summary="Update Security Policy",
    description="Replace the organization's security policy.",
)
async def update_security_policy(
    update: SecurityPolicyUpdate,
    admin: AdminContext = Depends(require_org_admin),
    store: DirectoryStore = Depends(get_store),
) -> SecurityPolicy:
    policy = SecurityPolicy(organization_id=admin.organization.id, **update.model_dump())
    saved = await store.save_security_policy(policy)

    logger.info(
        f"Security policy updated for org {admin.organization.id} by user {admin.user.id} "
        f"(mfa_required={saved.mfa_required}, ip_allowlist={saved.ip_allowlist_enabled}, "
        f"timeout={saved.session_timeout_minutes}m)"
    )
    return saved


@router.post(
    "/password-check",
    summary="Check Password Against Policy",
    description="List the organization's password rules a candidate password does not meet.",
)
async def check_password(
    request: PasswordCheckRequest,
    admin: AdminContext = Depends(require_org_admin),
    store: DirectoryStore = Depends(get_store),
) -> Dict[str, Any]:
    policy = await store.get_security_policy(admin.organization.id)
    errors = validate_password(
        request.password, policy or default_security_policy(admin.organization.id)
    )
    return {"valid": not errors, "errors": errors}


# =============================================================================
# SCIM Token
# =============================================================================


@scim_token_router.post(
    "/token",
    summary="Rotate SCIM Token",
    description="Enable SCIM provisioning with a new bearer token. The token is shown once.",
)
async def rotate_scim_token(
    admin: AdminContext = Depends(require_org_admin),
    store: DirectoryStore = Depends(get_store),
) -> Dict[str, Any]:
    token = await issue_scim_token(store, admin.organization)
    logger.info(f"SCIM token rotated for org {admin.organization.id} by user {admin.user.id}")
    return {
        "token": token,
        "scim_base_url": scim_base_url(get_settings().app.app_url, admin.organization.id),
    }


@scim_token_router.delete(
    "/token",
    summary="Revoke SCIM Token",
    description="Disable SCIM provisioning and invalidate the bearer token.",
)
async def delete_scim_token(
    admin: AdminContext = Depends(require_org_admin),
    store: DirectoryStore = Depends(get_store),
) -> Dict[str, Any]:
    await revoke_scim_token(store, admin.organization)
    logger.info(f"SCIM token revoked for org {admin.organization.id} by user {admin.user.id}")
    return {"success": True}
