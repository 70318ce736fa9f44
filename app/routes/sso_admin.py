"""
SSO Administration API Endpoints.

This module provides REST endpoints for SSO configuration management:
- Read the organization's SSO configuration (secrets masked)
- Save a SAML or OIDC configuration
- Delete the configuration
- Test a stored or submitted configuration

Security Considerations:
- All endpoints require the owner or admin role
- Configurations are validated before storage
- Secrets are never returned, only a mask
- Configuration changes are logged for audit
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import TypeAdapter

from app.dependencies import AdminContext, get_sso_config_service, require_org_admin
from app.exceptions import ErrorCode, ResourceNotFoundError, ValidationError
from src.auth.sso.config_service import SSOConfigService
from src.auth.sso.helpers import oidc_callback_url, saml_acs_url, saml_metadata_url
from src.config import get_settings
from src.types.sso import SSOConfigUpdate, SSOTestResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/organizations/{org_id}/sso", tags=["sso-admin"])

_update_adapter: TypeAdapter = TypeAdapter(SSOConfigUpdate)


# =============================================================================
# Helper Functions
# =============================================================================


def _service_provider_urls(organization_slug: str) -> Dict[str, str]:
    """URLs an administrator enters at the identity provider."""
    app_url = get_settings().app.app_url
    return {
        "saml_metadata_url": saml_metadata_url(app_url, organization_slug),
        "saml_acs_url": saml_acs_url(app_url, organization_slug),
        "oidc_callback_url": oidc_callback_url(app_url, organization_slug),
    }


async def _read_update(request: Request, required: bool = True) -> Optional[Any]:
    """Parse a SAML or OIDC configuration body, discriminated on ``protocol``."""
    raw = await request.body()
    if not raw.strip():
        if required:
            raise ValidationError("Request body is required")
        return None

    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON")

    return _update_adapter.validate_python(payload)


# =============================================================================
# Configuration Endpoints
# =============================================================================


@router.get(
    "",
    summary="Get SSO Configuration",
    description="Get the organization's SSO configuration with secrets masked.",
)
async def get_sso_config(
    admin: AdminContext = Depends(require_org_admin),
    config_service: SSOConfigService = Depends(get_sso_config_service),
) -> Dict[str, Any]:
    config = await config_service.get_masked(admin.organization.id)
    return {
        "configured": config is not None,
        "config": config,
        "service_provider": _service_provider_urls(admin.organization.slug),
    }


@router.put(
    "",
    summary="Save SSO Configuration",
    description="Validate and save a SAML or OIDC configuration, making it active.",
)
async def save_sso_config(
    request: Request,
    admin: AdminContext = Depends(require_org_admin),
    config_service: SSOConfigService = Depends(get_sso_config_service),
) -> Dict[str, Any]:
    """
    Save the organization's SSO configuration.

    The OIDC client secret follows a three-state update: omitted or
    ``{"action": "keep"}`` keeps the stored secret, ``clear`` removes it and
    ``set`` replaces it.
    """
    update = await _read_update(request)
    saved = await config_service.save(admin.organization, update)

    logger.info(
        f"SSO configuration updated for org {admin.organization.id} by user {admin.user.id}"
    )
    return {"success": True, "config": saved}


@router.delete(
    "",
    status_code=status.HTTP_200_OK,
    summary="Delete SSO Configuration",
    description="Delete every stored SSO configuration for the organization.",
)
async def delete_sso_config(
    admin: AdminContext = Depends(require_org_admin),
    config_service: SSOConfigService = Depends(get_sso_config_service),
) -> Dict[str, Any]:
    deleted = await config_service.delete(admin.organization)
    if not deleted:
        raise ResourceNotFoundError(
            "SSO is not configured for this organization",
            resource_type="SSO configuration",
            error_code=ErrorCode.SSO_NOT_CONFIGURED,
        )

    logger.info(f"SSO configuration deleted for org {admin.organization.id} by user {admin.user.id}")
    return {"success": True}


@router.post(
    "/test",
    response_model=SSOTestResult,
    summary="Test SSO Configuration",
    description="Test a submitted configuration, or the stored one when the body is empty.",
)
async def test_sso_config(
    request: Request,
    admin: AdminContext = Depends(require_org_admin),
    config_service: SSOConfigService = Depends(get_sso_config_service),
) -> SSOTestResult:
    update = await _read_update(request, required=False)
    result = await config_service.test_update(admin.organization, update)

    logger.info(
        f"SSO configuration test for org {admin.organization.id}: "
        f"{'passed' if result.success else 'failed'}"
    )
    return result
