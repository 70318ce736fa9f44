"""
SCIM 2.0 provisioning endpoints.

This module provides the Users and Groups resources an identity provider
uses to push directory changes into an organization:
- /scim/v2/{org_id}/Users
- /scim/v2/{org_id}/Groups

Every request carries the organization's SCIM bearer token. Responses,
including errors, use ``application/scim+json`` and the SCIM error schema.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response, status
from fastapi.responses import JSONResponse

from app.dependencies import get_scim_service, get_store
from src.scim.auth import extract_bearer_token, verify_scim_token
from src.scim.service import SCIMService
from src.scim.types import SCIM_CONTENT_TYPE, SCIMError, SCIMUnauthorizedError
from src.storage.directory import DirectoryStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scim/v2/{org_id}", tags=["scim"])


# =============================================================================
# Dependencies and Helpers
# =============================================================================


async def require_scim_token(
    request: Request,
    org_id: str = Path(..., description="Organization ID"),
    store: DirectoryStore = Depends(get_store),
) -> str:
    """
    Authorize the request with the organization's SCIM bearer token.

    Returns:
        The organization ID

    Raises:
        SCIMUnauthorizedError: Unknown organization, SCIM disabled, or a
            missing or wrong token
    """
    token = extract_bearer_token(request.headers.get("Authorization"))
    organization = await store.get_organization(org_id)
    if not verify_scim_token(organization, token):
        logger.warning(f"SCIM request rejected for org {org_id}: invalid bearer token")
        raise SCIMUnauthorizedError()
    return org_id


def scim_response(content: Dict[str, Any], status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(content=content, status_code=status_code, media_type=SCIM_CONTENT_TYPE)


def scim_no_content() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT, media_type=SCIM_CONTENT_TYPE)


async def read_scim_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise SCIMError(400, "Request body is not valid JSON", "invalidSyntax")


# =============================================================================
# Users
# =============================================================================


@router.get("/Users", summary="List SCIM users")
async def list_users(
    org_id: str = Depends(require_scim_token),
    filter: Optional[str] = Query(None, description='SCIM filter, e.g. userName eq "a@b.com"'),
    start_index: Optional[int] = Query(None, alias="startIndex"),
    count: Optional[int] = Query(None),
    service: SCIMService = Depends(get_scim_service),
) -> JSONResponse:
    return scim_response(await service.list_users(org_id, filter, start_index, count))


@router.post("/Users", summary="Create SCIM user")
async def create_user(
    request: Request,
    org_id: str = Depends(require_scim_token),
    service: SCIMService = Depends(get_scim_service),
) -> JSONResponse:
    body = await read_scim_body(request)
    return scim_response(
        await service.create_user(org_id, body), status_code=status.HTTP_201_CREATED
    )


@router.get("/Users/{user_id}", summary="Get SCIM user")
async def get_user(
    user_id: str,
    org_id: str = Depends(require_scim_token),
    service: SCIMService = Depends(get_scim_service),
) -> JSONResponse:
    return scim_response(await service.get_user(org_id, user_id))


@router.put("/Users/{user_id}", summary="Replace SCIM user")
async def replace_user(
    user_id: str,
    request: Request,
    org_id: str = Depends(require_scim_token),
    service: SCIMService = Depends(get_scim_service),
) -> JSONResponse:
    body = await read_scim_body(request)
    return scim_response(await service.replace_user(org_id, user_id, body))


@router.patch("/Users/{user_id}", summary="Patch SCIM user")
async def patch_user(
    user_id: str,
    request: Request,
    org_id: str = Depends(require_scim_token),
    service: SCIMService = Depends(get_scim_service),
) -> JSONResponse:
    body = await read_scim_body(request)
    return scim_response(await service.patch_user(org_id, user_id, body))


@router.delete("/Users/{user_id}", summary="Delete SCIM user")
async def delete_user(
    user_id: str,
    org_id: str = Depends(require_scim_token),
    service: SCIMService = Depends(get_scim_service),
) -> Response:
    await service.delete_user(org_id, user_id)
    return scim_no_content()


# =============================================================================
# Groups
# =============================================================================


@router.get("/Groups", summary="List SCIM groups")
async def list_groups(
    org_id: str = Depends(require_scim_token),
    filter: Optional[str] = Query(None, description='SCIM filter, e.g. displayName eq "Eng"'),
    start_index: Optional[int] = Query(None, alias="startIndex"),
    count: Optional[int] = Query(None),
    service: SCIMService = Depends(get_scim_service),
) -> JSONResponse:
    return scim_response(await service.list_groups(org_id, filter, start_index, count))


@router.post("/Groups", summary="Create SCIM group")
async def create_group(
    request: Request,
    org_id: str = Depends(require_scim_token),
    service: SCIMService = Depends(get_scim_service),
) -> JSONResponse:
    body = await read_scim_body(request)
    return scim_response(
        await service.create_group(org_id, body), status_code=status.HTTP_201_CREATED
    )


@router.get("/Groups/{group_id}", summary="Get SCIM group")
async def get_group(
    group_id: str,
    org_id: str = Depends(require_scim_token),
    service: SCIMService = Depends(get_scim_service),
) -> JSONResponse:
    return scim_response(await service.get_group(org_id, group_id))


@router.put("/Groups/{group_id}", summary="Replace SCIM group")
async def replace_group(
    group_id: str,
    request: Request,
    org_id: str = Depends(require_scim_token),
    service: SCIMService = Depends(get_scim_service),
) -> JSONResponse:
    body = await read_scim_body(request)
    return scim_response(await service.replace_group(org_id, group_id, body))


@router.patch("/Groups/{group_id}", summary="Patch SCIM group")
async def patch_group(
    group_id: str,
    request: Request,
    org_id: str = Depends(require_scim_token),
    service: SCIMService = Depends(get_scim_service),
) -> JSONResponse:
    body = await read_scim_body(request)
    return scim_response(await service.patch_group(org_id, group_id, body))


@router.delete("/Groups/{group_id}", summary="Delete SCIM group")
async def delete_group(
    group_id: str,
    org_id: str = Depends(require_scim_token),
    service: SCIMService = Depends(get_scim_service),
) -> Response:
    await service.delete_group(org_id, group_id)
    return scim_no_content()
