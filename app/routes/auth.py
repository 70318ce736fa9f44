"""
Password sign-in endpoint.

Members of organizations that enforce SSO are turned away with
``SSO_REQUIRED`` and the slugs of the organizations to sign in through.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.dependencies import (
    get_client_ip,
    get_mfa_service,
    get_session_manager,
    get_store,
    set_session_cookie,
)
from app.exceptions import AuthenticationError, ErrorCode
from src.auth.password_login import InvalidCredentialsError, complete_password_login
from src.auth.sessions import SessionManager
from src.mfa.service import MFAService
from src.storage.directory import DirectoryStore
from src.types.directory import PasswordLoginRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post(
    "/login",
    summary="Sign In With Password",
    description="Check an email and password and start a session in the organization.",
)
async def password_login(
    body: PasswordLoginRequest,
    request: Request,
    store: DirectoryStore = Depends(get_store),
    sessions: SessionManager = Depends(get_session_manager),
    mfa_service: MFAService = Depends(get_mfa_service),
) -> JSONResponse:
    try:
        organization = await store.get_organization_by_slug(body.organization)
        if organization is None:
            raise InvalidCredentialsError()
        result = await complete_password_login(
            store,
            sessions,
            mfa_service,
            organization,
            email=body.email,
            password=body.password,
            client_ip=get_client_ip(request),
        )
    except InvalidCredentialsError as e:
        raise AuthenticationError(e.message, error_code=ErrorCode.INVALID_CREDENTIALS)

    response = JSONResponse(
        {
            "success": True,
            "mfa_step": result.mfa_step,
            "user": {"id": result.user.id, "email": result.user.email},
            "organization_slug": organization.slug,
            "expires_at": result.session.expires_at.isoformat(),
        }
    )
    set_session_cookie(response, result.token, result.max_age_seconds)
    return response
