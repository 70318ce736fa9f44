"""
MFA enrollment and verification endpoints.

This module provides:
- TOTP setup and enablement (with one-time backup codes)
- Second-factor verification for sessions waiting on MFA
- Backup code regeneration, status and disabling MFA

Setup, enable and verify accept a session that is still waiting for its
second factor, so a user required to use MFA can enroll during login.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from app.dependencies import (
    get_current_user,
    get_mfa_service,
    get_session_allow_pending_mfa,
    get_session_manager,
    get_user_allow_pending_mfa,
)
from app.exceptions import AuthenticationError, ErrorCode
from src.auth.sessions import SessionManager, UserSession
from src.mfa.service import MFAService
from src.types.directory import User
from src.types.mfa import (
    MFACodeRequest,
    MFADisableRequest,
    MFAEnableResult,
    MFASetupResult,
    MFAStatus,
    MFAVerificationResult,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/mfa", tags=["mfa"])


@router.post(
    "/setup",
    response_model=MFASetupResult,
    summary="Start MFA Setup",
    description="Generate a TOTP secret, otpauth URI and QR code.",
)
async def setup_mfa(
    user: User = Depends(get_user_allow_pending_mfa),
    mfa_service: MFAService = Depends(get_mfa_service),
) -> MFASetupResult:
    return await mfa_service.setup(user)


@router.post(
    "/enable",
    response_model=MFAEnableResult,
    summary="Enable MFA",
    description="Confirm the TOTP secret with a code. Returns backup codes once.",
)
async def enable_mfa(
    request: MFACodeRequest,
    user: User = Depends(get_user_allow_pending_mfa),
    session: UserSession = Depends(get_session_allow_pending_mfa),
    mfa_service: MFAService = Depends(get_mfa_service),
    sessions: SessionManager = Depends(get_session_manager),
) -> MFAEnableResult:
    """A code that enables MFA also completes a pending MFA step."""
    result = await mfa_service.enable(user, request.code)
    if session.mfa_pending:
        await sessions.mark_mfa_verified(session)
    return result


@router.post(
    "/verify",
    response_model=MFAVerificationResult,
    summary="Verify Second Factor",
    description="Verify a TOTP or backup code and complete a pending MFA step.",
)
async def verify_mfa(
    request: MFACodeRequest,
    user: User = Depends(get_user_allow_pending_mfa),
    session: UserSession = Depends(get_session_allow_pending_mfa),
    mfa_service: MFAService = Depends(get_mfa_service),
    sessions: SessionManager = Depends(get_session_manager),
) -> MFAVerificationResult:
    result = await mfa_service.verify(user, request.code)
    if not result.valid:
        raise AuthenticationError(
            "Invalid verification code",
            error_code=ErrorCode.INVALID_MFA_CODE,
        )

    if session.mfa_pending:
        await sessions.mark_mfa_verified(session)
        logger.info(f"MFA step completed for user {user.id} via {result.method.value}")
    return result


@router.post(
    "/backup-codes",
    summary="Regenerate Backup Codes",
    description="Replace every backup code. Requires a current TOTP code.",
)
async def regenerate_backup_codes(
    request: MFACodeRequest,
    user: User = Depends(get_current_user),
    mfa_service: MFAService = Depends(get_mfa_service),
) -> Dict[str, Any]:
    codes = await mfa_service.regenerate_backup_codes(user, request.code)
    return {"backup_codes": codes}


@router.post(
    "/disable",
    summary="Disable MFA",
    description="Remove MFA after checking the password and a second factor.",
)
async def disable_mfa(
    request: MFADisableRequest,
    user: User = Depends(get_current_user),
    mfa_service: MFAService = Depends(get_mfa_service),
) -> Dict[str, Any]:
    await mfa_service.disable(user, request.password, request.code)
    return {"success": True}


@router.get(
    "/status",
    response_model=MFAStatus,
    summary="MFA Status",
)
async def mfa_status(
    user: User = Depends(get_user_allow_pending_mfa),
    mfa_service: MFAService = Depends(get_mfa_service),
) -> MFAStatus:
    return await mfa_service.status(user)
