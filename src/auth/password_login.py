"""
Password sign-in.

A password login is refused outright when any organization the user
belongs to enforces SSO, before the rest of the security policies are
evaluated. Otherwise it starts the same kind of session an SSO login
does, scoped to the organization the user signed in to.
"""

import logging
from typing import Optional

from src.auth.passwords import check_password
from src.auth.sessions import SessionManager
from src.auth.sso.login import MFA_CHALLENGE_PATH, MFA_SETUP_PATH, SSOLoginResult
from src.mfa.service import MFAService
from src.security.context import load_security_contexts
from src.security.policies import (
    effective_session_timeout,
    ensure_compliance,
    ensure_sso_login_allowed,
    requires_mfa,
)
from src.storage.directory import DirectoryStore
from src.types.directory import Organization


logger = logging.getLogger(__name__)


class InvalidCredentialsError(Exception):
    """Unknown email, wrong password, or no membership in the organization."""

    error_code = "INVALID_CREDENTIALS"

    def __init__(self, message: str = "Invalid email or password"):
        super().__init__(message)
        self.message = message


async def complete_password_login(
    store: DirectoryStore,
    sessions: SessionManager,
    mfa_service: MFAService,
    organization: Organization,
    email: str,
    password: str,
    client_ip: Optional[str],
) -> SSOLoginResult:
    """
    Check a password and start a session in ``organization``.

    Raises:
        InvalidCredentialsError: The email and password do not match a member
        SSOEnforcedError: An organization of the user requires SSO
        SecurityPolicyViolation: IP allow-list rejects the caller
    """
    user = await store.get_user_by_email(email.strip().lower())
    if user is None or not user.password_hash or not check_password(password, user.password_hash):
        raise InvalidCredentialsError()

    if await store.get_membership(organization.id, user.id) is None:
        logger.info(f"Password login for user {user.id} outside org {organization.id}")
        raise InvalidCredentialsError()

    contexts = await load_security_contexts(store, user.id)
    ensure_sso_login_allowed(contexts)

    mfa_enrolled = await mfa_service.is_enabled(user.id)
    mfa_pending = mfa_enrolled or requires_mfa(contexts)
    ensure_compliance(contexts, has_mfa=mfa_pending, ip_address=client_ip)

    timeout_minutes = effective_session_timeout(contexts)
    token, session = await sessions.create(
        user,
        organization,
        None,
        timeout_minutes,
        mfa_pending=mfa_pending,
        ip_address=client_ip,
    )

    mfa_step = None
    if mfa_pending:
        mfa_step = MFA_CHALLENGE_PATH if mfa_enrolled else MFA_SETUP_PATH

    logger.info(
        f"Password login completed for user {user.id} in org {organization.id} "
        f"(mfa_pending={mfa_pending})"
    )
    return SSOLoginResult(
        token=token,
        session=session,
        user=user,
        timeout_minutes=timeout_minutes,
        mfa_step=mfa_step,
    )
