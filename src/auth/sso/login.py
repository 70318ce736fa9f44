"""
Completing an SSO login.

Once a protocol engine has produced a validated ``SSOUserProfile`` the
remaining steps are protocol independent:

1. Check the organization still allows SSO and the email domain
2. Provision the user and membership just in time
3. Evaluate the user's security policies (MFA, IP allow-list, timeout)
4. Start a session, pending MFA when a second factor is due
"""

import logging
from dataclasses import dataclass
from typing import Optional

from src.auth.sessions import SessionManager, UserSession
from src.auth.sso.helpers import email_domain, is_email_domain_allowed
from src.mfa.service import MFAService
from src.security.context import load_security_contexts
from src.security.policies import (
    effective_session_timeout,
    ensure_compliance,
    requires_mfa,
)
from src.storage.directory import DirectoryStore
from src.types.directory import Organization, User
from src.types.security import OrganizationRole
from src.types.sso import SSOConfigBase, SSOUserProfile

logger = logging.getLogger(__name__)

MFA_CHALLENGE_PATH = "/mfa-challenge"
MFA_SETUP_PATH = "/mfa-setup"


class SSOLoginError(Exception):
    """An SSO login that cannot complete for this organization."""

    def __init__(self, message: str, error_code: str = "SSO_LOGIN_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


@dataclass
class SSOLoginResult:
    """A started session and where the browser goes next."""

    token: str
    session: UserSession
    user: User
    timeout_minutes: int
    mfa_step: Optional[str] = None

    @property
    def max_age_seconds(self) -> int:
        return self.timeout_minutes * 60


def _profile_name(profile: SSOUserProfile) -> Optional[str]:
    if profile.display_name:
        return profile.display_name
    parts = [p for p in (profile.first_name, profile.last_name) if p]
    return " ".join(parts) or None


async def provision_user(
    store: DirectoryStore,
    organization: Organization,
    profile: SSOUserProfile,
) -> User:
    """Find or create the user and make sure they belong to the organization."""
    email = profile.email.strip().lower()
    user = await store.get_user_by_email(email)
    if user is None:
        user = await store.create_user(email, name=_profile_name(profile))
        logger.info(f"JIT-provisioned user {user.id} for org {organization.id}")

    if await store.get_membership(organization.id, user.id) is None:
        await store.add_membership(organization.id, user.id, OrganizationRole.MEMBER)
        logger.info(f"Added user {user.id} to org {organization.id} on SSO login")

    return user


async def complete_sso_login(
    store: DirectoryStore,
    sessions: SessionManager,
    mfa_service: MFAService,
    organization: Organization,
    config: SSOConfigBase,
    profile: SSOUserProfile,
    client_ip: Optional[str],
    id_token: Optional[str] = None,
) -> SSOLoginResult:
    """
    Turn a validated IdP profile into a session.

    Raises:
        SSOLoginError: SSO disabled or email domain not allowed
        SecurityPolicyViolation: IP allow-list rejects the caller
    """
    if not config.enabled:
        raise SSOLoginError("SSO is not enabled for this organization", "SSO_NOT_ENABLED")

    if not is_email_domain_allowed(profile.email, config.allowed_domains):
        logger.warning(
            f"SSO login rejected for org {organization.id}: "
            f"domain {email_domain(profile.email)} not allowed"
        )
        raise SSOLoginError(
            "Your email domain is not allowed for this organization",
            "EMAIL_DOMAIN_NOT_ALLOWED",
        )

    user = await provision_user(store, organization, profile)
    contexts = await load_security_contexts(store, user.id)

    mfa_enrolled = await mfa_service.is_enabled(user.id)
    mfa_pending = mfa_enrolled or requires_mfa(contexts)

    # The pending second-factor step satisfies the MFA requirement here
    ensure_compliance(contexts, has_mfa=mfa_pending, ip_address=client_ip)

    timeout_minutes = effective_session_timeout(contexts)
    token, session = await sessions.create(
        user,
        organization,
        profile,
        timeout_minutes,
        id_token=id_token,
        mfa_pending=mfa_pending,
        ip_address=client_ip,
    )

    mfa_step = None
    if mfa_pending:
        mfa_step = MFA_CHALLENGE_PATH if mfa_enrolled else MFA_SETUP_PATH

    logger.info(
        f"SSO login completed for user {user.id} in org {organization.id} "
        f"(protocol={profile.protocol.value}, mfa_pending={mfa_pending})"
    )
    return SSOLoginResult(
        token=token,
        session=session,
        user=user,
        timeout_minutes=timeout_minutes,
        mfa_step=mfa_step,
    )
