"""
Security policy evaluation across organization memberships.

A user may belong to several organizations, each with its own policy.
Every decision here composes those policies so that the most restrictive
rule wins:
- Password login is refused if any organization enforces SSO
- MFA is required if any organization requires it (globally or for the
  user's role in that organization)
- IP allow-listing applies if any organization enables it, against the
  union of all enabled allow-lists
- The session timeout is the minimum of all policies and the system default
"""

import logging
import re
from typing import Iterable, List, Optional, Sequence

from src.security.network import is_ip_allowed
from src.types.security import (
    DEFAULT_SESSION_TIMEOUT_MINUTES,
    SecurityPolicy,
    UserSecurityContext,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class SecurityPolicyViolation(Exception):
    """Access denied by an organization security policy."""

    def __init__(self, message: str, error_code: str = "SECURITY_POLICY_VIOLATION"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class SSOEnforcedError(SecurityPolicyViolation):
    """Password login attempted for an organization that enforces SSO."""

    def __init__(self, organization_slugs: Sequence[str]):
        names = ", ".join(organization_slugs) or "your organization"
        super().__init__(
            f"Password logins are disabled for {names}. "
            "Please sign in using your configured SSO provider.",
            error_code="SSO_REQUIRED",
        )
        self.organization_slugs = list(organization_slugs)


class MFARequiredError(SecurityPolicyViolation):
    """An organization requires MFA and the user has not enrolled."""

    def __init__(self):
        super().__init__(
            "Multi-factor authentication is required for this organization",
            error_code="MFA_REQUIRED",
        )


class IPAddressUnavailableError(SecurityPolicyViolation):
    """IP allow-listing is enforced but the client address is unknown."""

    def __init__(self):
        super().__init__(
            "Unable to determine your IP address for allow-list enforcement",
            error_code="IP_ADDRESS_UNAVAILABLE",
        )


class IPNotAllowedError(SecurityPolicyViolation):
    """The client address is not on any applicable allow-list."""

    def __init__(self):
        super().__init__(
            "Your IP address is not allowed by the configured allow-list",
            error_code="IP_NOT_ALLOWED",
        )


# =============================================================================
# Evaluation
# =============================================================================


def collect_active_policies(
    contexts: Iterable[UserSecurityContext],
) -> List[SecurityPolicy]:
    """Policies of every organization that has saved one."""
    return [c.security_policy for c in contexts if c.security_policy is not None]


def ensure_sso_login_allowed(contexts: Sequence[UserSecurityContext]) -> None:
    """
    Refuse password login when any organization enforces SSO.

    Raises:
        SSOEnforcedError: naming every enforcing organization
    """
    enforcing = [
        c.organization_slug
        for c in contexts
        if c.sso_config is not None and c.sso_config.enabled and c.sso_config.enforce_sso
    ]
    if enforcing:
        logger.info(f"Password login refused: SSO enforced by {', '.join(enforcing)}")
        raise SSOEnforcedError(enforcing)


def requires_mfa(contexts: Sequence[UserSecurityContext]) -> bool:
    """
    Whether any membership requires MFA.

    A policy requires MFA for the user if it sets a blanket requirement or
    lists the user's role in that same organization.
    """
    for context in contexts:
        policy = context.security_policy
        if policy is None:
            continue
        if policy.mfa_required:
            return True
        if context.role in policy.mfa_required_roles:
            return True
    return False


def ensure_compliance(
    contexts: Sequence[UserSecurityContext],
    has_mfa: bool,
    ip_address: Optional[str] = None,
) -> None:
    """
    Enforce MFA and IP allow-list requirements.

    Raises:
        MFARequiredError: MFA is required and the user has none
        IPAddressUnavailableError: allow-listing applies but no IP is known
        IPNotAllowedError: the IP matches no allow-list entry
    """
    if requires_mfa(contexts) and not has_mfa:
        raise MFARequiredError()

    ip_policies = [p for p in collect_active_policies(contexts) if p.ip_allowlist_enabled]
    if not ip_policies:
        return

    if not ip_address:
        raise IPAddressUnavailableError()

    allowed = [entry for policy in ip_policies for entry in policy.allowed_ips]
    if not is_ip_allowed(ip_address, allowed):
        logger.warning(f"Login from {ip_address} rejected by IP allow-list")
        raise IPNotAllowedError()


def effective_session_timeout(contexts: Sequence[UserSecurityContext]) -> int:
    """
    Session lifetime in minutes.

    Policies can only shorten the session below the system default.
    """
    timeouts = [
        p.session_timeout_minutes
        for p in collect_active_policies(contexts)
        if p.session_timeout_minutes is not None
    ]
    return min(timeouts + [DEFAULT_SESSION_TIMEOUT_MINUTES])


# =============================================================================
# Password Rules
# =============================================================================


def validate_password(password: str, policy: SecurityPolicy) -> List[str]:
    """
    Check a candidate password against a policy.

    Returns:
        Human-readable descriptions of unmet rules (empty if compliant)
    """
    problems = []
    if len(password) < policy.password_min_length:
        problems.append(
            f"Password must be at least {policy.password_min_length} characters"
        )
    if policy.password_require_uppercase and not re.search(r"[A-Z]", password):
        problems.append("Password must contain an uppercase letter")
    if policy.password_require_lowercase and not re.search(r"[a-z]", password):
        problems.append("Password must contain a lowercase letter")
    if policy.password_require_numbers and not re.search(r"\d", password):
        problems.append("Password must contain a number")
    if policy.password_require_special and not re.search(r"[^A-Za-z0-9]", password):
        problems.append("Password must contain a special character")
    return problems
