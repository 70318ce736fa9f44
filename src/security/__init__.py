"""Organization security policies and IP allow-list matching."""

from src.security.context import load_security_contexts
from src.security.network import is_ip_allowed, is_ip_in_cidr, parse_ipv4
from src.security.policies import (
    IPAddressUnavailableError,
    IPNotAllowedError,
    MFARequiredError,
    SecurityPolicyViolation,
    SSOEnforcedError,
    effective_session_timeout,
    ensure_compliance,
    ensure_sso_login_allowed,
    requires_mfa,
    validate_password,
)

__all__ = [
    "IPAddressUnavailableError",
    "IPNotAllowedError",
    "MFARequiredError",
    "SSOEnforcedError",
    "SecurityPolicyViolation",
    "effective_session_timeout",
    "ensure_compliance",
    "ensure_sso_login_allowed",
    "is_ip_allowed",
    "is_ip_in_cidr",
    "load_security_contexts",
    "parse_ipv4",
    "requires_mfa",
    "validate_password",
]
