"""
Organization security policy type definitions.

Defines the per-organization security policy (password rules, session
timeout, MFA enforcement, IP allow-listing), its validated update payload,
and the derived per-user security context used by the policy evaluator.
"""

import re
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from src.types.sso import SSOConfiguration


# =============================================================================
# Constants
# =============================================================================

DEFAULT_SESSION_TIMEOUT_MINUTES = 43200
MIN_SESSION_TIMEOUT_MINUTES = 5
MAX_SESSION_TIMEOUT_MINUTES = 525600
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 128

IP_ENTRY_PATTERN = re.compile(r"^(\d{1,3}\.){3}\d{1,3}(\/\d{1,2})?$")


# =============================================================================
# Enums
# =============================================================================


class OrganizationRole(str, Enum):
    """
    Organization member roles.

    Role hierarchy (highest to lowest):
    - owner: Full control including SSO and security settings
    - admin: Manage members, SSO and security settings
    - member: Regular access
    - viewer: Read-only access
    """

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


ADMIN_ROLES = frozenset({OrganizationRole.OWNER, OrganizationRole.ADMIN})


# =============================================================================
# Security Policy
# =============================================================================


class SecurityPolicy(BaseModel):
    """Stored security policy for an organization."""

    organization_id: Optional[str] = Field(None, description="Owning organization")

    password_min_length: int = Field(default=8, description="Minimum password length")
    password_require_uppercase: bool = Field(default=True)
    password_require_lowercase: bool = Field(default=True)
    password_require_numbers: bool = Field(default=True)
    password_require_special: bool = Field(default=False)

    session_timeout_minutes: Optional[int] = Field(
        default=DEFAULT_SESSION_TIMEOUT_MINUTES,
        description="Session lifetime in minutes",
    )

    mfa_required: bool = Field(default=False, description="Require MFA for every member")
    mfa_required_roles: List[OrganizationRole] = Field(
        default_factory=list,
        description="Roles that must use MFA",
    )

    ip_allowlist_enabled: bool = Field(default=False, description="Enforce IP allow-list")
    allowed_ips: List[str] = Field(
        default_factory=list,
        description="IPv4 addresses or CIDR ranges",
    )


def default_security_policy(organization_id: Optional[str] = None) -> SecurityPolicy:
    """Policy used when an organization has never saved one."""
    return SecurityPolicy(organization_id=organization_id)


class SecurityPolicyUpdate(BaseModel):
    """Validated security policy update from an organization admin."""

    password_min_length: int = Field(
        default=8,
        ge=MIN_PASSWORD_LENGTH,
        le=MAX_PASSWORD_LENGTH,
    )
    password_require_uppercase: bool = True
    password_require_lowercase: bool = True
    password_require_numbers: bool = True
    password_require_special: bool = False
    session_timeout_minutes: int = Field(
        default=DEFAULT_SESSION_TIMEOUT_MINUTES,
        ge=MIN_SESSION_TIMEOUT_MINUTES,
        le=MAX_SESSION_TIMEOUT_MINUTES,
    )
    mfa_required: bool = False
    mfa_required_roles: List[OrganizationRole] = Field(default_factory=list)
    ip_allowlist_enabled: bool = False
    allowed_ips: List[str] = Field(default_factory=list)

    @field_validator("allowed_ips")
    @classmethod
    def validate_allowed_ips(cls, value: List[str]) -> List[str]:
        """Each entry must be an IPv4 address or CIDR range."""
        cleaned = []
        for entry in value:
            entry = entry.strip()
            if not entry:
                continue
            if not IP_ENTRY_PATTERN.match(entry):
                raise ValueError(f"Invalid IP address or CIDR range: {entry}")
            cleaned.append(entry)
        return cleaned


# =============================================================================
# Derived Context
# =============================================================================


class UserSecurityContext(BaseModel):
    """
    One organization membership as seen by the policy evaluator.

    Computed fresh for every authentication attempt, never persisted.
    """

    organization_id: str
    organization_slug: str
    role: OrganizationRole
    security_policy: Optional[SecurityPolicy] = None
    sso_config: Optional[SSOConfiguration] = None
