"""
Type definitions for the identity core.
"""

from .directory import (
    Group,
    MFAEnrollment,
    Membership,
    Organization,
    PasswordLoginRequest,
    SCIMSettings,
    StoredBackupCode,
    User,
)
from .security import (
    ADMIN_ROLES,
    DEFAULT_SESSION_TIMEOUT_MINUTES,
    OrganizationRole,
    SecurityPolicy,
    SecurityPolicyUpdate,
    UserSecurityContext,
    default_security_policy,
)
from .sso import (
    MASKED_SECRET,
    OIDCConfigUpdate,
    OIDCSSOConfig,
    SAMLConfigUpdate,
    SAMLSSOConfig,
    SecretUpdate,
    SecretUpdateAction,
    SSOConfiguration,
    SSOConfigUpdate,
    SSOProtocol,
    SSOTestResult,
    SSOUserProfile,
    mask_sso_config,
)

__all__ = [
    # Directory records
    "Group",
    "MFAEnrollment",
    "Membership",
    "Organization",
    "PasswordLoginRequest",
    "SCIMSettings",
    "StoredBackupCode",
    "User",
    # Security policy
    "ADMIN_ROLES",
    "DEFAULT_SESSION_TIMEOUT_MINUTES",
    "OrganizationRole",
    "SecurityPolicy",
    "SecurityPolicyUpdate",
    "UserSecurityContext",
    "default_security_policy",
    # SSO
    "MASKED_SECRET",
    "OIDCConfigUpdate",
    "OIDCSSOConfig",
    "SAMLConfigUpdate",
    "SAMLSSOConfig",
    "SecretUpdate",
    "SecretUpdateAction",
    "SSOConfiguration",
    "SSOConfigUpdate",
    "SSOProtocol",
    "SSOTestResult",
    "SSOUserProfile",
    "mask_sso_config",
]
