"""
SSO (Single Sign-On) Type Definitions.

This module defines the data models for enterprise SSO integration,
supporting both SAML 2.0 and OpenID Connect (OIDC) protocols.

Security Considerations:
- Client secrets are held as SecretStr and never returned by read paths
- Secret updates are explicit (keep / clear / set), never inferred from
  comparing against the display mask
- Stored configuration is a discriminated union on ``protocol``
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from typing_extensions import Annotated

MASKED_SECRET = "••••••••"
DEFAULT_OIDC_SCOPES = ["openid", "email", "profile"]


# =============================================================================
# Enums
# =============================================================================


class SSOProtocol(str, Enum):
    """Supported SSO protocols."""

    SAML = "saml"
    OIDC = "oidc"


class SAMLNameIDFormat(str, Enum):
    """SAML NameID formats."""

    EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
    PERSISTENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:persistent"
    UNSPECIFIED = "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"


class SAMLBindingType(str, Enum):
    """SAML binding types."""

    HTTP_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
    HTTP_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"


class SecretUpdateAction(str, Enum):
    """What to do with a stored secret on update."""

    KEEP = "keep"
    CLEAR = "clear"
    SET = "set"


# =============================================================================
# Secret Updates
# =============================================================================


class SecretUpdate(BaseModel):
    """
    Three-state secret update: Unchanged, Cleared, or Set(value).

    Omitting the field on an update request means Unchanged.
    """

    action: SecretUpdateAction = Field(default=SecretUpdateAction.KEEP)
    value: Optional[SecretStr] = Field(default=None, description="New secret for action=set")

    @model_validator(mode="after")
    def check_value(self) -> "SecretUpdate":
        """A value is required for set and forbidden otherwise."""
        if self.action == SecretUpdateAction.SET:
            if self.value is None or not self.value.get_secret_value():
                raise ValueError("A value is required when setting a secret")
        elif self.value is not None:
            raise ValueError(f"No value may be supplied with action={self.action.value}")
        return self

    @classmethod
    def unchanged(cls) -> "SecretUpdate":
        return cls(action=SecretUpdateAction.KEEP)

    @classmethod
    def cleared(cls) -> "SecretUpdate":
        return cls(action=SecretUpdateAction.CLEAR)

    @classmethod
    def set_to(cls, value: str) -> "SecretUpdate":
        return cls(action=SecretUpdateAction.SET, value=SecretStr(value))

    def apply(self, existing: Optional[SecretStr]) -> Optional[SecretStr]:
        """Resolve the stored secret after this update."""
        if self.action == SecretUpdateAction.KEEP:
            return existing
        if self.action == SecretUpdateAction.CLEAR:
            return None
        if self.action == SecretUpdateAction.SET:
            return self.value
        raise ValueError(f"Unhandled secret update action: {self.action}")


# =============================================================================
# Stored Configuration (discriminated union on protocol)
# =============================================================================


class SSOConfigBase(BaseModel):
    """Fields shared by every protocol."""

    organization_id: Optional[str] = Field(None, description="Owning organization")
    enabled: bool = Field(default=False, description="SSO login is available")
    enforce_sso: bool = Field(default=False, description="Password login is refused")
    allowed_domains: List[str] = Field(
        default_factory=list,
        description="Email domains allowed to sign in (empty allows all)",
    )
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("allowed_domains")
    @classmethod
    def normalize_domains(cls, value: List[str]) -> List[str]:
        return [d.strip().lower().lstrip("@") for d in value if d and d.strip()]


class SAMLSSOConfig(SSOConfigBase):
    """SAML 2.0 connection to an organization's IdP."""

    protocol: Literal["saml"] = "saml"
    entry_point: str = Field(..., description="IdP Single Sign-On URL")
    issuer: str = Field(..., description="SP entity ID presented to the IdP")
    idp_entity_id: str = Field(..., description="IdP entity ID (expected response issuer)")
    certificate: str = Field(..., description="IdP X.509 signing certificate (PEM)")
    slo_url: Optional[str] = Field(None, description="IdP Single Logout URL")
    callback_url: str = Field(..., description="SP Assertion Consumer Service URL")


class OIDCSSOConfig(SSOConfigBase):
    """OpenID Connect relying-party configuration."""

    protocol: Literal["oidc"] = "oidc"
    client_id: str = Field(..., description="OIDC client ID")
    client_secret: Optional[SecretStr] = Field(None, description="OIDC client secret")
    issuer_url: str = Field(..., description="OIDC issuer URL")
    scopes: List[str] = Field(default_factory=lambda: list(DEFAULT_OIDC_SCOPES))
    callback_url: str = Field(..., description="Redirect URI registered with the provider")


SSOConfiguration = Annotated[
    Union[SAMLSSOConfig, OIDCSSOConfig],
    Field(discriminator="protocol"),
]


def mask_sso_config(config: Union[SAMLSSOConfig, OIDCSSOConfig]) -> Dict[str, Any]:
    """Serialize a stored configuration for display, masking secrets."""
    data = config.model_dump(mode="json", exclude={"client_secret"})
    if isinstance(config, OIDCSSOConfig):
        data["client_secret"] = MASKED_SECRET if config.client_secret else None
    return data


# =============================================================================
# Update Requests
# =============================================================================


class SSOConfigUpdateBase(BaseModel):
    enabled: bool = False
    enforce_sso: bool = False
    allowed_domains: List[str] = Field(default_factory=list)


class SAMLConfigUpdate(SSOConfigUpdateBase):
    """Admin request to save a SAML configuration."""

    protocol: Literal["saml"] = "saml"
    entry_point: str
    idp_entity_id: str
    certificate: str
    issuer: Optional[str] = Field(None, description="SP entity ID (defaults to the derived one)")
    slo_url: Optional[str] = None


class OIDCConfigUpdate(SSOConfigUpdateBase):
    """Admin request to save an OIDC configuration."""

    protocol: Literal["oidc"] = "oidc"
    client_id: str
    client_secret: SecretUpdate = Field(default_factory=SecretUpdate.unchanged)
    issuer_url: str
    scopes: Optional[List[str]] = None


SSOConfigUpdate = Annotated[
    Union[SAMLConfigUpdate, OIDCConfigUpdate],
    Field(discriminator="protocol"),
]


# =============================================================================
# Protocol Artifacts
# =============================================================================


class SSOUserProfile(BaseModel):
    """User profile extracted from a validated IdP response."""

    id: str = Field(..., description="Provider subject (NameID or sub)")
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    groups: List[str] = Field(default_factory=list)
    raw_attributes: Dict[str, Any] = Field(default_factory=dict)
    protocol: SSOProtocol
    session_index: Optional[str] = Field(None, description="SAML SessionIndex")
    sid: Optional[str] = Field(None, description="OIDC session ID")


class SSOTestResult(BaseModel):
    """Outcome of an admin configuration test."""

    success: bool
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class OIDCDiscoveryDocument(BaseModel):
    """Subset of the OpenID provider metadata we rely on."""

    model_config = {"extra": "allow"}

    issuer: Optional[str] = None
    authorization_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    userinfo_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None
    end_session_endpoint: Optional[str] = None
    backchannel_logout_supported: Optional[bool] = None


class OIDCTokenResponse(BaseModel):
    """Token endpoint response."""

    model_config = {"extra": "allow"}

    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


class LogoutTokenClaims(BaseModel):
    """Claims of an OIDC back-channel logout token."""

    model_config = {"extra": "allow"}

    iss: Optional[str] = None
    aud: Optional[Union[str, List[str]]] = None
    iat: Optional[Union[int, float]] = None
    exp: Optional[Union[int, float]] = None
    jti: Optional[str] = None
    sub: Optional[str] = None
    sid: Optional[str] = None
    events: Optional[Dict[str, Any]] = None
