"""
Directory record types.

Organizations, users, memberships, groups and MFA enrollments as held by
the directory store. SCIM resources and SSO logins are projections onto
these records.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from src.types.security import OrganizationRole


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SCIMSettings(BaseModel):
    """Per-organization SCIM provisioning settings."""

    enabled: bool = False
    bearer_token_hash: Optional[str] = Field(
        None, description="SHA-256 hex digest of the bearer token"
    )
    token_created_at: Optional[datetime] = None


class Organization(BaseModel):
    id: str
    slug: str
    name: str
    scim: SCIMSettings = Field(default_factory=SCIMSettings)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class User(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    image: Optional[str] = None
    password_hash: Optional[str] = Field(None, description="bcrypt hash")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class PasswordLoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=256)
    organization: str = Field(..., min_length=1, max_length=100, description="Organization slug")


class Membership(BaseModel):
    organization_id: str
    user_id: str
    role: OrganizationRole = OrganizationRole.MEMBER
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Group(BaseModel):
    """An organization team, exposed as a SCIM Group."""

    id: str
    organization_id: str
    display_name: str
    member_ids: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class MFAEnrollment(BaseModel):
    """
    A user's TOTP enrollment.

    ``secret`` is set by setup and only counts once ``enabled`` is true.
    """

    user_id: str
    secret: Optional[str] = None
    enabled: bool = False
    enabled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class StoredBackupCode(BaseModel):
    id: str
    user_id: str
    code_hash: str
    used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def used(self) -> bool:
        return self.used_at is not None
