"""
SCIM 2.0 protocol types (RFC 7643 / RFC 7644).

Request bodies are parsed into pydantic models using the SCIM attribute
names as aliases. Errors are raised as ``SCIMError`` and rendered with the
SCIM error schema, ``status`` carried as a string inside the body.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# SCIM schema URIs
USER_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:User"
GROUP_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:Group"
ENTERPRISE_USER_SCHEMA = "urn:ietf:params:scim:schemas:extension:enterprise:2.0:User"
LIST_RESPONSE_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:ListResponse"
PATCH_OP_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:PatchOp"
ERROR_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:Error"

SCIM_CONTENT_TYPE = "application/scim+json"


class SCIMError(Exception):
    """
    A SCIM protocol error.

    Attributes:
        status: HTTP status code mirrored into the body as a string
        detail: Human-readable description
        scim_type: Optional SCIM error keyword (invalidFilter, uniqueness, ...)
    """

    def __init__(self, status: int, detail: str, scim_type: Optional[str] = None):
        super().__init__(detail)
        self.status = status
        self.detail = detail
        self.scim_type = scim_type

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "schemas": [ERROR_SCHEMA],
            "status": str(self.status),
        }
        if self.scim_type:
            body["scimType"] = self.scim_type
        body["detail"] = self.detail
        return body


class SCIMNotFoundError(SCIMError):
    def __init__(self, resource: str):
        super().__init__(404, f"{resource} not found")


class SCIMUnauthorizedError(SCIMError):
    def __init__(self):
        super().__init__(401, "Invalid or missing bearer token")


class _SCIMModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SCIMName(_SCIMModel):
    formatted: Optional[str] = None
    given_name: Optional[str] = Field(None, alias="givenName")
    family_name: Optional[str] = Field(None, alias="familyName")


class SCIMEmail(_SCIMModel):
    value: str
    type: Optional[str] = None
    primary: Optional[bool] = None


class SCIMUserRequest(_SCIMModel):
    """Body of a user create (POST) or full replace (PUT)."""

    schemas: List[str] = Field(default_factory=list)
    user_name: str = Field(..., alias="userName", min_length=1)
    external_id: Optional[str] = Field(None, alias="externalId")
    name: Optional[SCIMName] = None
    display_name: Optional[str] = Field(None, alias="displayName")
    emails: List[SCIMEmail] = Field(default_factory=list)
    active: Optional[bool] = None

    def resolved_email(self) -> Optional[str]:
        """userName when it is an address, else the primary (or first) email."""
        if "@" in self.user_name:
            return self.user_name.strip().lower()
        primary = next((e for e in self.emails if e.primary), None)
        chosen = primary or (self.emails[0] if self.emails else None)
        if chosen and "@" in chosen.value:
            return chosen.value.strip().lower()
        return None

    def resolved_name(self) -> Optional[str]:
        if self.name:
            if self.name.given_name or self.name.family_name:
                parts = [self.name.given_name, self.name.family_name]
                return " ".join(p for p in parts if p)
            if self.name.formatted:
                return self.name.formatted
        return self.display_name


class SCIMMemberRef(_SCIMModel):
    value: str
    display: Optional[str] = None


class SCIMGroupRequest(_SCIMModel):
    """Body of a group create (POST) or full replace (PUT)."""

    schemas: List[str] = Field(default_factory=list)
    display_name: str = Field(..., alias="displayName", min_length=1)
    external_id: Optional[str] = Field(None, alias="externalId")
    members: List[SCIMMemberRef] = Field(default_factory=list)


class SCIMPatchOperation(_SCIMModel):
    op: str
    path: Optional[str] = None
    value: Any = None


class SCIMPatchRequest(_SCIMModel):
    schemas: List[str] = Field(default_factory=list)
    operations: List[SCIMPatchOperation] = Field(default_factory=list, alias="Operations")
