"""
SCIM 2.0 provisioning.

This module provides:
- Users and Groups resources over the directory store
- A minimal filter grammar (eq, ne, co, sw, ew, gt, ge, lt, le, pr)
- PATCH support with schema validation before any mutation
- Per-organization bearer token issue and verification

Usage:
    from src.scim import SCIMService, SCIMError

    service = SCIMService(get_directory_store())
    try:
        resource = await service.get_user(org_id, user_id)
    except SCIMError as e:
        return e.to_dict(), e.status
"""

from src.scim.auth import (
    extract_bearer_token,
    generate_scim_token,
    hash_scim_token,
    issue_scim_token,
    revoke_scim_token,
    verify_scim_token,
)
from src.scim.filters import SCIMFilter, matches, parse_filter
from src.scim.service import SCIMService
from src.scim.types import (
    ERROR_SCHEMA,
    GROUP_SCHEMA,
    LIST_RESPONSE_SCHEMA,
    PATCH_OP_SCHEMA,
    SCIM_CONTENT_TYPE,
    USER_SCHEMA,
    SCIMError,
    SCIMNotFoundError,
    SCIMUnauthorizedError,
)

__all__ = [
    "ERROR_SCHEMA",
    "GROUP_SCHEMA",
    "LIST_RESPONSE_SCHEMA",
    "PATCH_OP_SCHEMA",
    "SCIM_CONTENT_TYPE",
    "USER_SCHEMA",
    "SCIMError",
    "SCIMFilter",
    "SCIMNotFoundError",
    "SCIMService",
    "SCIMUnauthorizedError",
    "extract_bearer_token",
    "generate_scim_token",
    "hash_scim_token",
    "issue_scim_token",
    "matches",
    "parse_filter",
    "revoke_scim_token",
    "verify_scim_token",
]
