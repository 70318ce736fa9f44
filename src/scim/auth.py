"""
SCIM bearer token management.

Each organization has at most one SCIM token. Only its SHA-256 digest is
stored; the plaintext is shown once when the token is issued.
"""

import hashlib
import hmac
import logging
import secrets
from typing import Optional

from src.storage.directory import DirectoryStore
from src.types.directory import Organization, SCIMSettings, utc_now

logger = logging.getLogger(__name__)


def generate_scim_token() -> str:
    return secrets.token_urlsafe(32)


def hash_scim_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def verify_scim_token(organization: Optional[Organization], token: Optional[str]) -> bool:
    """
    Check a presented token against the organization's stored digest.

    Unknown organizations, disabled provisioning and missing tokens all
    fail. The digest comparison is constant-time.
    """
    if organization is None or not token:
        return False
    settings = organization.scim
    if not settings.enabled or not settings.bearer_token_hash:
        return False
    return hmac.compare_digest(hash_scim_token(token), settings.bearer_token_hash)


async def issue_scim_token(store: DirectoryStore, organization: Organization) -> str:
    """
    Enable SCIM for an organization with a fresh token.

    Any previously issued token stops working immediately.

    Returns:
        The plaintext token (not retrievable later)
    """
    token = generate_scim_token()
    await store.update_scim_settings(
        organization.id,
        SCIMSettings(
            enabled=True,
            bearer_token_hash=hash_scim_token(token),
            token_created_at=utc_now(),
        ),
    )
    logger.info(f"SCIM token issued for org {organization.id}")
    return token


async def revoke_scim_token(store: DirectoryStore, organization: Organization) -> None:
    """Disable SCIM provisioning and discard the stored token."""
    await store.update_scim_settings(organization.id, SCIMSettings(enabled=False))
    logger.info(f"SCIM provisioning disabled for org {organization.id}")
