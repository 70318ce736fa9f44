"""
Single-use storage for in-flight SSO logins.

Each login started by this service gets a random ``state`` token (sent as
OIDC ``state`` or SAML ``RelayState``). The pending login it points to
(organization, nonce, AuthnRequest ID, post-login redirect) lives in the
TTL store and is consumed atomically on callback, so a state value can
complete at most one login.
"""

import logging
import secrets
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from src.storage.ttl_store import TTLStore
from src.types.directory import utc_now
from src.types.sso import SSOProtocol

logger = logging.getLogger(__name__)

STATE_KEY_PREFIX = "sso-state:"


class PendingLogin(BaseModel):
    """A login redirect awaiting the IdP's callback."""

    organization_id: str
    protocol: SSOProtocol
    nonce: Optional[str] = None
    request_id: Optional[str] = Field(None, description="SAML AuthnRequest ID")
    redirect_to: str = "/"
    created_at: datetime = Field(default_factory=utc_now)


def generate_state_token() -> str:
    return secrets.token_urlsafe(32)


class SSOStateStore:
    """Issue and consume single-use login state."""

    def __init__(self, store: TTLStore, ttl_seconds: int = 600):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def save(self, state: str, pending: PendingLogin) -> None:
        await self.store.set(
            f"{STATE_KEY_PREFIX}{state}",
            pending.model_dump_json(),
            self.ttl_seconds,
        )

    async def consume(self, state: Optional[str]) -> Optional[PendingLogin]:
        """
        Take the pending login for a state token.

        Returns None for unknown, expired or already-used tokens.
        """
        if not state:
            return None

        raw = await self.store.pop(f"{STATE_KEY_PREFIX}{state}")
        if raw is None:
            return None

        try:
            return PendingLogin.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable SSO state entry")
            return None
