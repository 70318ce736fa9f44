"""
OIDC back-channel logout token handling.

The IdP POSTs a ``logout_token`` JWT server-to-server. Processing:

1. Structural check: PyJWT decodes the token without verifying it; the
   claim set must carry at least one of ``sub`` or ``sid``
2. Signature and claim verification against the IdP's JWKS (unless
   disabled in settings)
3. Replay guard: the token's identifier is claimed in the TTL store with
   ``SET NX``; a second delivery of the same token is rejected

Replay identifier: ``jti`` when present; otherwise the issuer, ``sid``
(or ``sub`` when there is no ``sid``) and ``iat`` together.
"""

import logging
import time
from typing import Any, Dict, Optional

import jwt
from pydantic import ValidationError

from src.auth.sso.oidc_service import OIDCService, OIDCServiceError
from src.storage.ttl_store import TTLStore
from src.types.sso import LogoutTokenClaims

logger = logging.getLogger(__name__)

REPLAY_KEY_PREFIX = "logout-replay:"


class LogoutTokenError(Exception):
    """A back-channel logout token was rejected."""

    def __init__(self, message: str, error_code: str = "invalid_request"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class LogoutTokenReplayError(LogoutTokenError):
    def __init__(self):
        super().__init__("Logout token has already been processed")


def decode_logout_token_claims(logout_token: Optional[str]) -> LogoutTokenClaims:
    """
    Decode a logout token's claim set without verifying it.

    Raises:
        LogoutTokenError: Missing token, not a JWS compact token, claim set
            that is not a JSON object, or neither ``sub`` nor ``sid``
    """
    if not logout_token:
        raise LogoutTokenError("Missing logout_token")

    try:
        payload = jwt.decode(logout_token.strip(), options={"verify_signature": False})
    except jwt.InvalidTokenError:
        raise LogoutTokenError("Invalid logout_token format")

    try:
        claims = LogoutTokenClaims.model_validate(payload)
    except ValidationError:
        raise LogoutTokenError("Invalid logout_token claims")

    if not claims.sub and not claims.sid:
        raise LogoutTokenError("logout_token must contain sub or sid")

    return claims


def replay_identifier(claims: LogoutTokenClaims) -> str:
    """Key under which a processed token is remembered."""
    issuer = claims.iss or "-"
    if claims.jti:
        return f"jti:{issuer}:{claims.jti}"
    if claims.sid:
        return f"sid:{issuer}:{claims.sid}:{claims.iat or '-'}"
    return f"sub:{issuer}:{claims.sub}:{claims.iat or '-'}"


def replay_ttl(claims: LogoutTokenClaims, default_ttl: int, now: Optional[float] = None) -> int:
    """Seconds to remember a token: until its ``exp``, else the default."""
    if claims.exp is None:
        return default_ttl
    moment = time.time() if now is None else now
    return max(int(claims.exp - moment), 1)


class BackChannelLogoutHandler:
    """Validate logout tokens and enforce single use."""

    def __init__(
        self,
        store: TTLStore,
        default_replay_ttl: int = 3600,
        verify_signature: bool = True,
    ):
        self.store = store
        self.default_replay_ttl = default_replay_ttl
        self.verify_signature = verify_signature

    async def process(
        self,
        logout_token: Optional[str],
        oidc_service: OIDCService,
    ) -> LogoutTokenClaims:
        """
        Validate a logout token and record it as processed.

        Returns:
            The token's claims (``sub`` and/or ``sid`` identify the sessions)

        Raises:
            LogoutTokenError: Malformed, unverifiable or replayed token
        """
        claims = decode_logout_token_claims(logout_token)

        if self.verify_signature:
            try:
                verified: Dict[str, Any] = await oidc_service.verify_logout_token(logout_token)
            except OIDCServiceError as e:
                logger.warning(
                    f"Back-channel logout token rejected for org "
                    f"{oidc_service.organization_slug}: {e.error_code}"
                )
                raise LogoutTokenError(e.message)
            claims = LogoutTokenClaims.model_validate(verified)

        key = f"{REPLAY_KEY_PREFIX}{replay_identifier(claims)}"
        ttl = replay_ttl(claims, self.default_replay_ttl)
        if not await self.store.set_if_absent(key, "1", ttl):
            logger.warning(
                f"Replayed back-channel logout token for org {oidc_service.organization_slug}"
            )
            raise LogoutTokenReplayError()

        return claims
