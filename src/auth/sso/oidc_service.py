"""
OpenID Connect (OIDC) Relying Party Implementation.

This module provides:
- Provider discovery (``/.well-known/openid-configuration``)
- Authorization URL generation (authorization-code flow with state and nonce)
- Code exchange and UserInfo retrieval
- ID token and back-channel logout token verification against the JWKS
- RP-initiated logout URLs
- Configuration testing for the admin UI

Security Considerations:
- ``state`` and ``nonce`` are generated from the OS CSPRNG and checked by
  the caller through the single-use state store
- Signed tokens are verified for signature, issuer, audience and time
- Network failures surface as recoverable ``OIDCServiceError`` subclasses;
  nothing is retried
- Client secrets and tokens are never logged

Dependencies:
- httpx: async HTTP client
- pyjwt[crypto]: JWT/JWKS verification
"""

import logging
import secrets
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
import jwt

from src.auth.sso.helpers import is_valid_http_url, oidc_callback_url
from src.config import SSOSettings, get_settings
from src.types.sso import (
    DEFAULT_OIDC_SCOPES,
    OIDCDiscoveryDocument,
    OIDCSSOConfig,
    OIDCTokenResponse,
    SSOProtocol,
    SSOTestResult,
    SSOUserProfile,
)
from src.utils.logging import log_duration

logger = logging.getLogger(__name__)

ALLOWED_SIGNING_ALGORITHMS = ["RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"]
BACKCHANNEL_LOGOUT_EVENT = "http://schemas.openid.net/event/backchannel-logout"
CLOCK_SKEW_SECONDS = 60


# =============================================================================
# Exceptions
# =============================================================================


class OIDCServiceError(Exception):
    """OIDC Service specific errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "OIDC_ERROR"
        self.details = details or {}


class OIDCDiscoveryError(OIDCServiceError):
    """OIDC discovery failed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "OIDC_DISCOVERY_ERROR", details)


class OIDCTokenExchangeError(OIDCServiceError):
    """The token endpoint rejected the code exchange."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "OIDC_TOKEN_EXCHANGE_ERROR", details)


class OIDCTokenValidationError(OIDCServiceError):
    """A signed token failed verification."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "OIDC_TOKEN_VALIDATION_ERROR", details)


class OIDCMissingEmailClaimError(OIDCServiceError):
    """UserInfo carried neither ``email`` nor ``preferred_username``."""

    def __init__(self):
        super().__init__(
            "OIDC provider did not return an email address",
            "OIDC_MISSING_EMAIL_CLAIM",
        )


class OIDCSubjectMismatchError(OIDCServiceError):
    """UserInfo describes a different subject than the ID token."""

    def __init__(self):
        super().__init__(
            "UserInfo subject does not match the ID token",
            "OIDC_SUBJECT_MISMATCH",
        )


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    """The IdP's error payload, trimmed for display."""
    try:
        body = response.json()
    except ValueError:
        return {"status_code": response.status_code, "body": response.text[:500]}

    if isinstance(body, dict):
        details = {"status_code": response.status_code}
        for key in ("error", "error_description", "error_uri"):
            if key in body:
                details[key] = body[key]
        if len(details) == 1:
            details["body"] = str(body)[:500]
        return details
    return {"status_code": response.status_code, "body": str(body)[:500]}


# =============================================================================
# Service
# =============================================================================


class OIDCService:
    """
    OIDC relying party for one organization.

    Discovery and JWKS documents are cached for the lifetime of the
    instance, which is one request.
    """

    def __init__(
        self,
        config: OIDCSSOConfig,
        organization_slug: str,
        app_url: Optional[str] = None,
        sso_settings: Optional[SSOSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.config = config
        self.organization_slug = organization_slug
        self.app_url = (app_url or settings.app.app_url).rstrip("/")
        self.sso_settings = sso_settings or settings.sso
        self._transport = transport
        self._discovery: Optional[OIDCDiscoveryDocument] = None
        self._jwks: Optional[Dict[str, Any]] = None

    @property
    def redirect_uri(self) -> str:
        return self.config.callback_url or oidc_callback_url(self.app_url, self.organization_slug)

    @property
    def scopes(self) -> List[str]:
        return self.config.scopes or list(DEFAULT_OIDC_SCOPES)

    @property
    def discovery_url(self) -> str:
        return f"{self.config.issuer_url.rstrip('/')}/.well-known/openid-configuration"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.sso_settings.sso_http_timeout,
            transport=self._transport,
        )

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    async def discover(self) -> OIDCDiscoveryDocument:
        """
        Fetch the provider's discovery document.

        Raises:
            OIDCDiscoveryError: Network failure, non-2xx or invalid JSON
        """
        if self._discovery is not None:
            return self._discovery

        try:
            async with self._client() as client:
                response = await client.get(self.discovery_url, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.warning(f"OIDC discovery failed for org {self.organization_slug}: {e}")
            raise OIDCDiscoveryError(
                f"Failed to reach OIDC discovery endpoint: {e}",
                details={"discovery_url": self.discovery_url},
            )

        if response.status_code >= 400:
            logger.warning(
                f"OIDC discovery for org {self.organization_slug} returned {response.status_code}"
            )
            raise OIDCDiscoveryError(
                f"OIDC discovery endpoint returned HTTP {response.status_code}",
                details={"discovery_url": self.discovery_url, "status_code": response.status_code},
            )

        try:
            payload = response.json()
        except ValueError:
            raise OIDCDiscoveryError(
                "OIDC discovery document is not valid JSON",
                details={"discovery_url": self.discovery_url},
            )
        if not isinstance(payload, dict):
            raise OIDCDiscoveryError(
                "OIDC discovery document is not a JSON object",
                details={"discovery_url": self.discovery_url},
            )

        self._discovery = OIDCDiscoveryDocument.model_validate(payload)
        return self._discovery

    async def get_jwks(self) -> Dict[str, Any]:
        """Fetch the provider's JSON Web Key Set."""
        if self._jwks is not None:
            return self._jwks

        discovery = await self.discover()
        if not discovery.jwks_uri:
            raise OIDCTokenValidationError("OIDC provider does not publish a jwks_uri")

        try:
            async with self._client() as client:
                response = await client.get(discovery.jwks_uri, follow_redirects=True)
                response.raise_for_status()
                self._jwks = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise OIDCServiceError(
                f"Failed to fetch OIDC signing keys: {e}",
                "OIDC_JWKS_ERROR",
                details={"jwks_uri": discovery.jwks_uri},
            )
        return self._jwks

    # -------------------------------------------------------------------------
    # Authorization Code Flow
    # -------------------------------------------------------------------------

    @staticmethod
    def generate_state() -> str:
        return secrets.token_urlsafe(32)

    @staticmethod
    def generate_nonce() -> str:
        return secrets.token_urlsafe(32)

    async def build_authorization_url(self, state: str, nonce: str) -> str:
        """
        Authorization endpoint URL for a new login.

        Raises:
            OIDCDiscoveryError: Discovery failed or lists no authorization endpoint
        """
        discovery = await self.discover()
        if not discovery.authorization_endpoint:
            raise OIDCDiscoveryError("OIDC provider has no authorization_endpoint")

        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
            "nonce": nonce,
        }
        endpoint = discovery.authorization_endpoint
        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}{urlencode(params)}"

    async def exchange_code(self, code: str) -> OIDCTokenResponse:
        """
        Exchange an authorization code for tokens.

        Raises:
            OIDCTokenExchangeError: Non-2xx from the token endpoint, with the
                IdP's error body in ``details``
            OIDCServiceError: Network failure
        """
        discovery = await self.discover()
        if not discovery.token_endpoint:
            raise OIDCDiscoveryError("OIDC provider has no token_endpoint")

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.config.client_id,
        }
        if self.config.client_secret is not None:
            data["client_secret"] = self.config.client_secret.get_secret_value()

        try:
            with log_duration("oidc_token_exchange", logger):
                async with self._client() as client:
                    response = await client.post(
                        discovery.token_endpoint,
                        data=data,
                        headers={"Accept": "application/json"},
                    )
        except httpx.HTTPError as e:
            raise OIDCServiceError(
                f"Failed to reach OIDC token endpoint: {e}",
                "OIDC_NETWORK_ERROR",
            )

        if response.status_code >= 300:
            details = _error_body(response)
            logger.warning(
                f"OIDC code exchange rejected for org {self.organization_slug}: "
                f"{details.get('error', response.status_code)}"
            )
            description = details.get("error_description") or details.get("error") or details.get("body")
            raise OIDCTokenExchangeError(
                f"Token exchange failed: {description}",
                details=details,
            )

        try:
            return OIDCTokenResponse.model_validate(response.json())
        except ValueError as e:
            raise OIDCTokenExchangeError(f"Invalid token response: {e}")

    async def fetch_user_info(self, access_token: str) -> SSOUserProfile:
        """
        Fetch and map the UserInfo claims.

        Raises:
            OIDCMissingEmailClaimError: Neither email nor preferred_username
            OIDCServiceError: Network failure or non-2xx
        """
        discovery = await self.discover()
        if not discovery.userinfo_endpoint:
            raise OIDCDiscoveryError("OIDC provider has no userinfo_endpoint")

        try:
            async with self._client() as client:
                response = await client.get(
                    discovery.userinfo_endpoint,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as e:
            raise OIDCServiceError(
                f"Failed to reach OIDC userinfo endpoint: {e}",
                "OIDC_NETWORK_ERROR",
            )

        if response.status_code >= 300:
            raise OIDCServiceError(
                f"UserInfo request failed with HTTP {response.status_code}",
                "OIDC_USERINFO_ERROR",
                details=_error_body(response),
            )

        try:
            claims = response.json()
        except ValueError:
            raise OIDCServiceError("UserInfo response is not valid JSON", "OIDC_USERINFO_ERROR")

        return self.map_claims_to_profile(claims)

    @staticmethod
    def map_claims_to_profile(claims: Dict[str, Any]) -> SSOUserProfile:
        email = claims.get("email") or claims.get("preferred_username")
        if not email or not isinstance(email, str):
            raise OIDCMissingEmailClaimError()

        groups = claims.get("groups") or []
        if isinstance(groups, str):
            groups = [groups]

        return SSOUserProfile(
            id=str(claims.get("sub") or email),
            email=email.strip().lower(),
            first_name=claims.get("given_name"),
            last_name=claims.get("family_name"),
            display_name=claims.get("name"),
            groups=[str(g) for g in groups],
            raw_attributes=claims,
            protocol=SSOProtocol.OIDC,
            sid=claims.get("sid"),
        )

    @staticmethod
    def bind_to_id_token(profile: SSOUserProfile, claims: Dict[str, Any]) -> SSOUserProfile:
        """
        Tie a UserInfo profile to the validated ID token.

        Raises:
            OIDCSubjectMismatchError: UserInfo ``sub`` is missing or differs
        """
        subject = str(claims["sub"])
        if str(profile.raw_attributes.get("sub")) != subject:
            raise OIDCSubjectMismatchError()
        return profile.model_copy(update={"id": subject, "sid": claims.get("sid") or profile.sid})

    # -------------------------------------------------------------------------
    # Signed Tokens
    # -------------------------------------------------------------------------

    async def _verify_jwt(self, token: str, required: List[str]) -> Dict[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as e:
            raise OIDCTokenValidationError(f"Malformed token header: {e}")

        algorithm = header.get("alg")
        if algorithm not in ALLOWED_SIGNING_ALGORITHMS:
            raise OIDCTokenValidationError(f"Unsupported token algorithm: {algorithm}")

        try:
            jwk_set = jwt.PyJWKSet.from_dict(await self.get_jwks())
        except jwt.PyJWTError as e:
            raise OIDCTokenValidationError(f"Unusable JWKS: {e}")

        kid = header.get("kid")
        candidates = [k for k in jwk_set.keys if kid is None or k.key_id == kid]
        if not candidates:
            raise OIDCTokenValidationError("No signing key matches the token", {"kid": kid})

        discovery = await self.discover()
        issuer = discovery.issuer or self.config.issuer_url

        try:
            return jwt.decode(
                token,
                candidates[0].key,
                algorithms=[algorithm],
                audience=self.config.client_id,
                issuer=issuer,
                leeway=CLOCK_SKEW_SECONDS,
                options={"require": required},
            )
        except jwt.PyJWTError as e:
            raise OIDCTokenValidationError(f"Token verification failed: {e}")

    async def validate_id_token(self, id_token: str, nonce: Optional[str]) -> Dict[str, Any]:
        """
        Verify an ID token and its nonce.

        Raises:
            OIDCTokenValidationError: Signature, claims or nonce mismatch
        """
        claims = await self._verify_jwt(id_token, ["iss", "aud", "exp", "iat", "sub"])
        if nonce is not None and not secrets.compare_digest(
            str(claims.get("nonce", "")), nonce
        ):
            raise OIDCTokenValidationError("ID token nonce mismatch")
        return claims

    async def verify_logout_token(self, logout_token: str) -> Dict[str, Any]:
        """
        Verify a back-channel logout token's signature and claims.

        Raises:
            OIDCTokenValidationError: Signature, issuer, audience, events or
                nonce checks failed
        """
        claims = await self._verify_jwt(logout_token, ["iss", "aud", "iat"])

        events = claims.get("events")
        if not isinstance(events, dict) or BACKCHANNEL_LOGOUT_EVENT not in events:
            raise OIDCTokenValidationError("Logout token lacks the back-channel logout event")
        if "nonce" in claims:
            raise OIDCTokenValidationError("Logout token must not contain a nonce")
        if not claims.get("sub") and not claims.get("sid"):
            raise OIDCTokenValidationError("Logout token must contain sub or sid")
        return claims

    # -------------------------------------------------------------------------
    # Logout
    # -------------------------------------------------------------------------

    async def build_logout_url(
        self,
        id_token_hint: Optional[str],
        post_logout_redirect_uri: str,
        state: Optional[str] = None,
    ) -> Optional[str]:
        """
        RP-initiated logout URL, or None when the provider has no
        end_session_endpoint or cannot be discovered.
        """
        try:
            discovery = await self.discover()
        except OIDCDiscoveryError:
            logger.info(
                f"OIDC discovery unavailable for org {self.organization_slug}, local logout only"
            )
            return None

        if not discovery.end_session_endpoint:
            return None

        params = {
            "client_id": self.config.client_id,
            "post_logout_redirect_uri": post_logout_redirect_uri,
            "state": state or self.generate_state(),
        }
        if id_token_hint:
            params = {"id_token_hint": id_token_hint, **params}

        endpoint = discovery.end_session_endpoint
        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}{urlencode(params)}"

    # -------------------------------------------------------------------------
    # Configuration Testing
    # -------------------------------------------------------------------------

    async def test_configuration(self) -> SSOTestResult:
        """Check issuer URL, client credentials and discovery document shape."""
        if not is_valid_http_url(self.config.issuer_url):
            return SSOTestResult(
                success=False,
                message="Invalid OIDC issuer URL",
                details={"issuer_url": self.config.issuer_url},
            )
        if not self.config.client_id:
            return SSOTestResult(success=False, message="OIDC client ID is required")
        if self.config.client_secret is None or not self.config.client_secret.get_secret_value():
            return SSOTestResult(success=False, message="OIDC client secret is required")

        try:
            discovery = await self.discover()
        except OIDCDiscoveryError as e:
            return SSOTestResult(success=False, message=e.message, details=e.details)

        if not discovery.authorization_endpoint or not discovery.token_endpoint:
            return SSOTestResult(
                success=False,
                message="Discovery document is missing the authorization or token endpoint",
                details={"discovery_url": self.discovery_url},
            )

        return SSOTestResult(
            success=True,
            message="OIDC configuration is valid",
            details={
                "issuer": discovery.issuer,
                "authorization_endpoint": discovery.authorization_endpoint,
                "token_endpoint": discovery.token_endpoint,
                "userinfo_endpoint": discovery.userinfo_endpoint,
                "end_session_endpoint": discovery.end_session_endpoint,
                "redirect_uri": self.redirect_uri,
            },
        )
