"""
Per-organization SSO configuration management.

This module provides:
- Masked reads (stored secrets are never returned)
- Validated saves driven by the ``SecretUpdate`` keep / clear / set field
- Protocol switching without discarding the other protocol's stored row
- Configuration tests dispatched to the SAML or OIDC engine
"""

import logging
from typing import Any, Dict, Optional, Union

import httpx

from src.auth.sso.helpers import (
    is_valid_http_url,
    oidc_callback_url,
    saml_acs_url,
    saml_entity_id,
)
from src.auth.sso.oidc_service import OIDCService
from src.auth.sso.saml_service import SETTINGS_ERROR_FIELDS, SAMLService, SAMLServiceError
from src.config import get_settings
from src.storage.directory import DirectoryStore
from src.types.directory import Organization
from src.types.sso import (
    DEFAULT_OIDC_SCOPES,
    OIDCConfigUpdate,
    OIDCSSOConfig,
    SAMLConfigUpdate,
    SAMLSSOConfig,
    SSOConfiguration,
    SSOProtocol,
    SSOTestResult,
    mask_sso_config,
)

logger = logging.getLogger(__name__)

SSOConfigUpdateModel = Union[SAMLConfigUpdate, OIDCConfigUpdate]


class SSOConfigurationError(Exception):
    """A submitted SSO configuration is invalid."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.error_code = "SSO_CONFIG_ERROR"


class SSOConfigService:
    """Read, validate, save and test organization SSO configurations."""

    def __init__(
        self,
        store: DirectoryStore,
        app_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.app_url = (app_url or get_settings().app.app_url).rstrip("/")
        self.transport = transport

    # -------------------------------------------------------------------------
    # Engines
    # -------------------------------------------------------------------------

    def saml_service(self, organization: Organization, config: SAMLSSOConfig) -> SAMLService:
        return SAMLService(config, organization.slug, app_url=self.app_url)

    def oidc_service(self, organization: Organization, config: OIDCSSOConfig) -> OIDCService:
        return OIDCService(
            config,
            organization.slug,
            app_url=self.app_url,
            transport=self.transport,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_active(self, organization_id: str) -> Optional[SSOConfiguration]:
        return await self.store.get_sso_config(organization_id)

    async def get_masked(self, organization_id: str) -> Optional[Dict[str, Any]]:
        config = await self.store.get_sso_config(organization_id)
        if config is None:
            return None
        return mask_sso_config(config)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def build_candidate(
        self,
        organization: Organization,
        update: SSOConfigUpdateModel,
    ) -> SSOConfiguration:
        """Merge an update with the stored row for the same protocol."""
        common = {
            "organization_id": organization.id,
            "enabled": update.enabled,
            "enforce_sso": update.enforce_sso,
            "allowed_domains": update.allowed_domains,
        }

        if isinstance(update, SAMLConfigUpdate):
            return SAMLSSOConfig(
                **common,
                entry_point=update.entry_point.strip(),
                issuer=(update.issuer or "").strip()
                or saml_entity_id(self.app_url, organization.slug),
                idp_entity_id=update.idp_entity_id.strip(),
                certificate=update.certificate.strip(),
                slo_url=(update.slo_url or "").strip() or None,
                callback_url=saml_acs_url(self.app_url, organization.slug),
            )

        if isinstance(update, OIDCConfigUpdate):
            existing = await self.store.get_sso_config_for_protocol(
                organization.id, SSOProtocol.OIDC
            )
            stored_secret = existing.client_secret if isinstance(existing, OIDCSSOConfig) else None
            return OIDCSSOConfig(
                **common,
                client_id=update.client_id.strip(),
                client_secret=update.client_secret.apply(stored_secret),
                issuer_url=update.issuer_url.strip(),
                scopes=update.scopes or list(DEFAULT_OIDC_SCOPES),
                callback_url=oidc_callback_url(self.app_url, organization.slug),
            )

        raise TypeError(f"Unsupported SSO configuration update: {type(update).__name__}")

    def validate(self, config: SSOConfiguration) -> None:
        """
        Reject configurations that could never complete a login.

        Raises:
            SSOConfigurationError: naming the offending field
        """
        if config.enforce_sso and not config.enabled:
            raise SSOConfigurationError("SSO must be enabled before it can be enforced", "enforce_sso")

        if isinstance(config, SAMLSSOConfig):
            if not is_valid_http_url(config.entry_point):
                raise SSOConfigurationError("Invalid SAML entry point URL", "entry_point")
            if config.slo_url and not is_valid_http_url(config.slo_url):
                raise SSOConfigurationError("Invalid SAML logout URL", "slo_url")

            # python3-saml must accept the settings the login flow will use
            engine = SAMLService(config, config.organization_id, app_url=self.app_url)
            try:
                engine.load_settings()
            except SAMLServiceError as e:
                codes = e.details.get("errors") or []
                field = next(
                    (SETTINGS_ERROR_FIELDS[c] for c in codes if c in SETTINGS_ERROR_FIELDS),
                    None,
                )
                raise SSOConfigurationError(
                    f"SAML configuration rejected: {', '.join(codes) or e.message}", field
                )

            try:
                SAMLService.extract_certificate_info(config.certificate)
            except ValueError:
                raise SSOConfigurationError("IdP certificate could not be parsed", "certificate")
            return

        if isinstance(config, OIDCSSOConfig):
            if not is_valid_http_url(config.issuer_url):
                raise SSOConfigurationError("Invalid OIDC issuer URL", "issuer_url")
            if not config.client_id:
                raise SSOConfigurationError("OIDC client ID is required", "client_id")
            if config.client_secret is None or not config.client_secret.get_secret_value():
                raise SSOConfigurationError("OIDC client secret is required", "client_secret")
            if "openid" not in config.scopes:
                raise SSOConfigurationError("OIDC scopes must include openid", "scopes")
            return

        raise TypeError(f"Unsupported SSO configuration: {type(config).__name__}")

    async def save(
        self,
        organization: Organization,
        update: SSOConfigUpdateModel,
    ) -> Dict[str, Any]:
        """
        Validate and store a configuration, making its protocol active.

        Returns:
            The masked stored configuration
        """
        config = await self.build_candidate(organization, update)
        self.validate(config)
        saved = await self.store.save_sso_config(config)
        logger.info(
            f"SSO configuration saved for org {organization.id} "
            f"(protocol={saved.protocol}, enabled={saved.enabled}, enforce={saved.enforce_sso})"
        )
        return mask_sso_config(saved)

    async def delete(self, organization: Organization) -> bool:
        deleted = await self.store.delete_sso_config(organization.id)
        if deleted:
            logger.info(f"SSO configuration deleted for org {organization.id}")
        return deleted

    # -------------------------------------------------------------------------
    # Testing
    # -------------------------------------------------------------------------

    async def test(self, organization: Organization, config: SSOConfiguration) -> SSOTestResult:
        """Run the protocol engine's configuration test."""
        if isinstance(config, SAMLSSOConfig):
            return self.saml_service(organization, config).test_configuration()
        if isinstance(config, OIDCSSOConfig):
            return await self.oidc_service(organization, config).test_configuration()
        raise TypeError(f"Unsupported SSO configuration: {type(config).__name__}")

    async def test_update(
        self,
        organization: Organization,
        update: Optional[SSOConfigUpdateModel] = None,
    ) -> SSOTestResult:
        """Test a submitted configuration, or the stored one when none is given."""
        if update is None:
            config = await self.store.get_sso_config(organization.id)
            if config is None:
                return SSOTestResult(success=False, message="SSO is not configured")
        else:
            config = await self.build_candidate(organization, update)
        return await self.test(organization, config)
