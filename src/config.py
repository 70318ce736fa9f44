"""
Centralized configuration management for the identity core.

This module provides a Pydantic Settings-based configuration system that:
- Validates environment variables at startup
- Provides type coercion (strings to ints, bools, etc.)
- Groups related settings (app, MFA, SSO, SCIM, logging, Sentry, Redis)
- Supports .env file loading

Usage:
    from src.config import get_settings

    settings = get_settings()
    metadata_url = f"{settings.app.base_url}/sso/saml/acme/metadata"
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Application Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Public URL, environment and session cookie configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_url: str = Field(
        default="http://localhost:8000",
        description="Public base URL used to derive callback, metadata and SCIM URLs",
    )
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    session_cookie_name: str = Field(
        default="identity_session",
        description="Session cookie name outside production",
    )
    secure_session_cookie_name: str = Field(
        default="__Secure-identity_session",
        description="Session cookie name in production",
    )
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description="Comma-separated list of allowed CORS origins",
    )
    trusted_proxies: str = Field(
        default="",
        description="Comma-separated proxy addresses or CIDR ranges whose X-Forwarded-For is honoured",
    )

    @field_validator("app_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def base_url(self) -> str:
        return self.app_url

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def cookie_name(self) -> str:
        """Effective session cookie name."""
        if self.is_production:
            return self.secure_session_cookie_name
        return self.session_cookie_name

    @property
    def origins_list(self) -> List[str]:
        """Get parsed list of allowed origins."""
        return [
            origin.strip()
            for origin in self.allowed_origins.split(",")
            if origin.strip()
        ]

    @property
    def trusted_proxies_list(self) -> List[str]:
        return [
            entry.strip()
            for entry in self.trusted_proxies.split(",")
            if entry.strip()
        ]

# =============================================================================
# MFA Settings
# =============================================================================


class MFASettings(BaseSettings):
    """Configuration for TOTP enrollment and backup codes."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    totp_issuer: str = Field(
        default="IdentityCore",
        description="Issuer shown in authenticator apps",
    )
    mfa_backup_codes_count: int = Field(
        default=8,
        ge=1,
        le=20,
        description="Backup codes generated per batch",
    )
    bcrypt_rounds: int = Field(
        default=10,
        ge=4,
        le=16,
        description="bcrypt cost factor for backup code hashes",
    )


# =============================================================================
# SSO Settings
# =============================================================================


class SSOSettings(BaseSettings):
    """Configuration for SAML and OIDC federation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    sso_http_timeout: float = Field(
        default=10.0,
        gt=0,
        le=30.0,
        description="Timeout in seconds for IdP discovery, token and userinfo calls",
    )
    sso_state_ttl_seconds: int = Field(
        default=600,
        ge=60,
        description="Lifetime of stored OIDC state/nonce and SAML RelayState",
    )
    oidc_logout_replay_ttl_seconds: int = Field(
        default=3600,
        ge=60,
        description="Replay guard lifetime for logout tokens without exp",
    )
    oidc_verify_logout_signature: bool = Field(
        default=True,
        description="Verify back-channel logout token signatures against the IdP JWKS",
    )
    saml_sp_cert: Optional[str] = Field(
        default=None,
        description="SP X.509 certificate (PEM) for signing requests",
    )
    saml_sp_private_key: Optional[SecretStr] = Field(
        default=None,
        description="SP private key (PEM) for signing requests",
    )

    @property
    def has_sp_signing_key(self) -> bool:
        return bool(self.saml_sp_cert and self.saml_sp_private_key)


# =============================================================================
# SCIM Settings
# =============================================================================


class SCIMSettings(BaseSettings):
    """Configuration for SCIM provisioning."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    scim_page_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Maximum resources returned per list page",
    )


# =============================================================================
# Logging Settings
# =============================================================================


class LoggingSettings(BaseSettings):
    """Configuration for logging."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format_json: bool = Field(
        default=False,
        description="Force JSON log format in development",
    )
    request_logging_enabled: bool = Field(
        default=True,
        description="Enable request logging middleware",
    )


# =============================================================================
# Monitoring Settings (Sentry)
# =============================================================================


class SentrySettings(BaseSettings):
    """Configuration for Sentry error tracking."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking",
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment name",
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry transaction sample rate (0.0 to 1.0)",
    )
    sentry_release: Optional[str] = Field(
        default="identity-core@1.0.0",
        description="Sentry release version",
    )

    @property
    def is_configured(self) -> bool:
        """Check if Sentry is configured."""
        return bool(self.sentry_dsn)


# =============================================================================
# Redis Settings (Optional)
# =============================================================================


class RedisSettings(BaseSettings):
    """Configuration for Redis (state, session and replay-guard storage)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL",
    )
    redis_key_prefix: str = Field(
        default="identity:",
        description="Prefix for every key written by the TTL store",
    )

    @property
    def is_configured(self) -> bool:
        """Check if Redis is configured."""
        return bool(self.redis_url)


# =============================================================================
# Main Settings Class
# =============================================================================


class Settings(BaseSettings):
    """Aggregates all configuration groups."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=AppSettings)
    mfa: MFASettings = Field(default_factory=MFASettings)
    sso: SSOSettings = Field(default_factory=SSOSettings)
    scim: SCIMSettings = Field(default_factory=SCIMSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    sentry: SentrySettings = Field(default_factory=SentrySettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)

    @property
    def is_production(self) -> bool:
        return self.app.is_production

    @property
    def is_redis_configured(self) -> bool:
        return self.redis.is_configured

    @property
    def is_sentry_configured(self) -> bool:
        return self.sentry.is_configured

    def get_config_summary(self) -> dict:
        """
        Get a summary of configuration status for logging.

        Never includes secrets.
        """
        return {
            "environment": self.app.environment,
            "app_url": self.app.app_url,
            "redis_configured": self.is_redis_configured,
            "sentry_configured": self.is_sentry_configured,
            "saml_sp_signing": self.sso.has_sp_signing_key,
            "oidc_verify_logout_signature": self.sso.oidc_verify_logout_signature,
            "log_level": self.logging.log_level,
        }


# =============================================================================
# Settings Singleton
# =============================================================================


@lru_cache()
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload settings.
    """
    return Settings()


def reload_settings() -> Settings:
    """
    Reload settings from environment.

    This clears the cache and returns fresh settings.
    Useful for testing or after environment changes.
    """
    get_settings.cache_clear()
    return get_settings()
