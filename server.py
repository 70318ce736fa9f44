"""
Server for the Identity Core API.
Provides SSO (SAML 2.0 / OIDC), MFA, SCIM 2.0 provisioning and
organization security policy endpoints.

This is the main entry point that assembles the modular components
from the app package.
"""

import logging
import re
from contextlib import asynccontextmanager

import sentry_sdk
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

# Configure structured logging FIRST, before other imports that use logging
from src.utils.logging import setup_logging

logger = setup_logging(service_name="identity-core")

from src.config import Settings, get_settings
from src.storage.redis_client import redis_client

settings: Settings = get_settings()
logger.info(f"Configuration loaded: {settings.get_config_summary()}")

from app.error_handlers import register_exception_handlers
from app.middleware import RequestLoggingMiddleware
from app.routes import (
    auth_router,
    health_router,
    mfa_router,
    scim_router,
    scim_token_router,
    security_router,
    sessions_router,
    sso_admin_router,
    sso_router,
)

# =============================================================================
# Sentry Error Tracking Configuration
# =============================================================================

SENSITIVE_KEYS = [
    "password", "secret", "token", "authorization", "bearer", "credential",
    "private", "samlresponse", "samlrequest", "code", "state", "logout_token",
]


def filter_sensitive_breadcrumbs(crumb, hint):
    """
    Filter sensitive data from Sentry breadcrumbs.

    Removes or sanitizes breadcrumbs that may contain:
    - Authorization headers and SCIM bearer tokens
    - OIDC codes, state and logout tokens in URLs
    - SAML messages
    """
    if crumb.get("category") == "http":
        data = crumb.get("data")
        if isinstance(data, dict):
            headers = data.get("headers")
            if isinstance(headers, dict):
                for key in list(headers.keys()):
                    if any(s in key.lower() for s in SENSITIVE_KEYS):
                        headers[key] = "[FILTERED]"
            if isinstance(data.get("url"), str):
                for key in SENSITIVE_KEYS:
                    pattern = re.compile(f"([?&]{key}=)[^&]*", re.IGNORECASE)
                    data["url"] = pattern.sub(r"\1[FILTERED]", data["url"])

    if crumb.get("category") in ("console", "log") and "message" in crumb:
        message = str(crumb["message"]).lower()
        if any(key in message for key in SENSITIVE_KEYS):
            crumb["message"] = "[FILTERED - may contain sensitive data]"

    return crumb


if settings.is_sentry_configured:
    sentry_settings = settings.sentry
    sentry_sdk.init(
        dsn=sentry_settings.sentry_dsn,
        environment=sentry_settings.sentry_environment,
        sample_rate=1.0,
        traces_sample_rate=sentry_settings.sentry_traces_sample_rate,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        before_breadcrumb=filter_sensitive_breadcrumbs,
        send_default_pii=False,
        attach_stacktrace=True,
        release=sentry_settings.sentry_release,
    )
    logger.info(f"Sentry initialized for environment: {sentry_settings.sentry_environment}")
else:
    logger.info("Sentry DSN not configured, error tracking disabled")


# =============================================================================
# Initialize FastAPI App
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup/shutdown for shared resources."""
    yield
    await redis_client.close()


app = FastAPI(
    title="Identity Core API",
    description="""
## Identity Federation & Access Control

- **SSO**: SAML 2.0 service provider and OpenID Connect relying party per organization
- **MFA**: TOTP enrollment with single-use backup codes
- **SCIM 2.0**: User and Group provisioning from the organization's identity provider
- **Security policies**: MFA enforcement, IP allow-lists and session timeouts

### Authentication

- Browser endpoints use the session cookie issued after SSO login
- SCIM endpoints use the organization's SCIM bearer token
""",
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "Health checks and system status"},
        {"name": "sso", "description": "Single Sign-On authentication (SAML/OIDC)"},
        {"name": "sso-admin", "description": "SSO configuration and administration"},
        {"name": "mfa", "description": "TOTP enrollment and verification"},
        {"name": "security", "description": "Organization security policy and SCIM token"},
        {"name": "scim", "description": "SCIM 2.0 Users and Groups provisioning"},
    ],
)

# =============================================================================
# Exception Handlers
# =============================================================================

register_exception_handlers(app)
logger.info("Centralized exception handlers registered")

# =============================================================================
# Middleware
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.app.origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "X-Request-ID",
        "Accept",
        "Origin",
    ],
    expose_headers=["X-Request-ID", "X-Response-Time"],
    max_age=600,
)

# Added last so it wraps every other middleware
if settings.logging.request_logging_enabled:
    app.add_middleware(RequestLoggingMiddleware)
    logger.info("Request logging middleware enabled")

# =============================================================================
# Include Routers
# =============================================================================

app.include_router(health_router)
app.include_router(auth_router)
app.include_router(sso_router)
app.include_router(sso_admin_router)
app.include_router(mfa_router)
app.include_router(security_router)
app.include_router(sessions_router)
app.include_router(scim_token_router)
app.include_router(scim_router)


if __name__ == "__main__":
    uvicorn.run("server:app", host="0.0.0.0", port=8000, reload=not settings.is_production)
