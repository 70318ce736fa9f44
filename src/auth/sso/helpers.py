"""
Shared SSO helpers: URL derivation, domain allow-lists and redirect safety.
"""

import logging
from typing import Iterable, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


# =============================================================================
# URL Derivation
# =============================================================================


def saml_entity_id(app_url: str, organization_slug: str) -> str:
    """Default SP entity ID for an organization."""
    return f"{app_url.rstrip('/')}/saml/{organization_slug}"


def saml_acs_url(app_url: str, organization_slug: str) -> str:
    return f"{app_url.rstrip('/')}/sso/saml/{organization_slug}/callback"


def saml_metadata_url(app_url: str, organization_slug: str) -> str:
    return f"{app_url.rstrip('/')}/sso/saml/{organization_slug}/metadata"


def saml_logout_url(app_url: str, organization_slug: str) -> str:
    return f"{app_url.rstrip('/')}/sso/saml/{organization_slug}/logout"


def oidc_callback_url(app_url: str, organization_slug: str) -> str:
    return f"{app_url.rstrip('/')}/sso/oidc/{organization_slug}/callback"


def scim_base_url(app_url: str, organization_id: str) -> str:
    return f"{app_url.rstrip('/')}/scim/v2/{organization_id}"


# =============================================================================
# Validation Helpers
# =============================================================================


def is_valid_http_url(value: Optional[str]) -> bool:
    """Absolute http(s) URL with a host."""
    if not value:
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def email_domain(email: str) -> str:
    _, _, domain = email.strip().lower().rpartition("@")
    return domain


def is_email_domain_allowed(email: str, allowed_domains: Iterable[str]) -> bool:
    """
    Check an email against an organization's domain allow-list.

    A domain matches exactly or as a parent of the email's domain
    (``corp.acme.com`` is allowed by ``acme.com``). An empty list allows
    every domain.
    """
    domains = [d.strip().lower().lstrip("@") for d in allowed_domains if d and d.strip()]
    if not domains:
        return True

    domain = email_domain(email)
    if not domain:
        return False

    return any(domain == d or domain.endswith(f".{d}") for d in domains)


def sanitize_redirect_url(url: Optional[str], app_url: str) -> str:
    """
    Restrict post-login redirects to this application.

    Relative paths are kept; absolute URLs must share the application's
    origin. Anything else becomes ``/``.
    """
    if not url:
        return "/"

    candidate = url.strip()
    if candidate.startswith("/") and not candidate.startswith("//") and "\\" not in candidate:
        return candidate

    parsed = urlparse(candidate)
    app = urlparse(app_url)
    if parsed.scheme == app.scheme and parsed.netloc == app.netloc:
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"
        return path

    logger.warning("Rejected off-site redirect target")
    return "/"
