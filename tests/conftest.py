"""
Pytest configuration and shared fixtures for Identity Core tests.

This module provides common fixtures used across all test files:
- Fresh in-memory directory and TTL stores per test
- Test client setup
- Organizations, users and signed-in sessions
"""

import asyncio
import os
import sys

import pytest

APP_URL = "https://sso.acme.test"

# Environment setup before any imports
os.environ["ENVIRONMENT"] = "development"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["APP_URL"] = APP_URL
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("REDIS_URL", None)
os.environ.pop("SENTRY_DSN", None)

# Ensure project root is in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.auth.sessions import SessionManager
from src.storage.directory import InMemoryDirectoryStore, set_directory_store
from src.storage.ttl_store import InMemoryTTLStore, get_ttl_store, set_ttl_store
from src.types.directory import Organization
from src.types.security import OrganizationRole
from src.types.sso import SSOProtocol, SSOUserProfile

SESSION_COOKIE = "identity_session"


@pytest.fixture(autouse=True)
def stores():
    """Fresh process-wide stores for every test."""
    directory = InMemoryDirectoryStore()
    ttl = InMemoryTTLStore()
    set_directory_store(directory)
    set_ttl_store(ttl)
    yield directory, ttl
    set_directory_store(None)
    set_ttl_store(None)


@pytest.fixture
def directory(stores):
    return stores[0]


@pytest.fixture
def ttl_store(stores):
    return stores[1]


@pytest.fixture
def client():
    """FastAPI test client fixture."""
    from fastapi.testclient import TestClient
    from server import app

    return TestClient(app, base_url=APP_URL)


@pytest.fixture
def organization(directory):
    """The acme organization."""
    return asyncio.run(
        directory.save_organization(Organization(id="org-acme", slug="acme", name="Acme Inc"))
    )


def make_member(directory, organization, email, role=OrganizationRole.MEMBER):
    async def _create():
        user = await directory.create_user(email, name="Test User")
        await directory.add_membership(organization.id, user.id, role)
        return user

    return asyncio.run(_create())


def sign_in(client, user, organization, mfa_pending=False, protocol=SSOProtocol.OIDC, **profile):
    """Create a server-side session and attach its cookie to the client."""
    manager = SessionManager(get_ttl_store())
    token, session = asyncio.run(
        manager.create(
            user,
            organization,
            SSOUserProfile(
                id=profile.pop("subject", user.email),
                email=user.email,
                protocol=protocol,
                **profile,
            ),
            timeout_minutes=60,
            mfa_pending=mfa_pending,
        )
    )
    client.cookies.set(SESSION_COOKIE, token)
    return token, session


def make_certificate(days_valid=365, expired=False):
    """Self-signed RSA certificate as PEM text."""
    return make_key_pair(days_valid, expired)[1]


def make_key_pair(days_valid=365, expired=False):
    """(private key PEM, self-signed certificate PEM) for signing SAML messages."""
    from datetime import datetime, timedelta, timezone

    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import rsa
    from cryptography.x509.oid import NameOID

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "idp.example.com")])
    now = datetime.now(timezone.utc)
    if expired:
        not_before, not_after = now - timedelta(days=30), now - timedelta(days=1)
    else:
        not_before, not_after = now - timedelta(days=1), now + timedelta(days=days_valid)

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return key_pem, cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


class FakeIdP:
    """
    OpenID provider served through ``httpx.MockTransport``.

    Records every request and signs tokens with its own RSA key.
    """

    issuer = "https://idp.example.com"
    client_id = "client-1"

    def __init__(self, end_session=True):
        import httpx
        from cryptography.hazmat.primitives.asymmetric import rsa
        from jwt.algorithms import RSAAlgorithm

        self.key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        jwk = RSAAlgorithm.to_jwk(self.key.public_key(), as_dict=True)
        jwk.update({"kid": "key-1", "alg": "RS256", "use": "sig"})
        self.jwks = {"keys": [jwk]}

        self.discovery = {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorize",
            "token_endpoint": f"{self.issuer}/token",
            "userinfo_endpoint": f"{self.issuer}/userinfo",
            "jwks_uri": f"{self.issuer}/jwks",
        }
        if end_session:
            self.discovery["end_session_endpoint"] = f"{self.issuer}/logout"

        self.discovery_status = 200
        self.token_status = 200
        self.token_response = {"access_token": "access-1", "token_type": "Bearer"}
        self.userinfo = {"sub": "sub-jane", "email": "jane@acme.com", "given_name": "Jane"}
        self.requests = []
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request):
        import httpx

        self.requests.append(request)
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            return httpx.Response(self.discovery_status, json=self.discovery)
        if path == "/token":
            if self.token_status != 200:
                return httpx.Response(
                    self.token_status,
                    json={"error": "invalid_grant", "error_description": "Code expired"},
                )
            return httpx.Response(200, json=self.token_response)
        if path == "/userinfo":
            if request.headers.get("authorization") != "Bearer access-1":
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(200, json=self.userinfo)
        if path == "/jwks":
            return httpx.Response(200, json=self.jwks)
        return httpx.Response(404)

    def requests_to(self, path):
        return [r for r in self.requests if r.url.path == path]

    def sign(self, claims, **overrides):
        """Sign claims with defaults for iss, aud and iat."""
        import time

        import jwt

        now = int(time.time())
        payload = {"iss": self.issuer, "aud": self.client_id, "iat": now, "exp": now + 300}
        payload.update(claims)
        for key, value in overrides.items():
            if value is None:
                payload.pop(key, None)
            else:
                payload[key] = value
        return jwt.encode(payload, self.key, algorithm="RS256", headers={"kid": "key-1"})

    def config(self, **overrides):
        from pydantic import SecretStr

        from src.types.sso import OIDCSSOConfig

        data = {
            "organization_id": "org-acme",
            "enabled": True,
            "client_id": self.client_id,
            "client_secret": SecretStr("s3cret"),
            "issuer_url": self.issuer,
            "callback_url": f"{APP_URL}/sso/oidc/acme/callback",
        }
        data.update(overrides)
        return OIDCSSOConfig(**data)


@pytest.fixture
def idp():
    return FakeIdP()


@pytest.fixture
def oidc_org(directory, organization, idp):
    """The acme organization with OIDC against the fake provider."""
    from app.dependencies import get_sso_config_service
    from server import app
    from src.auth.sso.config_service import SSOConfigService

    asyncio.run(directory.save_sso_config(idp.config()))
    app.dependency_overrides[get_sso_config_service] = lambda: SSOConfigService(
        directory, app_url=APP_URL, transport=idp.transport
    )
    yield organization
    app.dependency_overrides.pop(get_sso_config_service, None)


@pytest.fixture
def admin_user(directory, organization):
    return make_member(directory, organization, "admin@acme.com", OrganizationRole.ADMIN)


@pytest.fixture
def member_user(directory, organization):
    return make_member(directory, organization, "member@acme.com")


@pytest.fixture
def admin_client(client, admin_user, organization):
    """Client signed in as an organization admin."""
    sign_in(client, admin_user, organization)
    return client
