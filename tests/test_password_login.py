"""
Tests for password sign-in and SSO enforcement.
"""

import asyncio

import bcrypt
import pytest

from conftest import SESSION_COOKIE, make_member
from src.types.directory import Organization
from src.types.security import OrganizationRole, SecurityPolicy

PASSWORD = "correct horse"


def _set_password(directory, user, password=PASSWORD):
    user.password_hash = bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=4)).decode()
    return asyncio.run(directory.update_user(user))


@pytest.fixture
def jane(directory, organization):
    return _set_password(directory, make_member(directory, organization, "jane@acme.com"))


def _login(client, email="jane@acme.com", password=PASSWORD, organization="acme"):
    return client.post(
        "/auth/login",
        json={"email": email, "password": password, "organization": organization},
    )


class TestPasswordLogin:
    """Tests for POST /auth/login."""

    def test_starts_session(self, client, jane):
        response = _login(client, email=" Jane@Acme.com ")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["mfa_step"] is None
        assert data["user"]["id"] == jane.id
        assert SESSION_COOKIE in response.cookies

        session = client.get("/sso/session").json()
        assert session["authenticated"] is True
        assert session["protocol"] == "password"
        assert session["organization_slug"] == "acme"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"password": "wrong horse"},
            {"email": "nobody@acme.com"},
            {"organization": "missing"},
        ],
    )
    def test_invalid_credentials(self, client, jane, overrides):
        response = _login(client, **overrides)

        assert response.status_code == 401
        assert response.json()["error_code"] == "INVALID_CREDENTIALS"
        assert SESSION_COOKIE not in response.cookies

    def test_account_without_password(self, client, directory, organization):
        """SSO-provisioned accounts have no password to sign in with."""
        make_member(directory, organization, "sso-only@acme.com")

        response = _login(client, email="sso-only@acme.com")

        assert response.status_code == 401
        assert response.json()["error_code"] == "INVALID_CREDENTIALS"

    def test_not_a_member_of_the_organization(self, client, directory, jane):
        asyncio.run(
            directory.save_organization(Organization(id="org-b", slug="globex", name="Globex"))
        )

        response = _login(client, organization="globex")

        assert response.status_code == 401
        assert response.json()["error_code"] == "INVALID_CREDENTIALS"

    def test_sso_enforced_by_any_organization(self, client, directory, idp, jane):
        """Enforcement in one membership blocks password login everywhere."""
        globex = asyncio.run(
            directory.save_organization(Organization(id="org-b", slug="globex", name="Globex"))
        )
        asyncio.run(directory.add_membership(globex.id, jane.id, OrganizationRole.MEMBER))
        asyncio.run(
            directory.save_sso_config(idp.config(organization_id="org-b", enforce_sso=True))
        )

        response = _login(client)

        assert response.status_code == 403
        body = response.json()
        assert body["error_code"] == "SSO_REQUIRED"
        assert body["details"]["organizations"] == ["globex"]
        assert SESSION_COOKIE not in response.cookies

    def test_sso_without_enforcement_allows_password(self, client, directory, idp, jane):
        asyncio.run(directory.save_sso_config(idp.config(enforce_sso=False)))

        assert _login(client).status_code == 200

    def test_mfa_required_sends_user_to_setup(self, client, directory, jane):
        asyncio.run(
            directory.save_security_policy(
                SecurityPolicy(organization_id="org-acme", mfa_required=True)
            )
        )

        response = _login(client)

        assert response.status_code == 200
        assert response.json()["mfa_step"] == "/mfa-setup"
        assert client.get("/sso/session").json()["mfa_pending"] is True

    def test_ip_allow_list(self, client, directory, jane):
        asyncio.run(
            directory.save_security_policy(
                SecurityPolicy(
                    organization_id="org-acme",
                    ip_allowlist_enabled=True,
                    allowed_ips=["203.0.113.0/24"],
                )
            )
        )

        response = _login(client)

        assert response.status_code == 403
        assert response.json()["error_code"].startswith("IP_")
        assert SESSION_COOKIE not in response.cookies
