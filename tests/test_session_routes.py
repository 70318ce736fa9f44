"""
Tests for the organization session administration endpoints.
"""

import asyncio

from conftest import sign_in
from src.auth.sessions import SessionManager
from src.storage.ttl_store import get_ttl_store
from src.types.directory import Organization

BASE = "/organizations/org-acme/sessions"


def _alive(token):
    return asyncio.run(SessionManager(get_ttl_store()).get(token)) is not None


class TestListSessions:
    """Tests for GET /organizations/{org_id}/sessions."""

    def test_lists_organization_sessions(self, client, organization, admin_user, member_user):
        sign_in(client, member_user, organization)
        admin_token, admin_session = sign_in(client, admin_user, organization)

        response = client.get(BASE)

        assert response.status_code == 200
        sessions = response.json()["sessions"]
        assert {s["email"] for s in sessions} == {"admin@acme.com", "member@acme.com"}
        current = [s for s in sessions if s["current"]]
        assert [s["id"] for s in current] == [admin_session.session_hash]
        assert current[0]["protocol"] == "oidc"
        assert admin_token not in response.text

    def test_other_organizations_are_not_listed(
        self, client, directory, organization, admin_user, member_user
    ):
        globex = asyncio.run(
            directory.save_organization(Organization(id="org-b", slug="globex", name="Globex"))
        )
        sign_in(client, member_user, globex)
        sign_in(client, admin_user, organization)

        sessions = client.get(BASE).json()["sessions"]
        assert [s["email"] for s in sessions] == ["admin@acme.com"]

    def test_member_forbidden(self, client, organization, member_user):
        sign_in(client, member_user, organization)

        response = client.get(BASE)

        assert response.status_code == 403
        assert response.json()["error_code"] == "INSUFFICIENT_PERMISSIONS"

    def test_requires_session(self, client, organization):
        assert client.get(BASE).status_code == 401


class TestRevokeSessions:
    """Tests for DELETE on the session collection and a single session."""

    def test_revoke_all_spares_caller(self, client, organization, admin_user, member_user):
        member_token, _ = sign_in(client, member_user, organization)
        second_token, _ = sign_in(client, member_user, organization)
        admin_token, _ = sign_in(client, admin_user, organization)

        response = client.delete(BASE)

        assert response.status_code == 200
        assert response.json()["count"] == 2
        assert not _alive(member_token)
        assert not _alive(second_token)
        assert _alive(admin_token)

    def test_revoke_one(self, client, organization, admin_user, member_user):
        member_token, member_session = sign_in(client, member_user, organization)
        other_token, _ = sign_in(client, member_user, organization)
        sign_in(client, admin_user, organization)

        response = client.delete(f"{BASE}/{member_session.session_hash}")

        assert response.status_code == 200
        assert not _alive(member_token)
        assert _alive(other_token)

    def test_revoke_session_of_another_organization(
        self, client, directory, organization, admin_user, member_user
    ):
        globex = asyncio.run(
            directory.save_organization(Organization(id="org-b", slug="globex", name="Globex"))
        )
        foreign_token, foreign_session = sign_in(client, member_user, globex)
        sign_in(client, admin_user, organization)

        response = client.delete(f"{BASE}/{foreign_session.session_hash}")

        assert response.status_code == 404
        assert _alive(foreign_token)

    def test_revoke_unknown_session(self, admin_client):
        response = admin_client.delete(f"{BASE}/unknown")

        assert response.status_code == 404
        assert response.json()["error_code"] == "RESOURCE_NOT_FOUND"

    def test_member_cannot_revoke(self, client, organization, admin_user, member_user):
        admin_token, admin_session = sign_in(client, admin_user, organization)
        sign_in(client, member_user, organization)

        assert client.delete(f"{BASE}/{admin_session.session_hash}").status_code == 403
        assert client.delete(BASE).status_code == 403
        assert _alive(admin_token)
