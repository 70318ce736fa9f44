"""
Tests for the /auth/mfa endpoints.
"""

import asyncio

import pytest

from conftest import sign_in
from src.auth.sessions import SessionManager
from src.mfa.service import MFAService
from src.mfa.totp import generate_code
from src.storage.ttl_store import get_ttl_store


def enroll(directory, user):
    """Enable MFA for a user, returning the secret and backup codes."""

    async def _enroll():
        service = MFAService(directory)
        setup = await service.setup(user)
        enabled = await service.enable(user, generate_code(setup.secret))
        return setup.secret, enabled.backup_codes

    return asyncio.run(_enroll())


def session_for(token):
    return asyncio.run(SessionManager(get_ttl_store()).get(token))


class TestEnrollment:
    """Tests for setup and enable."""

    def test_setup_during_pending_login(self, client, organization, member_user):
        sign_in(client, member_user, organization, mfa_pending=True)
        response = client.post("/auth/mfa/setup")

        assert response.status_code == 200
        body = response.json()
        assert body["otpauth_uri"].startswith("otpauth://totp/")
        assert body["qr_code"].startswith("data:image/png;base64,")

    def test_enable_completes_pending_step(self, client, organization, member_user):
        token, _ = sign_in(client, member_user, organization, mfa_pending=True)
        secret = client.post("/auth/mfa/setup").json()["secret"]

        response = client.post("/auth/mfa/enable", json={"code": generate_code(secret)})

        assert response.status_code == 200
        assert response.json()["enabled"] is True
        assert len(response.json()["backup_codes"]) == 8
        assert session_for(token).mfa_pending is False

    def test_enable_with_wrong_code(self, client, organization, member_user):
        token, _ = sign_in(client, member_user, organization, mfa_pending=True)
        client.post("/auth/mfa/setup")

        response = client.post("/auth/mfa/enable", json={"code": "abcdef"})

        assert response.status_code == 401
        assert response.json()["error_code"] == "INVALID_MFA_CODE"
        assert session_for(token).mfa_pending is True

    def test_enable_without_setup(self, client, organization, member_user):
        sign_in(client, member_user, organization)
        response = client.post("/auth/mfa/enable", json={"code": "123456"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "MFA_NOT_SET_UP"

    def test_setup_when_already_enabled(self, client, directory, organization, member_user):
        enroll(directory, member_user)
        sign_in(client, member_user, organization)

        response = client.post("/auth/mfa/setup")
        assert response.status_code == 409


class TestVerification:
    """Tests for completing a pending second factor."""

    def test_totp_code(self, client, directory, organization, member_user):
        secret, _ = enroll(directory, member_user)
        token, _ = sign_in(client, member_user, organization, mfa_pending=True)

        response = client.post("/auth/mfa/verify", json={"code": generate_code(secret)})

        assert response.json() == {"valid": True, "method": "totp", "remaining_backup_codes": None}
        assert session_for(token).mfa_pending is False

    def test_backup_code_is_single_use(self, client, directory, organization, member_user):
        _, codes = enroll(directory, member_user)
        sign_in(client, member_user, organization, mfa_pending=True)

        first = client.post("/auth/mfa/verify", json={"code": codes[0]})
        assert first.json()["method"] == "backup_code"
        assert first.json()["remaining_backup_codes"] == 7

        again = client.post("/auth/mfa/verify", json={"code": codes[0]})
        assert again.status_code == 401
        assert again.json()["error_code"] == "INVALID_MFA_CODE"

    def test_not_enrolled(self, client, organization, member_user):
        sign_in(client, member_user, organization, mfa_pending=True)
        response = client.post("/auth/mfa/verify", json={"code": "123456"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "MFA_NOT_ENABLED"

    @pytest.mark.parametrize("code", ["123", "x" * 17])
    def test_code_length(self, client, organization, member_user, code):
        sign_in(client, member_user, organization, mfa_pending=True)
        assert client.post("/auth/mfa/verify", json={"code": code}).status_code == 422


class TestManagement:
    """Tests for status, regeneration and disabling."""

    def test_status(self, client, directory, organization, member_user):
        sign_in(client, member_user, organization)
        assert client.get("/auth/mfa/status").json()["enabled"] is False

        enroll(directory, member_user)
        status = client.get("/auth/mfa/status").json()
        assert status["enabled"] is True
        assert status["remaining_backup_codes"] == 8

    def test_requires_session(self, client):
        assert client.get("/auth/mfa/status").status_code == 401

    def test_regenerate_requires_completed_login(self, client, directory, organization, member_user):
        secret, _ = enroll(directory, member_user)
        sign_in(client, member_user, organization, mfa_pending=True)

        response = client.post("/auth/mfa/backup-codes", json={"code": generate_code(secret)})

        assert response.status_code == 401
        assert response.json()["error_code"] == "MFA_REQUIRED"

    def test_regenerate_replaces_codes(self, client, directory, organization, member_user):
        secret, old_codes = enroll(directory, member_user)
        sign_in(client, member_user, organization)

        response = client.post("/auth/mfa/backup-codes", json={"code": generate_code(secret)})

        new_codes = response.json()["backup_codes"]
        assert len(new_codes) == 8
        assert not set(new_codes) & set(old_codes)

    def test_disable_without_password_account(self, client, directory, organization, member_user):
        """SSO-only accounts have no password to confirm."""
        secret, _ = enroll(directory, member_user)
        sign_in(client, member_user, organization)

        response = client.post("/auth/mfa/disable", json={"code": generate_code(secret)})

        assert response.json() == {"success": True}
        assert client.get("/auth/mfa/status").json()["enabled"] is False
