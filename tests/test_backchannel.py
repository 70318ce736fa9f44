"""
Tests for OIDC back-channel logout: token decoding, replay protection
and the logout endpoint.
"""

import asyncio
import base64
import json

import pytest

from conftest import APP_URL, make_member, sign_in
from src.auth.sessions import SessionManager
from src.auth.sso.backchannel import (
    BackChannelLogoutHandler,
    LogoutTokenError,
    LogoutTokenReplayError,
    decode_logout_token_claims,
    replay_identifier,
    replay_ttl,
)
from src.auth.sso.oidc_service import BACKCHANNEL_LOGOUT_EVENT, OIDCService
from src.storage.ttl_store import InMemoryTTLStore, get_ttl_store
from src.types.sso import LogoutTokenClaims, SSOProtocol


def unsigned_token(claims):
    """A three-segment JWT whose signature is not checked."""

    def segment(data):
        raw = json.dumps(data).encode()
        return base64.urlsafe_b64encode(raw).decode().rstrip("=")

    return f"{segment({'alg': 'RS256', 'kid': 'key-1'})}.{segment(claims)}.c2ln"


EVENTS = {BACKCHANNEL_LOGOUT_EVENT: {}}


class TestDecodeLogoutToken:
    """Tests for structural decoding of logout tokens."""

    def test_decodes_claims(self):
        claims = decode_logout_token_claims(
            unsigned_token({"iss": "https://idp.example.com", "sid": "sid-1", "iat": 100})
        )
        assert claims.sid == "sid-1"
        assert claims.iat == 100

    @pytest.mark.parametrize(
        "token",
        [None, "", "only.two", "a.b.c.d", "x.!!!.y", f"x.{base64.urlsafe_b64encode(b'[1]').decode()}.y"],
    )
    def test_malformed_tokens(self, token):
        with pytest.raises(LogoutTokenError):
            decode_logout_token_claims(token)

    def test_requires_sub_or_sid(self):
        with pytest.raises(LogoutTokenError) as exc_info:
            decode_logout_token_claims(unsigned_token({"iss": "x", "iat": 1}))
        assert "sub or sid" in exc_info.value.message

    def test_fractional_issued_at(self):
        claims = decode_logout_token_claims(
            unsigned_token({"iss": "https://idp.example.com", "sid": "sid-1", "iat": 1700000000.25})
        )
        assert claims.iat == 1700000000.25
        assert replay_identifier(claims) == "sid:https://idp.example.com:sid-1:1700000000.25"


class TestReplayKeys:
    """Tests for replay identifiers and their lifetime."""

    def test_jti_wins(self):
        claims = LogoutTokenClaims(iss="i", jti="j-1", sid="s", iat=5)
        assert replay_identifier(claims) == "jti:i:j-1"

    def test_sid_and_iat(self):
        claims = LogoutTokenClaims(iss="i", sid="s", sub="u", iat=5)
        assert replay_identifier(claims) == "sid:i:s:5"

    def test_sub_and_iat(self):
        claims = LogoutTokenClaims(iss="i", sub="u", iat=5)
        assert replay_identifier(claims) == "sub:i:u:5"

    def test_ttl_follows_expiry(self):
        claims = LogoutTokenClaims(sub="u", exp=1_000_120)
        assert replay_ttl(claims, 3600, now=1_000_000) == 120

    def test_ttl_never_below_one_second(self):
        claims = LogoutTokenClaims(sub="u", exp=10)
        assert replay_ttl(claims, 3600, now=1_000_000) == 1

    def test_ttl_default_without_expiry(self):
        assert replay_ttl(LogoutTokenClaims(sub="u"), 3600) == 3600


def _service(idp):
    return OIDCService(idp.config(), "acme", app_url=APP_URL, transport=idp.transport)


class TestBackChannelLogoutHandler:
    """Tests for verification and single use."""

    @pytest.mark.asyncio
    async def test_replay_rejected(self, idp):
        """The same token is accepted once."""
        handler = BackChannelLogoutHandler(InMemoryTTLStore(), verify_signature=False)
        token = unsigned_token({"iss": idp.issuer, "sid": "sid-1", "jti": "j-1", "events": EVENTS})

        claims = await handler.process(token, _service(idp))
        assert claims.sid == "sid-1"

        with pytest.raises(LogoutTokenReplayError):
            await handler.process(token, _service(idp))

    @pytest.mark.asyncio
    async def test_different_tokens_for_same_session(self, idp):
        """Tokens with distinct jti values are independent."""
        handler = BackChannelLogoutHandler(InMemoryTTLStore(), verify_signature=False)
        for jti in ("j-1", "j-2"):
            token = unsigned_token({"iss": idp.issuer, "sid": "sid-1", "jti": jti})
            await handler.process(token, _service(idp))

    @pytest.mark.asyncio
    async def test_verified_token(self, idp):
        handler = BackChannelLogoutHandler(InMemoryTTLStore(), verify_signature=True)
        token = idp.sign({"sub": "sub-jane", "jti": "j-1", "events": EVENTS})

        claims = await handler.process(token, _service(idp))

        assert claims.sub == "sub-jane"
        assert idp.requests_to("/jwks")

    @pytest.mark.asyncio
    async def test_unverifiable_token_rejected(self, idp):
        """Signature checking rejects tokens not signed by the provider."""
        handler = BackChannelLogoutHandler(InMemoryTTLStore(), verify_signature=True)
        token = unsigned_token({"iss": idp.issuer, "sid": "sid-1", "events": EVENTS})

        with pytest.raises(LogoutTokenError):
            await handler.process(token, _service(idp))

    @pytest.mark.asyncio
    async def test_rejected_token_is_not_remembered(self, idp):
        """A token that fails verification does not burn its replay key."""
        store = InMemoryTTLStore()
        token = idp.sign({"sid": "sid-1", "jti": "j-1"})

        with pytest.raises(LogoutTokenError):
            await BackChannelLogoutHandler(store).process(token, _service(idp))
        assert store._values == {}


class TestBackChannelLogoutRoute:
    """Tests for POST /sso/oidc/{slug}/logout."""

    def _token(self, idp, **claims):
        data = {"events": EVENTS}
        data.update(claims)
        return idp.sign(data)

    def test_revokes_sessions_by_sid(self, client, directory, idp, oidc_org):
        user = make_member(directory, oidc_org, "jane@acme.com")
        token, _ = sign_in(client, user, oidc_org, subject="sub-jane", sid="sid-1")
        other, _ = sign_in(client, user, oidc_org, subject="sub-jane", sid="sid-2")
        client.cookies.clear()

        response = client.post(
            "/sso/oidc/acme/logout", data={"logout_token": self._token(idp, sid="sid-1", jti="j-1")}
        )

        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-cache, no-store"
        manager = SessionManager(get_ttl_store())
        assert asyncio.run(manager.get(token)) is None
        assert asyncio.run(manager.get(other)) is not None

    def test_revokes_sessions_by_subject(self, client, directory, idp, oidc_org):
        user = make_member(directory, oidc_org, "jane@acme.com")
        first, _ = sign_in(client, user, oidc_org, subject="sub-jane", sid="sid-1")
        second, _ = sign_in(client, user, oidc_org, subject="sub-jane", sid="sid-2")
        client.cookies.clear()

        response = client.post(
            "/sso/oidc/acme/logout", data={"logout_token": self._token(idp, sub="sub-jane", jti="j-2")}
        )

        assert response.status_code == 200
        manager = SessionManager(get_ttl_store())
        assert asyncio.run(manager.get(first)) is None
        assert asyncio.run(manager.get(second)) is None

    def test_no_matching_session_is_still_ok(self, client, idp, oidc_org):
        response = client.post(
            "/sso/oidc/acme/logout", data={"logout_token": self._token(idp, sid="nobody")}
        )
        assert response.status_code == 200

    def test_json_body(self, client, idp, oidc_org):
        response = client.post(
            "/sso/oidc/acme/logout", json={"logout_token": self._token(idp, sid="sid-9")}
        )
        assert response.status_code == 200

    def test_replay_rejected(self, client, idp, oidc_org):
        token = self._token(idp, sid="sid-1", jti="j-1")
        assert client.post("/sso/oidc/acme/logout", data={"logout_token": token}).status_code == 200

        replay = client.post("/sso/oidc/acme/logout", data={"logout_token": token})
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_request"
        assert replay.headers["cache-control"] == "no-cache, no-store"

    def test_unsigned_token_rejected(self, client, directory, oidc_org):
        """The endpoint verifies signatures; an unsigned token revokes nothing."""
        user = make_member(directory, oidc_org, "jane@acme.com")
        token, _ = sign_in(client, user, oidc_org, subject="sub-jane", sid="sid-1")
        client.cookies.clear()

        forged = unsigned_token(
            {"iss": "https://idp.example.com", "aud": "client-1", "sid": "sid-1", "events": EVENTS}
        )
        response = client.post("/sso/oidc/acme/logout", data={"logout_token": forged})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert asyncio.run(SessionManager(get_ttl_store()).get(token)) is not None

    @pytest.mark.parametrize("form", [{}, {"logout_token": "not-a-jwt"}])
    def test_malformed_requests(self, client, oidc_org, form):
        response = client.post("/sso/oidc/acme/logout", data=form)

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "invalid_request"
        assert body["error_description"]

    def test_organization_without_oidc(self, client, idp, organization):
        response = client.post(
            "/sso/oidc/acme/logout", data={"logout_token": self._token(idp, sid="sid-1")}
        )
        assert response.status_code == 400

    def test_unknown_organization(self, client, idp):
        response = client.post(
            "/sso/oidc/nobody/logout", data={"logout_token": self._token(idp, sid="sid-1")}
        )
        assert response.status_code == 400


def test_saml_sessions_are_not_touched_by_sid(ttl_store):
    """Revocation by sid only sees sessions that recorded that sid."""
    from src.types.directory import Organization, User
    from src.types.sso import SSOUserProfile

    manager = SessionManager(ttl_store)
    organization = Organization(id="org-acme", slug="acme", name="Acme")
    user = User(id="u-1", email="jane@acme.com")
    token, _ = asyncio.run(
        manager.create(
            user,
            organization,
            SSOUserProfile(id="jane@acme.com", email="jane@acme.com", protocol=SSOProtocol.SAML),
            60,
        )
    )

    assert asyncio.run(manager.revoke_by_sid("org-acme", "sid-1")) == 0
    assert asyncio.run(manager.get(token)) is not None
