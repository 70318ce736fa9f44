"""
Tests for the TTL store, SSO state store and session manager.
"""

import pytest

from src.auth.sessions import SessionManager, hash_session_token
from src.auth.sso.state_store import PendingLogin, SSOStateStore, generate_state_token
from src.storage.ttl_store import InMemoryTTLStore
from src.types.directory import Organization, User
from src.types.sso import SSOProtocol, SSOUserProfile


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryTTLStore(clock=clock)


ORG = Organization(id="org-acme", slug="acme", name="Acme")
USER = User(id="user-1", email="jane@acme.com")


def profile(**overrides):
    data = {"id": "jane@acme.com", "email": "jane@acme.com", "protocol": SSOProtocol.SAML}
    data.update(overrides)
    return SSOUserProfile(**data)


class TestInMemoryTTLStore:
    """Tests for expiring values and sets."""

    @pytest.mark.asyncio
    async def test_value_expires(self, store, clock):
        await store.set("k", "v", 10)
        assert await store.get("k") == "v"
        clock.advance(10)
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_pop_is_single_use(self, store):
        await store.set("k", "v", 10)
        assert await store.pop("k") == "v"
        assert await store.pop("k") is None

    @pytest.mark.asyncio
    async def test_set_if_absent(self, store, clock):
        """Only the first writer wins until the key expires."""
        assert await store.set_if_absent("k", "1", 5)
        assert not await store.set_if_absent("k", "2", 5)
        clock.advance(5)
        assert await store.set_if_absent("k", "3", 5)
        assert await store.get("k") == "3"

    @pytest.mark.asyncio
    async def test_sets(self, store, clock):
        await store.add_to_set("s", "a", 10)
        await store.add_to_set("s", "b", 10)
        await store.remove_from_set("s", "a")
        assert await store.get_set("s") == {"b"}
        clock.advance(11)
        assert await store.get_set("s") == set()

    @pytest.mark.asyncio
    async def test_writes_sweep_expired_entries(self, clock):
        """Keys that are never read again do not pile up."""
        store = InMemoryTTLStore(clock=clock, sweep_interval=60)
        for i in range(1000):
            await store.set_if_absent(f"jti:{i}", "1", 1)
        await store.add_to_set("idx", "a", 1)
        assert store.entry_count() == 1001

        clock.advance(10_000)
        await store.set("fresh", "v", 60)

        assert store.entry_count() == 1
        assert await store.get("fresh") == "v"

    @pytest.mark.asyncio
    async def test_sweep_keeps_live_entries(self, clock):
        store = InMemoryTTLStore(clock=clock, sweep_interval=60)
        await store.set("short", "v", 30)
        await store.set("long", "v", 3600)

        clock.advance(120)
        await store.set("other", "v", 60)

        assert store.entry_count() == 2
        assert await store.get("long") == "v"


class TestSSOStateStore:
    """Tests for single-use login state."""

    @pytest.mark.asyncio
    async def test_state_consumed_once(self, store):
        states = SSOStateStore(store, ttl_seconds=600)
        state = generate_state_token()
        await states.save(
            state,
            PendingLogin(organization_id="org-acme", protocol=SSOProtocol.OIDC, nonce="n-1"),
        )

        pending = await states.consume(state)
        assert pending.nonce == "n-1"
        assert pending.redirect_to == "/"
        assert await states.consume(state) is None

    @pytest.mark.asyncio
    async def test_state_expires(self, store, clock):
        states = SSOStateStore(store, ttl_seconds=600)
        await states.save("s", PendingLogin(organization_id="o", protocol=SSOProtocol.SAML))
        clock.advance(601)
        assert await states.consume("s") is None

    @pytest.mark.asyncio
    async def test_unknown_and_empty_state(self, store):
        states = SSOStateStore(store)
        assert await states.consume(None) is None
        assert await states.consume("missing") is None

    @pytest.mark.asyncio
    async def test_corrupt_entry_discarded(self, store):
        states = SSOStateStore(store)
        await store.set("sso-state:bad", "not json", 60)
        assert await states.consume("bad") is None


class TestSessionManager:
    """Tests for session lifecycle and IdP-driven revocation."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        manager = SessionManager(store)
        token, session = await manager.create(USER, ORG, profile(), timeout_minutes=60)

        assert session.session_hash == hash_session_token(token)
        assert token not in session.model_dump_json()
        loaded = await manager.get(token)
        assert loaded.user_id == "user-1"
        assert loaded.organization_slug == "acme"
        assert (loaded.expires_at - loaded.created_at).total_seconds() == 3600

    @pytest.mark.asyncio
    async def test_session_expires_with_timeout(self, store, clock):
        manager = SessionManager(store)
        token, _ = await manager.create(USER, ORG, profile(), timeout_minutes=5)
        clock.advance(300)
        assert await manager.get(token) is None

    @pytest.mark.asyncio
    async def test_get_without_token(self, store):
        assert await SessionManager(store).get(None) is None
        assert await SessionManager(store).get("unknown") is None

    @pytest.mark.asyncio
    async def test_revoke(self, store):
        manager = SessionManager(store)
        token, _ = await manager.create(USER, ORG, profile(), timeout_minutes=60)

        revoked = await manager.revoke(token)
        assert revoked.user_id == "user-1"
        assert await manager.get(token) is None
        assert await manager.revoke(token) is None

    @pytest.mark.asyncio
    async def test_mark_mfa_verified(self, store):
        manager = SessionManager(store)
        token, session = await manager.create(
            USER, ORG, profile(), timeout_minutes=60, mfa_pending=True
        )
        assert (await manager.get(token)).mfa_pending

        await manager.mark_mfa_verified(session)
        refreshed = await manager.get(token)
        assert not refreshed.mfa_pending
        assert refreshed.expires_at == session.expires_at

    @pytest.mark.asyncio
    async def test_revoke_by_sid(self, store):
        """Only sessions carrying the sid are revoked."""
        manager = SessionManager(store)
        oidc = {"protocol": SSOProtocol.OIDC, "id": "sub-1"}
        first, _ = await manager.create(USER, ORG, profile(sid="sid-1", **oidc), 60)
        second, _ = await manager.create(USER, ORG, profile(sid="sid-2", **oidc), 60)

        assert await manager.revoke_by_sid("org-acme", "sid-1") == 1
        assert await manager.get(first) is None
        assert await manager.get(second) is not None

    @pytest.mark.asyncio
    async def test_revoke_by_subject(self, store):
        """All of a subject's sessions in the organization are revoked."""
        manager = SessionManager(store)
        first, _ = await manager.create(USER, ORG, profile(), 60)
        second, _ = await manager.create(USER, ORG, profile(), 60)
        other_org = Organization(id="org-globex", slug="globex", name="Globex")
        third, _ = await manager.create(USER, other_org, profile(), 60)

        assert await manager.revoke_by_subject("org-acme", "jane@acme.com") == 2
        assert await manager.get(first) is None
        assert await manager.get(second) is None
        assert await manager.get(third) is not None

    @pytest.mark.asyncio
    async def test_revoke_by_subject_and_session_index(self, store):
        """SessionIndex narrows a SAML logout to the matching session."""
        manager = SessionManager(store)
        first, _ = await manager.create(USER, ORG, profile(session_index="idx-1"), 60)
        second, _ = await manager.create(USER, ORG, profile(session_index="idx-2"), 60)

        assert await manager.revoke_by_subject("org-acme", "jane@acme.com", ["idx-2"]) == 1
        assert await manager.get(first) is not None
        assert await manager.get(second) is None

    @pytest.mark.asyncio
    async def test_password_session(self, store):
        """Sessions without an IdP profile carry no protocol or subject."""
        manager = SessionManager(store)
        token, session = await manager.create(USER, ORG, None, 60, ip_address="203.0.113.9")

        loaded = await manager.get(token)
        assert loaded.protocol is None
        assert loaded.subject is None
        assert loaded.ip_address == "203.0.113.9"


class TestOrganizationSessions:
    """Tests for listing and revoking an organization's sessions."""

    @pytest.mark.asyncio
    async def test_list_newest_first(self, store):
        manager = SessionManager(store)
        await manager.create(USER, ORG, profile(), 60)
        await manager.create(USER, ORG, None, 60)
        other_org = Organization(id="org-globex", slug="globex", name="Globex")
        await manager.create(USER, other_org, profile(), 60)

        listed = await manager.list_for_organization("org-acme")

        assert len(listed) == 2
        assert listed[0].created_at >= listed[1].created_at

    @pytest.mark.asyncio
    async def test_list_drops_expired_sessions(self, store, clock):
        manager = SessionManager(store)
        await manager.create(USER, ORG, profile(), 5)
        clock.advance(300)
        _, live = await manager.create(USER, ORG, profile(), 60)

        listed = await manager.list_for_organization("org-acme")
        assert [s.session_hash for s in listed] == [live.session_hash]

    @pytest.mark.asyncio
    async def test_revoke_only_within_organization(self, store):
        manager = SessionManager(store)
        other_org = Organization(id="org-globex", slug="globex", name="Globex")
        token, session = await manager.create(USER, other_org, profile(), 60)

        assert await manager.revoke_in_organization("org-acme", session.session_hash) is None
        assert await manager.get(token) is not None

        revoked = await manager.revoke_in_organization("org-globex", session.session_hash)
        assert revoked.user_id == "user-1"
        assert await manager.get(token) is None
        assert await manager.revoke_by_subject("org-globex", "jane@acme.com") == 0

    @pytest.mark.asyncio
    async def test_revoke_organization_spares_one_user(self, store):
        manager = SessionManager(store)
        admin = User(id="user-admin", email="admin@acme.com")
        mine, _ = await manager.create(admin, ORG, None, 60)
        first, _ = await manager.create(USER, ORG, profile(), 60)
        second, _ = await manager.create(USER, ORG, profile(sid="sid-1"), 60)

        assert await manager.revoke_organization("org-acme", except_user_id="user-admin") == 2
        assert await manager.get(first) is None
        assert await manager.get(second) is None
        assert await manager.get(mine) is not None
        assert [s.user_id for s in await manager.list_for_organization("org-acme")] == [
            "user-admin"
        ]
