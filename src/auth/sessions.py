"""
SSO session management.

Sessions are opaque random tokens handed to the browser as a cookie.
The server keeps the session record in the TTL store under the SHA-256
of the token, with a lifetime equal to the effective session timeout of
the user's organizations. Subject and OIDC ``sid`` indexes let IdP-driven
logouts (back-channel, SAML SLO) find the sessions to revoke, and a
per-organization index backs session administration.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from src.storage.ttl_store import TTLStore
from src.types.directory import Organization, User, utc_now
from src.types.sso import SSOProtocol, SSOUserProfile

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"
SUBJECT_INDEX_PREFIX = "session-sub:"
SID_INDEX_PREFIX = "session-sid:"
ORG_INDEX_PREFIX = "session-org:"


class UserSession(BaseModel):
    """Server-side session record."""

    session_hash: str
    user_id: str
    email: str
    organization_id: str
    organization_slug: str
    protocol: Optional[SSOProtocol] = Field(None, description="None for password sessions")
    subject: Optional[str] = Field(None, description="NameID or OIDC sub")
    sid: Optional[str] = Field(None, description="OIDC session ID")
    id_token: Optional[str] = Field(None, description="Kept for RP-initiated logout")
    saml_session_index: Optional[str] = None
    mfa_pending: bool = Field(False, description="A second factor is still required")
    ip_address: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime


def hash_session_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionManager:
    """Create, read and revoke sessions in the TTL store."""

    def __init__(self, store: TTLStore):
        self.store = store

    @staticmethod
    def _subject_key(organization_id: str, subject: str) -> str:
        return f"{SUBJECT_INDEX_PREFIX}{organization_id}:{subject}"

    @staticmethod
    def _sid_key(organization_id: str, sid: str) -> str:
        return f"{SID_INDEX_PREFIX}{organization_id}:{sid}"

    @staticmethod
    def _org_key(organization_id: str) -> str:
        return f"{ORG_INDEX_PREFIX}{organization_id}"

    async def create(
        self,
        user: User,
        organization: Organization,
        profile: Optional[SSOUserProfile],
        timeout_minutes: int,
        id_token: Optional[str] = None,
        mfa_pending: bool = False,
        ip_address: Optional[str] = None,
    ) -> Tuple[str, UserSession]:
        """
        Start a session. ``profile`` is None for a password login.

        Returns:
            Tuple of (cookie token, session record)
        """
        token = secrets.token_urlsafe(32)
        session_hash = hash_session_token(token)
        ttl_seconds = timeout_minutes * 60
        now = utc_now()

        session = UserSession(
            session_hash=session_hash,
            user_id=user.id,
            email=user.email,
            organization_id=organization.id,
            organization_slug=organization.slug,
            protocol=profile.protocol if profile else None,
            subject=profile.id if profile else None,
            sid=profile.sid if profile else None,
            id_token=id_token,
            saml_session_index=profile.session_index if profile else None,
            mfa_pending=mfa_pending,
            ip_address=ip_address,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

        await self.store.set(
            f"{SESSION_KEY_PREFIX}{session_hash}", session.model_dump_json(), ttl_seconds
        )
        await self.store.add_to_set(self._org_key(organization.id), session_hash, ttl_seconds)
        if session.subject:
            await self.store.add_to_set(
                self._subject_key(organization.id, session.subject), session_hash, ttl_seconds
            )
        if session.sid:
            await self.store.add_to_set(
                self._sid_key(organization.id, session.sid), session_hash, ttl_seconds
            )

        logger.info(f"Session created for user {user.id} in org {organization.id}")
        return token, session

    async def _load(self, session_hash: str) -> Optional[UserSession]:
        raw = await self.store.get(f"{SESSION_KEY_PREFIX}{session_hash}")
        if raw is None:
            return None
        try:
            return UserSession.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable session record")
            await self.store.delete(f"{SESSION_KEY_PREFIX}{session_hash}")
            return None

    async def get(self, token: Optional[str]) -> Optional[UserSession]:
        if not token:
            return None
        return await self._load(hash_session_token(token))

    async def mark_mfa_verified(self, session: UserSession) -> UserSession:
        """Clear the pending second-factor flag, keeping the expiry."""
        remaining = int((session.expires_at - utc_now()).total_seconds())
        updated = session.model_copy(update={"mfa_pending": False})
        if remaining > 0:
            await self.store.set(
                f"{SESSION_KEY_PREFIX}{session.session_hash}",
                updated.model_dump_json(),
                remaining,
            )
        return updated

    async def _revoke_hash(self, session_hash: str) -> Optional[UserSession]:
        session = await self._load(session_hash)
        await self.store.delete(f"{SESSION_KEY_PREFIX}{session_hash}")
        if session is None:
            return None
        await self.store.remove_from_set(self._org_key(session.organization_id), session_hash)
        if session.subject:
            await self.store.remove_from_set(
                self._subject_key(session.organization_id, session.subject), session_hash
            )
        if session.sid:
            await self.store.remove_from_set(
                self._sid_key(session.organization_id, session.sid), session_hash
            )
        return session

    async def revoke(self, token: Optional[str]) -> Optional[UserSession]:
        """Revoke the session behind a cookie token, returning it if it existed."""
        if not token:
            return None
        return await self._revoke_hash(hash_session_token(token))

    async def _revoke_all(self, hashes: Iterable[str]) -> List[UserSession]:
        revoked = []
        for session_hash in list(hashes):
            session = await self._revoke_hash(session_hash)
            if session is not None:
                revoked.append(session)
        return revoked

    async def revoke_by_sid(self, organization_id: str, sid: str) -> int:
        hashes = await self.store.get_set(self._sid_key(organization_id, sid))
        return len(await self._revoke_all(hashes))

    async def revoke_by_subject(
        self,
        organization_id: str,
        subject: str,
        session_indexes: Optional[List[str]] = None,
    ) -> int:
        """
        Revoke a subject's sessions, optionally only those with one of the
        given SAML SessionIndex values.
        """
        hashes = await self.store.get_set(self._subject_key(organization_id, subject))
        if session_indexes:
            selected = []
            for session_hash in hashes:
                session = await self._load(session_hash)
                if session is not None and session.saml_session_index in session_indexes:
                    selected.append(session_hash)
            hashes = set(selected)
        return len(await self._revoke_all(hashes))

    async def list_for_organization(self, organization_id: str) -> List[UserSession]:
        """Live sessions in an organization, newest first."""
        sessions = []
        for session_hash in await self.store.get_set(self._org_key(organization_id)):
            session = await self._load(session_hash)
            if session is None:
                await self.store.remove_from_set(self._org_key(organization_id), session_hash)
                continue
            sessions.append(session)
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    async def revoke_in_organization(
        self, organization_id: str, session_hash: str
    ) -> Optional[UserSession]:
        """Revoke one session, only if it belongs to the organization."""
        if session_hash not in await self.store.get_set(self._org_key(organization_id)):
            return None
        session = await self._load(session_hash)
        if session is None or session.organization_id != organization_id:
            return None
        return await self._revoke_hash(session_hash)

    async def revoke_organization(
        self, organization_id: str, except_user_id: Optional[str] = None
    ) -> int:
        """Revoke every session in an organization, sparing one user's."""
        hashes = [
            s.session_hash
            for s in await self.list_for_organization(organization_id)
            if s.user_id != except_user_id
        ]
        return len(await self._revoke_all(hashes))
