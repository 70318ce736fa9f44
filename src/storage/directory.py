"""
Directory store: the persistence boundary for identity records.

Organizations, users, memberships, groups, SSO configurations, security
policies and MFA enrollments are read and written through the
``DirectoryStore`` interface. Deployments back it with their relational
database; ``InMemoryDirectoryStore`` serves development and tests.

Records handed out are copies, so mutating a returned model never
changes stored state without a save.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from src.types.directory import (
    Group,
    MFAEnrollment,
    Membership,
    Organization,
    SCIMSettings,
    StoredBackupCode,
    User,
    utc_now,
)
from src.types.security import OrganizationRole, SecurityPolicy
from src.types.sso import SSOConfiguration, SSOProtocol

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Interface
# =============================================================================


class DirectoryStore(ABC):
    """Abstract directory persistence."""

    # Organizations

    @abstractmethod
    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        pass

    @abstractmethod
    async def get_organization_by_slug(self, slug: str) -> Optional[Organization]:
        pass

    @abstractmethod
    async def save_organization(self, organization: Organization) -> Organization:
        pass

    @abstractmethod
    async def update_scim_settings(
        self, organization_id: str, settings: SCIMSettings
    ) -> Organization:
        pass

    # Users

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[User]:
        pass

    @abstractmethod
    async def create_user(
        self, email: str, name: Optional[str] = None, image: Optional[str] = None
    ) -> User:
        pass

    @abstractmethod
    async def update_user(self, user: User) -> User:
        pass

    # Memberships

    @abstractmethod
    async def get_membership(
        self, organization_id: str, user_id: str
    ) -> Optional[Membership]:
        pass

    @abstractmethod
    async def add_membership(
        self, organization_id: str, user_id: str, role: OrganizationRole
    ) -> Membership:
        pass

    @abstractmethod
    async def touch_membership(self, organization_id: str, user_id: str) -> None:
        """Stamp ``updated_at`` on a membership."""

    @abstractmethod
    async def remove_membership(self, organization_id: str, user_id: str) -> bool:
        """
        Remove a membership and the user's group memberships in that organization.

        Also forgets a deactivated membership; True if either existed.
        """

    @abstractmethod
    async def deactivate_membership(self, organization_id: str, user_id: str) -> bool:
        """Remove a membership but remember it so it can be reactivated."""

    @abstractmethod
    async def get_deactivated_membership(
        self, organization_id: str, user_id: str
    ) -> Optional[Membership]:
        pass

    @abstractmethod
    async def reactivate_membership(
        self, organization_id: str, user_id: str
    ) -> Optional[Membership]:
        """Restore a deactivated membership with its former role."""

    @abstractmethod
    async def list_memberships_for_user(self, user_id: str) -> List[Membership]:
        pass

    @abstractmethod
    async def list_members(self, organization_id: str) -> List[Tuple[User, Membership]]:
        pass

    # Groups

    @abstractmethod
    async def list_groups(self, organization_id: str) -> List[Group]:
        pass

    @abstractmethod
    async def get_group(self, organization_id: str, group_id: str) -> Optional[Group]:
        pass

    @abstractmethod
    async def get_group_by_name(
        self, organization_id: str, display_name: str
    ) -> Optional[Group]:
        pass

    @abstractmethod
    async def save_group(self, group: Group) -> Group:
        pass

    @abstractmethod
    async def delete_group(self, organization_id: str, group_id: str) -> bool:
        pass

    # SSO configuration

    @abstractmethod
    async def get_sso_config(self, organization_id: str) -> Optional[SSOConfiguration]:
        """The organization's active configuration."""

    @abstractmethod
    async def get_sso_config_for_protocol(
        self, organization_id: str, protocol: SSOProtocol
    ) -> Optional[SSOConfiguration]:
        """The stored configuration for one protocol, active or not."""

    @abstractmethod
    async def save_sso_config(self, config: SSOConfiguration) -> SSOConfiguration:
        """Store a configuration and make its protocol the active one."""

    @abstractmethod
    async def delete_sso_config(self, organization_id: str) -> bool:
        """Delete every stored configuration for the organization."""

    # Security policy

    @abstractmethod
    async def get_security_policy(self, organization_id: str) -> Optional[SecurityPolicy]:
        pass

    @abstractmethod
    async def save_security_policy(self, policy: SecurityPolicy) -> SecurityPolicy:
        pass

    # MFA

    @abstractmethod
    async def get_mfa_enrollment(self, user_id: str) -> Optional[MFAEnrollment]:
        pass

    @abstractmethod
    async def save_mfa_enrollment(self, enrollment: MFAEnrollment) -> MFAEnrollment:
        pass

    @abstractmethod
    async def delete_mfa_enrollment(self, user_id: str) -> None:
        """Delete the enrollment and every backup code."""

    @abstractmethod
    async def replace_backup_codes(
        self, user_id: str, code_hashes: List[str]
    ) -> List[StoredBackupCode]:
        """Discard all backup codes and store a new batch."""

    @abstractmethod
    async def list_backup_codes(self, user_id: str) -> List[StoredBackupCode]:
        pass

    @abstractmethod
    async def consume_backup_code(self, user_id: str, code_id: str) -> bool:
        """
        Mark a backup code used if it is still unused.

        Returns:
            True for exactly one caller per code.
        """


# =============================================================================
# In-Memory Implementation
# =============================================================================


class InMemoryDirectoryStore(DirectoryStore):
    """Lock-guarded in-memory directory."""

    def __init__(self):
        self._lock = threading.RLock()
        self._organizations: Dict[str, Organization] = {}
        self._users: Dict[str, User] = {}
        self._memberships: Dict[Tuple[str, str], Membership] = {}
        self._deactivated: Dict[Tuple[str, str], Membership] = {}
        self._groups: Dict[str, Group] = {}
        self._sso_configs: Dict[Tuple[str, str], SSOConfiguration] = {}
        self._active_protocol: Dict[str, str] = {}
        self._policies: Dict[str, SecurityPolicy] = {}
        self._mfa: Dict[str, MFAEnrollment] = {}
        self._backup_codes: Dict[str, List[StoredBackupCode]] = {}

    # -------------------------------------------------------------------------
    # Organizations
    # -------------------------------------------------------------------------

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._lock:
            org = self._organizations.get(organization_id)
            return org.model_copy(deep=True) if org else None

    async def get_organization_by_slug(self, slug: str) -> Optional[Organization]:
        with self._lock:
            for org in self._organizations.values():
                if org.slug == slug:
                    return org.model_copy(deep=True)
            return None

    async def save_organization(self, organization: Organization) -> Organization:
        with self._lock:
            stored = organization.model_copy(deep=True)
            stored.updated_at = utc_now()
            self._organizations[stored.id] = stored
            return stored.model_copy(deep=True)

    async def update_scim_settings(
        self, organization_id: str, settings: SCIMSettings
    ) -> Organization:
        with self._lock:
            org = self._organizations.get(organization_id)
            if org is None:
                raise KeyError(organization_id)
            org.scim = settings.model_copy(deep=True)
            org.updated_at = utc_now()
            return org.model_copy(deep=True)

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        needle = email.strip().lower()
        with self._lock:
            for user in self._users.values():
                if user.email.lower() == needle:
                    return user.model_copy(deep=True)
            return None

    async def create_user(
        self, email: str, name: Optional[str] = None, image: Optional[str] = None
    ) -> User:
        user = User(id=new_id(), email=email.strip().lower(), name=name, image=image)
        with self._lock:
            self._users[user.id] = user
            return user.model_copy(deep=True)

    async def update_user(self, user: User) -> User:
        with self._lock:
            if user.id not in self._users:
                raise KeyError(user.id)
            stored = user.model_copy(deep=True)
            stored.updated_at = utc_now()
            self._users[stored.id] = stored
            return stored.model_copy(deep=True)

    # -------------------------------------------------------------------------
    # Memberships
    # -------------------------------------------------------------------------

    async def get_membership(
        self, organization_id: str, user_id: str
    ) -> Optional[Membership]:
        with self._lock:
            membership = self._memberships.get((organization_id, user_id))
            return membership.model_copy(deep=True) if membership else None

    async def add_membership(
        self, organization_id: str, user_id: str, role: OrganizationRole
    ) -> Membership:
        membership = Membership(organization_id=organization_id, user_id=user_id, role=role)
        with self._lock:
            self._memberships[(organization_id, user_id)] = membership
            self._deactivated.pop((organization_id, user_id), None)
            return membership.model_copy(deep=True)

    async def touch_membership(self, organization_id: str, user_id: str) -> None:
        with self._lock:
            membership = self._memberships.get((organization_id, user_id))
            if membership is not None:
                membership.updated_at = utc_now()

    def _drop_membership(self, organization_id: str, user_id: str) -> Optional[Membership]:
        removed = self._memberships.pop((organization_id, user_id), None)
        if removed is not None:
            for group in self._groups.values():
                if group.organization_id == organization_id and user_id in group.member_ids:
                    group.member_ids.remove(user_id)
                    group.updated_at = utc_now()
        return removed

    async def remove_membership(self, organization_id: str, user_id: str) -> bool:
        with self._lock:
            removed = self._drop_membership(organization_id, user_id)
            forgotten = self._deactivated.pop((organization_id, user_id), None)
            return removed is not None or forgotten is not None

    async def deactivate_membership(self, organization_id: str, user_id: str) -> bool:
        with self._lock:
            removed = self._drop_membership(organization_id, user_id)
            if removed is None:
                return False
            removed.updated_at = utc_now()
            self._deactivated[(organization_id, user_id)] = removed
            return True

    async def get_deactivated_membership(
        self, organization_id: str, user_id: str
    ) -> Optional[Membership]:
        with self._lock:
            membership = self._deactivated.get((organization_id, user_id))
            return membership.model_copy(deep=True) if membership else None

    async def reactivate_membership(
        self, organization_id: str, user_id: str
    ) -> Optional[Membership]:
        with self._lock:
            membership = self._deactivated.pop((organization_id, user_id), None)
            if membership is None:
                return None
            membership.updated_at = utc_now()
            self._memberships[(organization_id, user_id)] = membership
            return membership.model_copy(deep=True)

    async def list_memberships_for_user(self, user_id: str) -> List[Membership]:
        with self._lock:
            return [
                m.model_copy(deep=True)
                for (_, member_id), m in self._memberships.items()
                if member_id == user_id
            ]

    async def list_members(self, organization_id: str) -> List[Tuple[User, Membership]]:
        with self._lock:
            members = []
            for (org_id, user_id), membership in self._memberships.items():
                if org_id != organization_id or user_id not in self._users:
                    continue
                members.append(
                    (
                        self._users[user_id].model_copy(deep=True),
                        membership.model_copy(deep=True),
                    )
                )
            members.sort(key=lambda pair: pair[1].created_at)
            return members

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    async def list_groups(self, organization_id: str) -> List[Group]:
        with self._lock:
            groups = [
                g.model_copy(deep=True)
                for g in self._groups.values()
                if g.organization_id == organization_id
            ]
            groups.sort(key=lambda g: g.created_at)
            return groups

    async def get_group(self, organization_id: str, group_id: str) -> Optional[Group]:
        with self._lock:
            group = self._groups.get(group_id)
            if group is None or group.organization_id != organization_id:
                return None
            return group.model_copy(deep=True)

    async def get_group_by_name(
        self, organization_id: str, display_name: str
    ) -> Optional[Group]:
        with self._lock:
            for group in self._groups.values():
                if (
                    group.organization_id == organization_id
                    and group.display_name == display_name
                ):
                    return group.model_copy(deep=True)
            return None

    async def save_group(self, group: Group) -> Group:
        with self._lock:
            stored = group.model_copy(deep=True)
            stored.updated_at = utc_now()
            self._groups[stored.id] = stored
            return stored.model_copy(deep=True)

    async def delete_group(self, organization_id: str, group_id: str) -> bool:
        with self._lock:
            group = self._groups.get(group_id)
            if group is None or group.organization_id != organization_id:
                return False
            del self._groups[group_id]
            return True

    # -------------------------------------------------------------------------
    # SSO Configuration
    # -------------------------------------------------------------------------

    async def get_sso_config(self, organization_id: str) -> Optional[SSOConfiguration]:
        with self._lock:
            protocol = self._active_protocol.get(organization_id)
            if protocol is None:
                return None
            config = self._sso_configs.get((organization_id, protocol))
            return config.model_copy(deep=True) if config else None

    async def get_sso_config_for_protocol(
        self, organization_id: str, protocol: SSOProtocol
    ) -> Optional[SSOConfiguration]:
        with self._lock:
            config = self._sso_configs.get((organization_id, SSOProtocol(protocol).value))
            return config.model_copy(deep=True) if config else None

    async def save_sso_config(self, config: SSOConfiguration) -> SSOConfiguration:
        if not config.organization_id:
            raise ValueError("SSO configuration must belong to an organization")
        with self._lock:
            key = (config.organization_id, config.protocol)
            stored = config.model_copy(deep=True)
            now = utc_now()
            existing = self._sso_configs.get(key)
            stored.created_at = existing.created_at if existing else now
            stored.updated_at = now
            self._sso_configs[key] = stored
            self._active_protocol[config.organization_id] = config.protocol
            return stored.model_copy(deep=True)

    async def delete_sso_config(self, organization_id: str) -> bool:
        with self._lock:
            keys = [k for k in self._sso_configs if k[0] == organization_id]
            for key in keys:
                del self._sso_configs[key]
            self._active_protocol.pop(organization_id, None)
            return bool(keys)

    # -------------------------------------------------------------------------
    # Security Policy
    # -------------------------------------------------------------------------

    async def get_security_policy(self, organization_id: str) -> Optional[SecurityPolicy]:
        with self._lock:
            policy = self._policies.get(organization_id)
            return policy.model_copy(deep=True) if policy else None

    async def save_security_policy(self, policy: SecurityPolicy) -> SecurityPolicy:
        if not policy.organization_id:
            raise ValueError("Security policy must belong to an organization")
        with self._lock:
            self._policies[policy.organization_id] = policy.model_copy(deep=True)
            return policy.model_copy(deep=True)

    # -------------------------------------------------------------------------
    # MFA
    # -------------------------------------------------------------------------

    async def get_mfa_enrollment(self, user_id: str) -> Optional[MFAEnrollment]:
        with self._lock:
            enrollment = self._mfa.get(user_id)
            return enrollment.model_copy(deep=True) if enrollment else None

    async def save_mfa_enrollment(self, enrollment: MFAEnrollment) -> MFAEnrollment:
        with self._lock:
            stored = enrollment.model_copy(deep=True)
            stored.updated_at = utc_now()
            self._mfa[stored.user_id] = stored
            return stored.model_copy(deep=True)

    async def delete_mfa_enrollment(self, user_id: str) -> None:
        with self._lock:
            self._mfa.pop(user_id, None)
            self._backup_codes.pop(user_id, None)

    async def replace_backup_codes(
        self, user_id: str, code_hashes: List[str]
    ) -> List[StoredBackupCode]:
        codes = [
            StoredBackupCode(id=new_id(), user_id=user_id, code_hash=code_hash)
            for code_hash in code_hashes
        ]
        with self._lock:
            self._backup_codes[user_id] = codes
            return [c.model_copy(deep=True) for c in codes]

    async def list_backup_codes(self, user_id: str) -> List[StoredBackupCode]:
        with self._lock:
            return [c.model_copy(deep=True) for c in self._backup_codes.get(user_id, [])]

    async def consume_backup_code(self, user_id: str, code_id: str) -> bool:
        with self._lock:
            for code in self._backup_codes.get(user_id, []):
                if code.id == code_id:
                    if code.used_at is not None:
                        return False
                    code.used_at = utc_now()
                    return True
            return False


# =============================================================================
# Singleton
# =============================================================================

_directory_store: Optional[DirectoryStore] = None


def get_directory_store() -> DirectoryStore:
    """Get the process-wide directory store."""
    global _directory_store
    if _directory_store is None:
        _directory_store = InMemoryDirectoryStore()
        logger.info("Using in-memory directory store")
    return _directory_store


def set_directory_store(store: Optional[DirectoryStore]) -> None:
    """Replace the process-wide directory store (tests, app startup)."""
    global _directory_store
    _directory_store = store
