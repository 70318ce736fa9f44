"""
Service dependencies.

Each dependency builds a service over the process-wide stores. Tests swap
the stores with ``set_directory_store`` / ``set_ttl_store`` or override a
dependency through ``app.dependency_overrides``.
"""

from src.auth.sessions import SessionManager
from src.auth.sso.backchannel import BackChannelLogoutHandler
from src.auth.sso.config_service import SSOConfigService
from src.auth.sso.state_store import SSOStateStore
from src.config import get_settings
from src.mfa.service import MFAService
from src.scim.service import SCIMService
from src.storage.directory import DirectoryStore, get_directory_store
from src.storage.ttl_store import TTLStore, get_ttl_store


def get_store() -> DirectoryStore:
    return get_directory_store()


def get_ttl() -> TTLStore:
    return get_ttl_store()


def get_mfa_service() -> MFAService:
    return MFAService(get_directory_store())


def get_session_manager() -> SessionManager:
    return SessionManager(get_ttl_store())


def get_state_store() -> SSOStateStore:
    return SSOStateStore(get_ttl_store(), get_settings().sso.sso_state_ttl_seconds)


def get_sso_config_service() -> SSOConfigService:
    return SSOConfigService(get_directory_store())


def get_backchannel_handler() -> BackChannelLogoutHandler:
    sso_settings = get_settings().sso
    return BackChannelLogoutHandler(
        get_ttl_store(),
        default_replay_ttl=sso_settings.oidc_logout_replay_ttl_seconds,
        verify_signature=sso_settings.oidc_verify_logout_signature,
    )


def get_scim_service() -> SCIMService:
    return SCIMService(get_directory_store())
