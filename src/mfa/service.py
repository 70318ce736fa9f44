"""
MFA enrollment and verification service.

This module provides:
- TOTP enrollment (setup, then enable with a first valid code)
- Verification with either a TOTP code or a one-time backup code
- Backup code regeneration and MFA removal

Security Notes:
- A backup code is consumed through the store's compare-and-set, so two
  concurrent requests presenting the same code cannot both succeed
- Re-enrollment and regeneration replace every outstanding backup code
- Disabling MFA requires the account password (when the account has one)
  and a current second factor
"""

import asyncio
import logging
from typing import List, Optional

from src.auth.passwords import check_password
from src.config import MFASettings, get_settings
from src.mfa.backup_codes import (
    generate_backup_codes,
    looks_like_backup_code,
    verify_backup_code,
)
from src.mfa.totp import build_otpauth_uri, generate_secret, render_qr_code, verify_code
from src.storage.directory import DirectoryStore
from src.types.directory import MFAEnrollment, User, utc_now
from src.types.mfa import (
    MFAEnableResult,
    MFAMethod,
    MFASetupResult,
    MFAStatus,
    MFAVerificationResult,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class MFAError(Exception):
    """MFA specific errors."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "MFA_ERROR"


class MFAAlreadyEnabledError(MFAError):
    def __init__(self):
        super().__init__("MFA is already enabled", "MFA_ALREADY_ENABLED")


class MFANotSetUpError(MFAError):
    def __init__(self):
        super().__init__("MFA setup has not been started", "MFA_NOT_SET_UP")


class MFANotEnabledError(MFAError):
    def __init__(self):
        super().__init__("MFA is not enabled", "MFA_NOT_ENABLED")


class InvalidMFACodeError(MFAError):
    def __init__(self):
        super().__init__("Invalid verification code", "INVALID_MFA_CODE")


class InvalidPasswordError(MFAError):
    def __init__(self):
        super().__init__("Invalid password", "INVALID_PASSWORD")


# =============================================================================
# Service
# =============================================================================


class MFAService:
    """Enrollment and verification on top of the directory store."""

    def __init__(self, store: DirectoryStore, settings: Optional[MFASettings] = None):
        self.store = store
        self.settings = settings or get_settings().mfa

    async def _new_backup_codes(self, user_id: str) -> List[str]:
        batch = await asyncio.to_thread(
            generate_backup_codes,
            self.settings.mfa_backup_codes_count,
            self.settings.bcrypt_rounds,
        )
        await self.store.replace_backup_codes(user_id, batch.hashes)
        return batch.codes

    async def _remaining_backup_codes(self, user_id: str) -> int:
        codes = await self.store.list_backup_codes(user_id)
        return sum(1 for c in codes if not c.used)

    async def _enabled_enrollment(self, user: User) -> MFAEnrollment:
        enrollment = await self.store.get_mfa_enrollment(user.id)
        if enrollment is None or not enrollment.enabled or not enrollment.secret:
            raise MFANotEnabledError()
        return enrollment

    async def is_enabled(self, user_id: str) -> bool:
        enrollment = await self.store.get_mfa_enrollment(user_id)
        return bool(enrollment and enrollment.enabled and enrollment.secret)

    async def setup(self, user: User) -> MFASetupResult:
        """
        Start enrollment with a fresh secret.

        Calling setup again before enabling replaces the pending secret.
        """
        existing = await self.store.get_mfa_enrollment(user.id)
        if existing is not None and existing.enabled:
            raise MFAAlreadyEnabledError()

        secret = generate_secret()
        enrollment = existing or MFAEnrollment(user_id=user.id)
        enrollment.secret = secret
        enrollment.enabled = False
        enrollment.enabled_at = None
        await self.store.save_mfa_enrollment(enrollment)

        uri = build_otpauth_uri(user.email, secret, self.settings.totp_issuer)
        logger.info(f"MFA setup started for user {user.id}")
        return MFASetupResult(secret=secret, otpauth_uri=uri, qr_code=render_qr_code(uri))

    async def enable(self, user: User, code: str) -> MFAEnableResult:
        """Confirm enrollment with a valid code and issue backup codes."""
        enrollment = await self.store.get_mfa_enrollment(user.id)
        if enrollment is None or not enrollment.secret:
            raise MFANotSetUpError()
        if enrollment.enabled:
            raise MFAAlreadyEnabledError()
        if not verify_code(code, enrollment.secret):
            raise InvalidMFACodeError()

        enrollment.enabled = True
        enrollment.enabled_at = utc_now()
        await self.store.save_mfa_enrollment(enrollment)

        codes = await self._new_backup_codes(user.id)
        logger.info(f"MFA enabled for user {user.id}")
        return MFAEnableResult(enabled=True, backup_codes=codes)

    async def verify(self, user: User, code: str) -> MFAVerificationResult:
        """
        Verify a second factor.

        Six digits are checked as a TOTP code; anything shaped like a
        backup code is matched against unused backup codes and consumed.
        """
        enrollment = await self._enabled_enrollment(user)
        candidate = (code or "").strip()

        if verify_code(candidate, enrollment.secret):
            return MFAVerificationResult(valid=True, method=MFAMethod.TOTP)

        if looks_like_backup_code(candidate):
            for stored in await self.store.list_backup_codes(user.id):
                if stored.used:
                    continue
                matched = await asyncio.to_thread(
                    verify_backup_code, candidate, stored.code_hash
                )
                if not matched:
                    continue
                if await self.store.consume_backup_code(user.id, stored.id):
                    remaining = await self._remaining_backup_codes(user.id)
                    logger.info(
                        f"Backup code used by user {user.id} ({remaining} remaining)"
                    )
                    return MFAVerificationResult(
                        valid=True,
                        method=MFAMethod.BACKUP_CODE,
                        remaining_backup_codes=remaining,
                    )
                break

        logger.warning(f"MFA verification failed for user {user.id}")
        return MFAVerificationResult(valid=False)

    async def regenerate_backup_codes(self, user: User, code: str) -> List[str]:
        """Replace every backup code; requires a current TOTP code."""
        enrollment = await self._enabled_enrollment(user)
        if not verify_code(code, enrollment.secret):
            raise InvalidMFACodeError()

        codes = await self._new_backup_codes(user.id)
        logger.info(f"Backup codes regenerated for user {user.id}")
        return codes

    async def disable(self, user: User, password: Optional[str], code: str) -> None:
        """Remove MFA after checking the password and a second factor."""
        await self._enabled_enrollment(user)

        if user.password_hash:
            if not password or not check_password(password, user.password_hash):
                raise InvalidPasswordError()

        result = await self.verify(user, code)
        if not result.valid:
            raise InvalidMFACodeError()

        await self.store.delete_mfa_enrollment(user.id)
        logger.info(f"MFA disabled for user {user.id}")

    async def status(self, user: User) -> MFAStatus:
        enrollment = await self.store.get_mfa_enrollment(user.id)
        if enrollment is None or not enrollment.enabled:
            return MFAStatus(enabled=False)
        return MFAStatus(
            enabled=True,
            enabled_at=enrollment.enabled_at,
            remaining_backup_codes=await self._remaining_backup_codes(user.id),
        )
