"""Multi-factor authentication: TOTP codec, backup codes and enrollment."""

from src.mfa.backup_codes import (
    BACKUP_CODE_ALPHABET,
    BackupCodeBatch,
    format_backup_code,
    generate_backup_codes,
    hash_backup_code,
    normalize_backup_code,
    verify_backup_code,
)
from src.mfa.totp import (
    TOTP_DIGITS,
    TOTP_PERIOD,
    build_otpauth_uri,
    decode_secret,
    generate_code,
    generate_secret,
    render_qr_code,
    verify_code,
)

__all__ = [
    "BACKUP_CODE_ALPHABET",
    "BackupCodeBatch",
    "TOTP_DIGITS",
    "TOTP_PERIOD",
    "build_otpauth_uri",
    "decode_secret",
    "format_backup_code",
    "generate_backup_codes",
    "generate_code",
    "generate_secret",
    "hash_backup_code",
    "normalize_backup_code",
    "render_qr_code",
    "verify_backup_code",
    "verify_code",
]
