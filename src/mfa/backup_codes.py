"""
One-time MFA backup codes.

Codes are 8 characters from a 32-symbol alphabet without the visually
ambiguous 0/O and 1/I, displayed as ``XXXX-XXXX``. Only bcrypt hashes
are persisted; the plaintext is shown to the user once.
"""

import logging
import secrets
from dataclasses import dataclass, field
from typing import List

import bcrypt

logger = logging.getLogger(__name__)

BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
BACKUP_CODE_LENGTH = 8
DEFAULT_BACKUP_CODE_COUNT = 8
DEFAULT_BCRYPT_ROUNDS = 10


@dataclass
class BackupCodeBatch:
    """A freshly generated set of backup codes."""

    codes: List[str] = field(default_factory=list)
    hashes: List[str] = field(default_factory=list)


def normalize_backup_code(code: str) -> str:
    """Strip separators and whitespace, uppercase."""
    return "".join(code.split()).replace("-", "").upper()


def format_backup_code(raw: str) -> str:
    """Format an 8-character code as XXXX-XXXX."""
    half = BACKUP_CODE_LENGTH // 2
    return f"{raw[:half]}-{raw[half:]}"


def looks_like_backup_code(code: str) -> bool:
    """Check whether input has the shape of a backup code (not a TOTP code)."""
    normalized = normalize_backup_code(code)
    return len(normalized) == BACKUP_CODE_LENGTH and all(
        ch in BACKUP_CODE_ALPHABET for ch in normalized
    )


def hash_backup_code(code: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    """Hash a backup code (normalized first) with bcrypt."""
    normalized = normalize_backup_code(code)
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(normalized.encode("utf-8"), salt).decode("utf-8")


def verify_backup_code(code: str, stored_hash: str) -> bool:
    """
    Check a user-supplied code against a stored hash.

    bcrypt.checkpw compares in constant time. Malformed hashes never match.
    """
    if not code or not stored_hash:
        return False

    normalized = normalize_backup_code(code)
    try:
        return bcrypt.checkpw(normalized.encode("utf-8"), stored_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Backup code comparison against a malformed hash")
        return False


def _random_code() -> str:
    return "".join(
        secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH)
    )


def generate_backup_codes(
    count: int = DEFAULT_BACKUP_CODE_COUNT,
    rounds: int = DEFAULT_BCRYPT_ROUNDS,
) -> BackupCodeBatch:
    """
    Generate ``count`` distinct backup codes and their hashes.

    Returns:
        BackupCodeBatch with formatted plaintext codes and matching hashes
    """
    seen = set()
    batch = BackupCodeBatch()

    while len(batch.codes) < count:
        raw = _random_code()
        if raw in seen:
            continue
        seen.add(raw)
        batch.codes.append(format_backup_code(raw))
        batch.hashes.append(hash_backup_code(raw, rounds=rounds))

    return batch
