"""bcrypt password checks."""

import logging

import bcrypt

logger = logging.getLogger(__name__)


def check_password(password: str, password_hash: str) -> bool:
    """Compare a password with its stored bcrypt hash. Malformed hashes never match."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Password comparison against a malformed hash")
        return False
