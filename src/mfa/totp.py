"""
TOTP primitives (RFC 6238 over RFC 4226 HOTP).

This module provides:
- Shared secret generation (160 bits, RFC 4648 Base32)
- Lenient Base32 decoding that never raises
- Code generation and verification with a +/-1 step drift window
- otpauth:// enrollment URIs and QR code rendering

Security Notes:
- Secrets come from the OS CSPRNG
- Code comparison is constant-time (pyotp uses hmac.compare_digest)
- A malformed secret makes verification fail closed instead of raising
"""

import base64
import binascii
import io
import logging
import re
import secrets
import time
from typing import Optional, Union
from urllib.parse import quote, urlencode

import pyotp
import qrcode

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

SECRET_BYTES = 20
TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_ALGORITHM = "SHA1"

# Accept codes from the previous and next step as well
VERIFY_WINDOW = 1

BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
_NON_BASE32 = re.compile(r"[^A-Z2-7]")
_CODE_PATTERN = re.compile(r"^\d{6}$")

QR_CODE_WIDTH = 256
QR_CODE_MARGIN = 2


# =============================================================================
# Base32 Codec
# =============================================================================


def encode_secret(raw: bytes) -> str:
    """Base32-encode raw secret bytes without padding."""
    return base64.b32encode(raw).decode("ascii").rstrip("=")


def decode_secret(secret: str) -> Optional[bytes]:
    """
    Decode a Base32 secret.

    Input is uppercased and every character outside the RFC 4648 alphabet
    (spaces, dashes, padding) is dropped before decoding.

    Returns:
        The raw secret bytes, or None if the secret cannot be decoded.
    """
    if not secret:
        return None

    cleaned = _NON_BASE32.sub("", secret.upper())
    if not cleaned:
        return None

    padding = (-len(cleaned)) % 8
    try:
        return base64.b32decode(cleaned + "=" * padding)
    except (binascii.Error, ValueError):
        return None


def generate_secret() -> str:
    """Generate a new 160-bit shared secret, Base32 encoded (32 characters)."""
    return encode_secret(secrets.token_bytes(SECRET_BYTES))


def _normalized_secret(secret: str) -> Optional[str]:
    raw = decode_secret(secret)
    if raw is None:
        return None
    return encode_secret(raw)


# =============================================================================
# Code Generation / Verification
# =============================================================================


def _totp(secret: str) -> pyotp.TOTP:
    return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_PERIOD)


def generate_code(secret: str, for_time: Optional[Union[int, float]] = None) -> str:
    """
    Generate the 6-digit code for a point in time.

    Args:
        secret: Base32 shared secret
        for_time: Unix timestamp (defaults to now)

    Raises:
        ValueError: If the secret cannot be decoded
    """
    normalized = _normalized_secret(secret)
    if normalized is None:
        raise ValueError("Invalid TOTP secret")

    moment = time.time() if for_time is None else for_time
    return _totp(normalized).at(int(moment))


def verify_code(
    code: str,
    secret: str,
    now: Optional[Union[int, float]] = None,
) -> bool:
    """
    Verify a TOTP code against a shared secret.

    The counter is floor(now / 30); codes for the previous, current and
    next step are accepted.

    Returns:
        True if the code is valid, False otherwise (including malformed
        input or an undecodable secret).
    """
    if not code or not secret:
        return False

    candidate = code.replace(" ", "").strip()
    if not _CODE_PATTERN.match(candidate):
        return False

    normalized = _normalized_secret(secret)
    if normalized is None:
        logger.warning("TOTP verification attempted with an undecodable secret")
        return False

    moment = time.time() if now is None else now
    return _totp(normalized).verify(
        candidate,
        for_time=int(moment),
        valid_window=VERIFY_WINDOW,
    )


# =============================================================================
# Enrollment Artifacts
# =============================================================================


def build_otpauth_uri(account: str, secret: str, issuer: str) -> str:
    """
    Build an otpauth:// URI for authenticator apps.

    Format:
        otpauth://totp/{issuer}:{account}?secret=...&issuer=...&algorithm=SHA1&digits=6&period=30
    """
    label = f"{quote(issuer, safe='')}:{quote(account, safe='')}"
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": TOTP_ALGORITHM,
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{params}"


def render_qr_code(uri: str) -> str:
    """
    Render an otpauth URI as a PNG data URL.

    Returns:
        A ``data:image/png;base64,...`` string roughly 256px wide.
    """
    qr = qrcode.QRCode(border=QR_CODE_MARGIN)
    qr.add_data(uri)
    qr.make(fit=True)

    modules = qr.modules_count + 2 * QR_CODE_MARGIN
    qr.box_size = max(1, QR_CODE_WIDTH // modules)

    image = qr.make_image()
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
