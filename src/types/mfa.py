"""
MFA enrollment and verification models.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class MFAMethod(str, Enum):
    TOTP = "totp"
    BACKUP_CODE = "backup_code"


class MFASetupResult(BaseModel):
    """Enrollment artifacts shown to the user once."""

    secret: str = Field(..., description="Base32 shared secret for manual entry")
    otpauth_uri: str
    qr_code: str = Field(..., description="PNG data URL of the otpauth URI")


class MFAEnableResult(BaseModel):
    enabled: bool = True
    backup_codes: List[str] = Field(..., description="Plaintext codes, shown once")


class MFAVerificationResult(BaseModel):
    valid: bool
    method: Optional[MFAMethod] = None
    remaining_backup_codes: Optional[int] = None


class MFAStatus(BaseModel):
    enabled: bool
    enabled_at: Optional[datetime] = None
    remaining_backup_codes: int = 0


# Request bodies


class MFACodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)


class MFADisableRequest(BaseModel):
    password: Optional[str] = Field(None, max_length=256)
    code: str = Field(..., min_length=6, max_length=16)
