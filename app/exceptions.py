"""
Custom exception classes for the Identity Core API.

This module provides a hierarchy of exceptions that map to specific HTTP
status codes. Route handlers raise these for request-level failures; the
domain packages (``src.mfa``, ``src.auth.sso``, ``src.security``) raise their
own exceptions, which ``app.error_handlers`` maps onto the same response
format.

Exception Hierarchy:
    IdentityCoreException (base)
    ├── ValidationError (400)
    ├── AuthenticationError (401)
    ├── AuthorizationError (403)
    └── ResourceNotFoundError (404)
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """
    Standardized error codes for API responses.

    Domain exceptions carry the same string values in their ``error_code``
    attribute so clients see one vocabulary.
    """

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    # Validation errors (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SSO_CONFIG_ERROR = "SSO_CONFIG_ERROR"
    MFA_NOT_SET_UP = "MFA_NOT_SET_UP"
    MFA_NOT_ENABLED = "MFA_NOT_ENABLED"
    SAML_ERROR = "SAML_ERROR"
    SAML_SIGNATURE_INVALID = "SAML_SIGNATURE_INVALID"
    SAML_MISSING_NAMEID = "SAML_MISSING_NAMEID"
    SAML_CONFIG_INVALID = "SAML_CONFIG_INVALID"
    SAML_METADATA_INVALID = "SAML_METADATA_INVALID"

    # Authentication errors (401)
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    INVALID_MFA_CODE = "INVALID_MFA_CODE"
    INVALID_PASSWORD = "INVALID_PASSWORD"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"

    # Authorization errors (403)
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    SECURITY_POLICY_VIOLATION = "SECURITY_POLICY_VIOLATION"
    SSO_REQUIRED = "SSO_REQUIRED"
    MFA_REQUIRED = "MFA_REQUIRED"
    IP_NOT_ALLOWED = "IP_NOT_ALLOWED"
    IP_ADDRESS_UNAVAILABLE = "IP_ADDRESS_UNAVAILABLE"
    EMAIL_DOMAIN_NOT_ALLOWED = "EMAIL_DOMAIN_NOT_ALLOWED"

    # Resource errors (404)
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    ORGANIZATION_NOT_FOUND = "ORGANIZATION_NOT_FOUND"
    SSO_NOT_CONFIGURED = "SSO_NOT_CONFIGURED"

    # Conflict errors (409)
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    MFA_ALREADY_ENABLED = "MFA_ALREADY_ENABLED"

    # External service errors (502)
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    OIDC_ERROR = "OIDC_ERROR"
    OIDC_DISCOVERY_ERROR = "OIDC_DISCOVERY_ERROR"
    OIDC_TOKEN_EXCHANGE_ERROR = "OIDC_TOKEN_EXCHANGE_ERROR"
    OIDC_TOKEN_VALIDATION_ERROR = "OIDC_TOKEN_VALIDATION_ERROR"
    OIDC_MISSING_EMAIL_CLAIM = "OIDC_MISSING_EMAIL_CLAIM"
    OIDC_SUBJECT_MISMATCH = "OIDC_SUBJECT_MISMATCH"

    @classmethod
    def from_value(cls, value: Optional[str], default: "ErrorCode") -> "ErrorCode":
        """Look up a code by its string value, falling back to ``default``."""
        try:
            return cls(value)
        except ValueError:
            return default


class IdentityCoreException(Exception):
    """
    Base exception class for all Identity Core API errors.

    Attributes:
        message: Human-readable error message (sanitized for external display).
        error_code: Machine-readable error code from ErrorCode enum.
        status_code: HTTP status code to return.
        details: Additional context about the error (optional).
        internal_message: Detailed message for logging (not exposed to clients).
    """

    status_code: int = 500
    default_error_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        self.internal_message = internal_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to a dictionary for API response.

        Returns:
            Dictionary with error information suitable for JSON serialization.
        """
        response = {
            "success": False,
            "error": self.message,
            "error_code": self.error_code.value,
        }
        if self.details:
            response["details"] = self.details
        return response

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code.value!r}, "
            f"status_code={self.status_code})"
        )


# =============================================================================
# Validation Errors (400 Bad Request)
# =============================================================================

class ValidationError(IdentityCoreException):
    """
    Raised when request data fails validation.

    Use this for:
    - Invalid SSO or security policy settings
    - Malformed request bodies
    """

    status_code = 400
    default_error_code = ErrorCode.VALIDATION_ERROR
    default_message = "Invalid request data"

    def __init__(
        self,
        message: Optional[str] = None,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            # Truncate long values to avoid exposing sensitive data
            str_value = str(value)
            details["value"] = str_value[:100] + "..." if len(str_value) > 100 else str_value

        super().__init__(
            message=message,
            error_code=error_code or self.default_error_code,
            details=details,
            internal_message=internal_message,
        )


# =============================================================================
# Authentication Errors (401 Unauthorized)
# =============================================================================

class AuthenticationError(IdentityCoreException):
    """
    Raised when the caller has no valid session.

    Use this for:
    - Missing or expired session cookie
    - Wrong password or second-factor code
    """

    status_code = 401
    default_error_code = ErrorCode.AUTHENTICATION_REQUIRED
    default_message = "Sign in required"


# =============================================================================
# Authorization Errors (403 Forbidden)
# =============================================================================

class AuthorizationError(IdentityCoreException):
    """
    Raised when the caller is known but not allowed.

    Use this for:
    - Missing organization role
    - Security policy denials (MFA, IP allow-list, enforced SSO)
    """

    status_code = 403
    default_error_code = ErrorCode.PERMISSION_DENIED
    default_message = "You do not have permission to perform this action"

    def __init__(
        self,
        message: Optional[str] = None,
        required_role: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        details = details or {}
        if required_role:
            details["required_role"] = required_role
        super().__init__(
            message=message,
            error_code=error_code or self.default_error_code,
            details=details,
            internal_message=internal_message,
        )


# =============================================================================
# Resource Errors (404 Not Found)
# =============================================================================

class ResourceNotFoundError(IdentityCoreException):
    """Raised when an organization, user or configuration does not exist."""

    status_code = 404
    default_error_code = ErrorCode.RESOURCE_NOT_FOUND
    default_message = "The requested resource was not found"

    def __init__(
        self,
        message: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        details = details or {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id
        if not message and resource_type:
            message = f"{resource_type} not found"

        super().__init__(
            message=message,
            error_code=error_code or self.default_error_code,
            details=details,
            internal_message=internal_message,
        )
