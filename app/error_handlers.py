"""
FastAPI exception handlers for the Identity Core API.

This module provides centralized exception handling that:
- Maps API and domain exceptions to HTTP responses
- Handles Pydantic validation errors with clean messages
- Reports unexpected exceptions to Sentry
- Renders SCIM failures with the SCIM error schema
- Prevents secrets, tokens and paths from leaking into responses

Non-SCIM error responses follow the format:
{
    "success": false,
    "error": "Human-readable message",
    "error_code": "MACHINE_READABLE_CODE",
    "details": {}  # Optional additional context
}
"""

import logging
import re
import uuid
from typing import Any, Dict, List, Optional

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.auth.sso.config_service import SSOConfigurationError
from src.auth.sso.oidc_service import OIDCServiceError
from src.auth.sso.saml_service import SAMLServiceError
from src.config import get_settings
from src.mfa.service import MFAError
from src.scim.types import SCIM_CONTENT_TYPE, SCIMError
from src.security.policies import SecurityPolicyViolation

from .exceptions import ErrorCode, IdentityCoreException
from .middleware import get_request_id_from_request

logger = logging.getLogger(__name__)

SCIM_PATH_PREFIX = "/scim/v2/"

# Patterns that indicate sensitive information
SENSITIVE_PATTERNS = [
    r"api[_-]?key\s*[:=]",
    r"client[_-]?secret",
    r"secret\s*[:=]",
    r"password\s*[:=]",
    r"bearer\s+[\w.~+/-]+",
    r"eyJ[\w-]+\.[\w-]+",
    r"-----BEGIN",
    r"SAMLResponse=",
    r"SAMLRequest=",
    # Connection strings
    r"postgres://",
    r"redis://",
    r"rediss://",
    # File paths that might be sensitive
    r"/home/",
    r"/Users/",
    r"/var/",
    r"/etc/",
    # Environment variable references
    r"\$\{\w+\}",
]

SENSITIVE_REGEX = re.compile("|".join(SENSITIVE_PATTERNS), re.IGNORECASE)

MFA_STATUS_CODES = {
    ErrorCode.MFA_ALREADY_ENABLED: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_MFA_CODE: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.INVALID_PASSWORD: status.HTTP_401_UNAUTHORIZED,
}

OIDC_STATUS_CODES = {
    ErrorCode.OIDC_TOKEN_VALIDATION_ERROR: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.OIDC_MISSING_EMAIL_CLAIM: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.OIDC_SUBJECT_MISMATCH: status.HTTP_401_UNAUTHORIZED,
}


def sanitize_error_message(message: str) -> str:
    """
    Remove potentially sensitive information from error messages.

    Args:
        message: The error message to sanitize.

    Returns:
        Sanitized message with sensitive data redacted.
    """
    if not message:
        return message

    if SENSITIVE_REGEX.search(message):
        return "An error occurred while processing your request"

    # Remove any file paths
    message = re.sub(r'[/\\][\w./\\-]+\.py\b', '[path]', message)

    # Remove IP addresses
    message = re.sub(r'\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b', '[ip]', message)

    if len(message) > 500:
        message = message[:500] + "..."

    return message


def sanitize_details(details: Dict[str, Any]) -> Dict[str, Any]:
    """
    Keep only known-safe keys with primitive values.

    Args:
        details: Dictionary of error details.

    Returns:
        Sanitized details dictionary.
    """
    if not details:
        return {}

    sanitized = {}
    safe_keys = {
        "field", "value", "resource_type", "resource_id", "required_role",
        "service", "organizations", "errors", "error_reference", "sentry_event_id",
    }

    for key, value in details.items():
        if key not in safe_keys:
            continue

        if isinstance(value, str):
            sanitized[key] = sanitize_error_message(value)
        elif isinstance(value, (int, float, bool)):
            sanitized[key] = value
        elif isinstance(value, list):
            sanitized[key] = [
                v if not isinstance(v, str) else sanitize_error_message(v)
                for v in value
                if isinstance(v, (str, int, float, bool, dict))
            ][:10]

    return sanitized


def format_pydantic_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """
    Format Pydantic validation errors into a clean, consistent format.

    Args:
        errors: List of Pydantic error dictionaries.

    Returns:
        List of formatted error dictionaries with field and message.
    """
    formatted = []
    for error in errors:
        loc = error.get("loc", [])
        field_parts = [str(p) for p in loc if p != "body"]
        field = ".".join(field_parts) if field_parts else "request"

        error_type = error.get("type", "")
        msg = error.get("msg", "Invalid value")

        if error_type == "missing":
            msg = f"Field '{field}' is required"
        elif error_type == "string_type":
            msg = f"Field '{field}' must be a string"
        elif error_type == "int_type":
            msg = f"Field '{field}' must be an integer"
        elif error_type == "bool_type":
            msg = f"Field '{field}' must be a boolean"
        elif "enum" in error_type.lower() or error_type == "union_tag_invalid":
            msg = f"Field '{field}' has an invalid value"
        else:
            msg = sanitize_error_message(msg)

        formatted.append({"field": field, "message": msg})

    return formatted[:10]


def create_error_response(
    status_code: int,
    error: str,
    error_code: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """
    Create a standardized error response.

    Args:
        status_code: HTTP status code.
        error: Human-readable error message.
        error_code: Machine-readable error code.
        details: Optional additional details.
        headers: Optional response headers.

    Returns:
        JSONResponse with consistent error format.
    """
    content = {
        "success": False,
        "error": sanitize_error_message(error),
        "error_code": error_code,
    }

    if details:
        sanitized_details = sanitize_details(details)
        if sanitized_details:
            content["details"] = sanitized_details

    return JSONResponse(status_code=status_code, content=content, headers=headers)


def create_scim_error_response(
    status_code: int,
    detail: str,
    scim_type: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Render a failure with the SCIM error schema."""
    error = SCIMError(status_code, sanitize_error_message(detail), scim_type)
    return JSONResponse(
        status_code=status_code,
        content=error.to_dict(),
        media_type=SCIM_CONTENT_TYPE,
        headers=headers,
    )


def _is_scim_request(request: Request) -> bool:
    return request.url.path.startswith(SCIM_PATH_PREFIX)


def report_to_sentry(
    exc: Exception,
    request: Optional[Request] = None,
    extra_context: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """
    Report an exception to Sentry with context.

    Args:
        exc: The exception to report.
        request: Optional FastAPI request for context.
        extra_context: Optional additional context.

    Returns:
        Sentry event ID if reported, None otherwise.
    """
    client = sentry_sdk.get_client()
    if not client.is_active():
        return None

    with sentry_sdk.new_scope() as scope:
        if request:
            scope.set_context("request", {
                "method": request.method,
                "path": request.url.path,
            })

            if hasattr(request.state, "user_id"):
                scope.set_user({"id": request.state.user_id})

            request_id = get_request_id_from_request(request)
            if request_id:
                scope.set_tag("request_id", request_id)

        if extra_context:
            scope.set_context("extra", extra_context)

        return sentry_sdk.capture_exception(exc)


# =============================================================================
# Exception Handlers
# =============================================================================

async def identity_core_exception_handler(
    request: Request,
    exc: IdentityCoreException,
) -> JSONResponse:
    """
    Handle IdentityCoreException and subclasses.

    Logs internal details and returns the sanitized public message.
    """
    log_message = f"{exc.__class__.__name__}: {exc.message}"
    if exc.internal_message:
        log_message += f" | Internal: {exc.internal_message}"

    if exc.status_code >= 500:
        logger.error(log_message, exc_info=True)
        report_to_sentry(exc, request)
    else:
        logger.warning(log_message)

    return create_error_response(
        status_code=exc.status_code,
        error=exc.message,
        error_code=exc.error_code.value,
        details=exc.details,
    )


def _domain_status(exc: Exception, code: ErrorCode) -> int:
    if isinstance(exc, SecurityPolicyViolation):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, MFAError):
        return MFA_STATUS_CODES.get(code, status.HTTP_400_BAD_REQUEST)
    if isinstance(exc, OIDCServiceError):
        return OIDC_STATUS_CODES.get(code, status.HTTP_502_BAD_GATEWAY)
    return status.HTTP_400_BAD_REQUEST


async def domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle exceptions raised by the identity engines.

    Each carries ``message`` and ``error_code``; the HTTP status follows the
    exception family.
    """
    code = ErrorCode.from_value(getattr(exc, "error_code", None), ErrorCode.VALIDATION_ERROR)
    status_code = _domain_status(exc, code)
    message = getattr(exc, "message", None) or str(exc)

    details: Dict[str, Any] = {}
    if isinstance(exc, SSOConfigurationError) and exc.field:
        details["field"] = exc.field
    if isinstance(exc, SAMLServiceError) and "errors" in exc.details:
        details["errors"] = exc.details["errors"]
    organizations = getattr(exc, "organization_slugs", None)
    if organizations:
        details["organizations"] = organizations

    logger.warning(
        f"{exc.__class__.__name__} on {request.method} {request.url.path}: {code.value}"
    )

    return create_error_response(
        status_code=status_code,
        error=message,
        error_code=code.value,
        details=details,
    )


async def scim_exception_handler(request: Request, exc: SCIMError) -> JSONResponse:
    """Render SCIM errors with the status mirrored from the error body."""
    if exc.status >= 500:
        logger.error(f"SCIM error on {request.url.path}: {exc.detail}")
    else:
        logger.info(
            f"SCIM {exc.status} on {request.method} {request.url.path}"
            f"{f' ({exc.scim_type})' if exc.scim_type else ''}"
        )
    return JSONResponse(
        status_code=exc.status,
        content=exc.to_dict(),
        media_type=SCIM_CONTENT_TYPE,
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """
    Handle Pydantic/FastAPI request validation errors.

    Converts validation errors into a clean, user-friendly format
    without exposing internal validation details.
    """
    errors = format_pydantic_errors(exc.errors())

    logger.warning(
        f"Validation error on {request.method} {request.url.path}: "
        f"{len(errors)} error(s)"
    )

    if len(errors) == 1:
        error_message = errors[0]["message"]
    else:
        error_message = f"Validation failed with {len(errors)} error(s)"

    if _is_scim_request(request):
        return create_scim_error_response(
            status.HTTP_400_BAD_REQUEST, error_message, "invalidValue"
        )

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        error=error_message,
        error_code=ErrorCode.VALIDATION_ERROR.value,
        details={"errors": errors},
    )


async def pydantic_validation_handler(
    request: Request,
    exc: PydanticValidationError,
) -> JSONResponse:
    """
    Handle direct Pydantic ValidationError (not wrapped by FastAPI).
    """
    errors = format_pydantic_errors(exc.errors())

    logger.warning(
        f"Pydantic validation error on {request.method} {request.url.path}: "
        f"{len(errors)} error(s)"
    )

    if len(errors) == 1:
        error_message = errors[0]["message"]
    else:
        error_message = f"Validation failed with {len(errors)} error(s)"

    return create_error_response(
        status_code=status.HTTP_400_BAD_REQUEST,
        error=error_message,
        error_code=ErrorCode.VALIDATION_ERROR.value,
        details={"errors": errors},
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """
    Handle Starlette/FastAPI HTTPException.

    Converts HTTPException to our standard error format while
    preserving the status code and detail message.
    """
    status_code_mapping = {
        400: ErrorCode.VALIDATION_ERROR,
        401: ErrorCode.AUTHENTICATION_REQUIRED,
        403: ErrorCode.PERMISSION_DENIED,
        404: ErrorCode.RESOURCE_NOT_FOUND,
        405: ErrorCode.VALIDATION_ERROR,
        409: ErrorCode.RESOURCE_CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
        500: ErrorCode.INTERNAL_ERROR,
        502: ErrorCode.EXTERNAL_SERVICE_ERROR,
        503: ErrorCode.EXTERNAL_SERVICE_ERROR,
    }

    error_code = status_code_mapping.get(exc.status_code, ErrorCode.UNKNOWN_ERROR)
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {detail}")
    elif exc.status_code >= 400:
        logger.warning(f"HTTP {exc.status_code}: {detail}")

    headers = {}
    if exc.headers:
        safe_headers = {"Retry-After", "WWW-Authenticate", "Allow"}
        headers = {k: v for k, v in exc.headers.items() if k in safe_headers}

    if _is_scim_request(request):
        return create_scim_error_response(exc.status_code, detail, headers=headers or None)

    return create_error_response(
        status_code=exc.status_code,
        error=sanitize_error_message(detail),
        error_code=error_code.value,
        headers=headers if headers else None,
    )


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Handle any unhandled exceptions.

    Logs the full traceback, reports to Sentry and returns a generic
    message with a reference ID.
    """
    error_reference = str(uuid.uuid4())[:8]

    logger.error(
        f"Unhandled exception [ref:{error_reference}] on "
        f"{request.method} {request.url.path}: {type(exc).__name__}",
        exc_info=True,
    )

    event_id = report_to_sentry(
        exc,
        request,
        extra_context={"error_reference": error_reference},
    )

    if _is_scim_request(request):
        return create_scim_error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            f"Internal server error (ref {error_reference})",
        )

    if not get_settings().is_production:
        return create_error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error=f"Internal server error: {type(exc).__name__}",
            error_code=ErrorCode.INTERNAL_ERROR.value,
            details={
                "error_reference": error_reference,
                "sentry_event_id": event_id,
            } if event_id else {"error_reference": error_reference},
        )

    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        error="An unexpected error occurred. Please try again later.",
        error_code=ErrorCode.INTERNAL_ERROR.value,
        details={"error_reference": error_reference},
    )


# =============================================================================
# Handler Registration
# =============================================================================

def register_exception_handlers(app: FastAPI) -> None:
    """
    Register all exception handlers with the FastAPI application.

    Args:
        app: The FastAPI application instance.
    """
    app.add_exception_handler(IdentityCoreException, identity_core_exception_handler)

    # Domain exceptions from the identity engines
    for domain_exception in (
        SecurityPolicyViolation,
        MFAError,
        SSOConfigurationError,
        SAMLServiceError,
        OIDCServiceError,
    ):
        app.add_exception_handler(domain_exception, domain_exception_handler)

    app.add_exception_handler(SCIMError, scim_exception_handler)

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, pydantic_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    logger.info("Exception handlers registered successfully")
