"""
Logging for the identity core.

Every record carries the request ID, user ID and organization ID of the
request it was logged in, and passes through a redaction filter that
masks protocol credentials: OIDC client secrets and authorization codes,
bearer and SCIM tokens, JWTs (ID and logout tokens), SAML messages and
session cookies. Production logs are one JSON object per line.
"""

import json
import logging
import re
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
organization_id_var: ContextVar[Optional[str]] = ContextVar("organization_id", default=None)

REDACTED = "[REDACTED]"

_SECRET_KEYS = r"client[_-]?secret|password|secret|token|code|authorization|identity_session"
SENSITIVE_PATTERNS = [
    re.compile(r"bearer\s+[\w.~+/=-]+", re.IGNORECASE),
    re.compile(rf'(?:{_SECRET_KEYS})["\']?\s*[:=]\s*["\']?[^\s,}}&"\']+', re.IGNORECASE),
    re.compile(r'SAML(?:Request|Response)["\']?\s*[:=]\s*["\']?[\w+/=%-]+'),
    re.compile(r"eyJ[\w-]+\.eyJ[\w-]+\.[\w-]*"),
]

# LogRecord attributes that are not caller-supplied extras
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None))
) | {"message", "request_id", "user_id", "organization_id"}

DEVELOPMENT_FORMAT = (
    "%(asctime)s %(levelname)-8s [%(request_id)s] [%(organization_id)s] %(name)s - %(message)s"
)


def redact_sensitive_data(message: str) -> str:
    """Mask credentials and protocol payloads in a log message."""
    if not message:
        return message
    for pattern in SENSITIVE_PATTERNS:
        message = pattern.sub(REDACTED, message)
    return message


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        record.user_id = user_id_var.get() or "-"
        record.organization_id = organization_id_var.get() or "-"
        return True


class SensitiveDataFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = redact_sensitive_data(str(record.msg))
        if record.args:
            record.args = tuple(
                redact_sensitive_data(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with request context and any extras."""

    def __init__(self, service_name: str = "identity-core"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "request_id": getattr(record, "request_id", "-"),
            "user_id": getattr(record, "user_id", "-"),
            "organization_id": getattr(record, "organization_id", "-"),
        }
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)

        extra = {
            k: v for k, v in vars(record).items()
            if k not in _RECORD_ATTRS and not k.startswith("_")
        }
        if extra:
            data["extra"] = extra
        return json.dumps(data, default=str, ensure_ascii=False)


def setup_logging(service_name: str = "identity-core") -> logging.Logger:
    """
    Configure the root logger from ``LoggingSettings``.

    JSON output is used in production or when ``LOG_FORMAT_JSON`` is set.
    Call once at startup, before modules that log are imported.
    """
    from src.config import get_settings

    settings = get_settings()
    level = getattr(logging, settings.logging.log_level)
    use_json = settings.logging.log_format_json or settings.is_production

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestContextFilter())
    handler.addFilter(SensitiveDataFilter())
    if use_json:
        handler.setFormatter(JSONFormatter(service_name))
    else:
        handler.setFormatter(logging.Formatter(DEVELOPMENT_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    for name in ("uvicorn.access", "httpx", "httpcore", "onelogin", "xmlsec"):
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(
        "Logging configured",
        extra={"log_level": settings.logging.log_level, "json": use_json},
    )
    return root_logger


def set_request_context(
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    organization_id: Optional[str] = None,
) -> None:
    """Attach IDs to every record logged in the current async context."""
    if request_id is not None:
        request_id_var.set(request_id)
    if user_id is not None:
        user_id_var.set(user_id)
    if organization_id is not None:
        organization_id_var.set(organization_id)


def clear_request_context() -> None:
    request_id_var.set(None)
    user_id_var.set(None)
    organization_id_var.set(None)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


@contextmanager
def log_duration(operation: str, logger: logging.Logger) -> Iterator[None]:
    """Log how long an IdP round-trip took, at DEBUG."""
    start = time.perf_counter()
    success = False
    try:
        yield
        success = True
    finally:
        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.debug(
            f"{operation} completed in {elapsed_ms}ms",
            extra={"operation": operation, "duration_ms": elapsed_ms, "success": success},
        )
