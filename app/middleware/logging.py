"""
Request logging middleware for the Identity Core API.

Provides:
- Automatic request/response logging
- Request ID generation and propagation
- Response time tracking
- Health check endpoint exclusion

Query strings on SSO endpoints carry authorization codes, state tokens
and SAML messages, so only parameter names are logged.
"""

import logging
import time
import uuid
from typing import Callable, Optional, Set

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.dependencies.session import get_client_ip
from src.utils.logging import (
    clear_request_context,
    get_request_id,
    set_request_context,
)

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for structured request logging.

    Features:
    - Generates unique request IDs for tracing
    - Logs request method, path, status code, and response time
    - Picks up the user ID set by the session dependency
    - Adds X-Request-ID and X-Response-Time headers to responses
    """

    DEFAULT_EXCLUDE_PATHS: Set[str] = frozenset({
        "/",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
    })

    # Paths that should only log errors (never INFO)
    ERROR_ONLY_PATHS: Set[str] = frozenset({
        "/health",
    })

    def __init__(
        self,
        app,
        exclude_paths: Optional[Set[str]] = None,
        error_only_paths: Optional[Set[str]] = None,
    ):
        super().__init__(app)
        self.exclude_paths = exclude_paths or self.DEFAULT_EXCLUDE_PATHS
        self.error_only_paths = error_only_paths or self.ERROR_ONLY_PATHS

    def _get_request_id(self, request: Request) -> str:
        """Use an upstream request ID when present, otherwise generate one."""
        return (
            request.headers.get("X-Request-ID")
            or request.headers.get("X-Amzn-Trace-Id")  # AWS ALB
            or str(uuid.uuid4())
        )

    def _get_user_id(self, request: Request) -> str:
        user_id = getattr(request.state, "user_id", None)
        return str(user_id) if user_id else "-"

    def _get_client_ip(self, request: Request) -> str:
        return get_client_ip(request) or "unknown"

    def _should_log(self, path: str, status_code: int) -> bool:
        if path in self.exclude_paths:
            return False
        if path in self.error_only_paths:
            return status_code >= 400
        return True

    def _get_log_level(self, status_code: int) -> int:
        if status_code >= 500:
            return logging.ERROR
        elif status_code >= 400:
            return logging.WARNING
        else:
            return logging.INFO

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process request with logging.

        Wraps request handling with timing, context setup, and logging.
        """
        request_id = self._get_request_id(request)
        set_request_context(request_id=request_id)
        request.state.request_id = request_id

        method = request.method
        path = request.url.path
        query_keys = sorted(request.query_params.keys())
        client_ip = self._get_client_ip(request)

        start_time = time.perf_counter()

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

            if self._should_log(path, response.status_code):
                logger.log(
                    self._get_log_level(response.status_code),
                    f"{method} {path} {response.status_code} ({duration_ms:.2f}ms)",
                    extra={
                        "event": "http_request",
                        "http_method": method,
                        "http_path": path,
                        "http_query_keys": query_keys,
                        "http_status": response.status_code,
                        "duration_ms": round(duration_ms, 2),
                        "client_ip": client_ip,
                        "user_id": self._get_user_id(request),
                        "user_agent": request.headers.get("User-Agent", "-"),
                    },
                )

            return response

        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000

            logger.error(
                f"{method} {path} FAILED ({duration_ms:.2f}ms): {type(exc).__name__}",
                extra={
                    "event": "http_request_error",
                    "http_method": method,
                    "http_path": path,
                    "duration_ms": round(duration_ms, 2),
                    "client_ip": client_ip,
                    "error_type": type(exc).__name__,
                },
                exc_info=True,
            )

            # Re-raise to let FastAPI handle the error
            raise

        finally:
            clear_request_context()


def get_request_id_from_request(request: Request) -> Optional[str]:
    """
    Get request ID from a request object.

    Args:
        request: FastAPI Request object

    Returns:
        Request ID if available, None otherwise
    """
    return getattr(request.state, "request_id", None) or get_request_id()
