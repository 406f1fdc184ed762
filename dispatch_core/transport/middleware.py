# dispatch_core/transport/middleware.py
import re
import time
import uuid
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from dispatch_core.infra.logging_config import get_logger, LogContext

logger = get_logger(__name__)

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Cache-Control": "no-store",
}

# Caller-supplied ids end up in logs and response headers
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


def _request_id(request: Request) -> str:
    supplied = request.headers.get("X-Request-ID", "")
    if _REQUEST_ID_RE.match(supplied):
        return supplied
    return str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tag each request with an id and log one line when it finishes.

    ``require_identity`` stores the resolved subject on ``request.state``,
    so the completion line says who called, not just what was called.
    Only the path is logged: query strings may carry ``?token=``.
    """

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = _request_id(request)
        request.state.request_id = request_id
        request.state.subject_id = None
        request.state.subject_kind = None
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as exc:
            if self.enabled:
                self._log_ctx(request).error(
                    f"Request failed: {request.method} {request.url.path} "
                    f"error={exc.__class__.__name__} duration={(time.time() - start_time) * 1000:.2f}ms",
                    extra={"method": request.method, "path": request.url.path},
                    exc_info=True,
                )
            raise

        response.headers["X-Request-ID"] = request_id
        if self.enabled:
            duration_ms = (time.time() - start_time) * 1000
            self._log_ctx(request).info(
                f"{request.method} {request.url.path} status={response.status_code} "
                f"subject={request.state.subject_kind or 'anonymous'} duration={duration_ms:.2f}ms",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                    "rate_limit_remaining": response.headers.get("X-RateLimit-Remaining"),
                },
            )
        return response

    @staticmethod
    def _log_ctx(request: Request) -> LogContext:
        return LogContext(
            logger,
            request_id=request.state.request_id,
            subject_id=request.state.subject_id,
        )


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Last resort: turn anything unhandled into a generic JSON 500"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")

            LogContext(
                logger,
                request_id=request_id,
                subject_id=getattr(request.state, "subject_id", None),
            ).error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

            return JSONResponse(
                status_code=500,
                content={
                    "ok": False,
                    "error": "Internal server error",
                    "error_code": "internal_error",
                    "request_id": request_id,
                }
            )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response
