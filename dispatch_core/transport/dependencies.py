"""
FastAPI dependencies: token extraction, rate limiting, authentication.

Token precedence: ``Authorization: Bearer <token>`` header, then a
``token`` field in a JSON body, then a ``token`` query parameter.
"""
from __future__ import annotations

import json

from fastapi import Depends, Request, Response

from dispatch_core.core.domain import Identity
from dispatch_core.core.service import DispatchService
from dispatch_core.infra.logging_config import get_logger
from dispatch_core.infra.rate_limiter import InMemoryRateLimiter

logger = get_logger(__name__)


def get_service(request: Request) -> DispatchService:
    """Get service from app state"""
    return request.app.state.service


def get_rate_limiter(request: Request) -> InMemoryRateLimiter:
    return request.app.state.rate_limiter


def client_address(request: Request) -> str:
    """
    Caller IP.  X-Forwarded-For is honoured only when the app sits behind
    a trusted proxy (``trust_proxy_headers``); otherwise it is spoofable.
    """
    if getattr(request.app.state, "trust_proxy_headers", False):
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def _body_token(request: Request) -> str | None:
    if request.method not in ("POST", "PUT", "PATCH"):
        return None
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if isinstance(payload, dict) and isinstance(payload.get("token"), str):
        return payload["token"]
    return None


async def extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
        if token:
            return token

    token = await _body_token(request)
    if token:
        return token

    return request.query_params.get("token") or None


async def enforce_rate_limit(
    request: Request,
    response: Response,
    token: str | None = Depends(extract_token),
    limiter: InMemoryRateLimiter = Depends(get_rate_limiter),
) -> None:
    """Count the request; raise RateLimited over the ceiling."""
    decision = limiter.enforce(token, client_address(request))
    for name, value in decision.headers().items():
        response.headers[name] = value


async def require_identity(
    request: Request,
    _: None = Depends(enforce_rate_limit),
    token: str | None = Depends(extract_token),
    service: DispatchService = Depends(get_service),
) -> Identity:
    """Rate limit first, then resolve the session token."""
    identity = await service.authenticate(token)
    # Picked up by RequestContextMiddleware's log line
    request.state.subject_id = identity.subject_id
    request.state.subject_kind = identity.subject_kind.value
    return identity
