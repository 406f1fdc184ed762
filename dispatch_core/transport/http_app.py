"""
HTTP application for the technician portal and payout administration.

Layers:
1. Public: /health only
2. Portal: technician session token required
3. Admin: administrator session token required

Every non-health route is rate limited before the token is resolved.
Domain errors render as ``{"ok": false, "error", "error_code"}``.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from dispatch_core.config import Settings, settings as default_settings
from dispatch_core.core.domain import Identity
from dispatch_core.core.errors import DispatchError, RateLimited
from dispatch_core.core.ports import AsyncRecordStore, Clock
from dispatch_core.core.service import DispatchService, build_service
from dispatch_core.infra.clock import SystemClock
from dispatch_core.infra.logging_config import setup_logging, get_logger
from dispatch_core.infra.memory_store import InMemoryRecordStore
from dispatch_core.infra.rate_limiter import InMemoryRateLimiter, run_periodic_sweep
from dispatch_core.transport.dependencies import (
    get_service,
    require_identity,
)
from dispatch_core.transport.middleware import (
    RequestContextMiddleware,
    ErrorHandlingMiddleware,
    SecurityHeadersMiddleware,
)

logger = get_logger(__name__)


# ============================================================================
# REQUEST BODIES
# ============================================================================

class TokenBody(BaseModel):
    token: Optional[str] = None


class PayoutStateRequest(TokenBody):
    state: str


class PayoutReopenRequest(TokenBody):
    reason: str


class TechnicianStatusRequest(TokenBody):
    status: str


class AssignJobRequest(TokenBody):
    technician_id: str


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    app_settings: Settings | None = None,
    store: AsyncRecordStore | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    ``store`` and ``clock`` are injectable for tests; by default the store
    follows ``settings.store_backend`` and the clock is the system clock.
    """
    cfg = app_settings or default_settings
    clock = clock or SystemClock()

    setup_logging(level=cfg.log_level, use_json=cfg.use_json_logs)

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        """Application lifecycle: startup and shutdown"""

        # STARTUP
        logger.info(f"Starting application: env={cfg.app_env}, store={cfg.store_backend}")

        if cfg.is_production:
            missing = cfg.validate_required_for_production()
            if missing:
                logger.critical(f"Missing required production settings: {missing}")
                raise RuntimeError(f"Missing production config: {missing}")

        record_store = store
        using_pool = False
        if record_store is None:
            if cfg.store_backend == "postgres":
                from dispatch_core.infra.db_async import apply_schema, init_pool
                from dispatch_core.infra.pg_record_store_async import AsyncPostgresRecordStore

                await init_pool(cfg.database_url)
                await apply_schema()
                record_store = AsyncPostgresRecordStore()
                using_pool = True
            else:
                record_store = InMemoryRecordStore()

        service = build_service(record_store, clock, cfg)
        fastapi_app.state.service = service
        fastapi_app.state.trust_proxy_headers = cfg.trust_proxy_headers

        # One limiter per process, owned by the app
        limiter = InMemoryRateLimiter(
            window_seconds=cfg.rate_limit_window_seconds,
            per_token=cfg.rate_limit_per_token,
            per_address=cfg.rate_limit_per_address,
            grace_seconds=cfg.rate_limit_grace_seconds,
            clock=clock,
        )
        fastapi_app.state.rate_limiter = limiter
        sweeper = asyncio.create_task(
            run_periodic_sweep(limiter, cfg.rate_limit_sweep_interval_seconds)
        )

        logger.info(
            f"Session resolvers: {service.authenticator.resolver_names}; "
            f"rate limits: token={cfg.rate_limit_per_token} address={cfg.rate_limit_per_address} "
            f"per {cfg.rate_limit_window_seconds}s"
        )
        logger.info("Application startup complete")

        yield

        # SHUTDOWN
        logger.info("Shutting down application")

        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass

        await service.authenticator.drain()

        if using_pool:
            from dispatch_core.infra.db_async import close_pool
            await close_pool()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Dispatch Core",
        description="Technician job matching, authorization and payout ledger",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if cfg.is_production else "/docs",
        redoc_url=None if cfg.is_production else "/redoc",
        openapi_url=None if cfg.is_production else "/openapi.json",
    )

    if cfg.is_production or cfg.is_staging:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cfg.allowed_origins if cfg.allowed_origins != ["*"] else [],
            allow_credentials=False,
            allow_methods=["GET", "POST"],
            allow_headers=["Content-Type", "Authorization"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestContextMiddleware, enabled=cfg.enable_request_logging)

    _register_exception_handlers(app)
    _register_routes(app)
    return app


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        if exc.status_code >= 500:
            logger.error(f"Server error: {exc.code}: {exc.detail}", extra={"status_code": exc.status_code})
        else:
            logger.info(f"Request rejected: {exc.code} ({exc.status_code}) {request.url.path}")

        headers = None
        if isinstance(exc, RateLimited):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = sorted({".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()})
        return JSONResponse(
            status_code=400,
            content={
                "ok": False,
                "error": f"Invalid request: {', '.join(f for f in fields if f) or 'body'}",
                "error_code": "validation_error",
            },
        )


# ============================================================================
# ROUTES
# ============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    def health():
        """Liveness - PUBLIC endpoint, minimal information."""
        return {"status": "healthy"}

    # ------------------------------------------------------------------
    # Technician portal
    # ------------------------------------------------------------------

    @app.get("/portal/jobs")
    async def portal_jobs(
        identity: Identity = Depends(require_identity),
        service: DispatchService = Depends(get_service),
    ):
        jobs = await service.portal_jobs(identity)
        return {"ok": True, **jobs.to_dict()}

    @app.post("/portal/jobs/{job_id}/accept")
    async def portal_accept(
        job_id: str,
        identity: Identity = Depends(require_identity),
        service: DispatchService = Depends(get_service),
    ):
        job = await service.accept_job(identity, job_id)
        return {
            "ok": True,
            "job_id": job.id,
            "status": job.status.value,
            "assigned_technician_id": job.assigned_technician_id,
        }

    @app.post("/portal/jobs/{job_id}/decline")
    async def portal_decline(
        job_id: str,
        identity: Identity = Depends(require_identity),
        service: DispatchService = Depends(get_service),
    ):
        job = await service.decline_job(identity, job_id)
        return {"ok": True, "job_id": job.id, "status": job.status.value}

    @app.post("/portal/jobs/{job_id}/complete")
    async def portal_complete(
        job_id: str,
        identity: Identity = Depends(require_identity),
        service: DispatchService = Depends(get_service),
    ):
        result = await service.complete_job(identity, job_id)
        return {"ok": True, **result.to_dict()}

    @app.get("/portal/payouts")
    async def portal_payouts(
        identity: Identity = Depends(require_identity),
        service: DispatchService = Depends(get_service),
    ):
        payouts = await service.payouts(identity)
        return {"ok": True, "payouts": [p.to_dict() for p in payouts]}

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @app.get("/admin/jobs/{job_id}/candidates")
    async def admin_dispatch_candidates(
        job_id: str,
        identity: Identity = Depends(require_identity),
        service: DispatchService = Depends(get_service),
    ):
        candidates = await service.dispatch_candidates(identity, job_id)
        return {
            "ok": True,
            "job_id": job_id,
            "matches": [c.to_dict() for c in candidates],
            "total_matches": len(candidates),
        }

    @app.post("/admin/jobs/{job_id}/assign")
    async def admin_assign_job(
        job_id: str,
        body: AssignJobRequest,
        identity: Identity = Depends(require_identity),
        service: DispatchService = Depends(get_service),
    ):
        job = await service.assign_job(identity, job_id, body.technician_id)
        return {
            "ok": True,
            "job_id": job.id,
            "status": job.status.value,
            "assigned_technician_id": job.assigned_technician_id,
        }

    @app.post("/admin/payouts/{ledger_id}/state")
    async def admin_payout_state(
        ledger_id: str,
        body: PayoutStateRequest,
        identity: Identity = Depends(require_identity),
        service: DispatchService = Depends(get_service),
    ):
        entry = await service.set_payout_state(identity, ledger_id, body.state)
        return {"ok": True, "ledger": entry.to_dict()}

    @app.post("/admin/payouts/{ledger_id}/reopen")
    async def admin_payout_reopen(
        ledger_id: str,
        body: PayoutReopenRequest,
        identity: Identity = Depends(require_identity),
        service: DispatchService = Depends(get_service),
    ):
        entry = await service.reopen_payout(identity, ledger_id, body.reason)
        return {"ok": True, "ledger": entry.to_dict()}

    @app.get("/admin/payouts/{ledger_id}/audit")
    async def admin_payout_audit(
        ledger_id: str,
        identity: Identity = Depends(require_identity),
        service: DispatchService = Depends(get_service),
    ):
        audit = await service.audit_payout(identity, ledger_id)
        return {"ok": True, "audit": audit.to_dict()}

    @app.post("/admin/technicians/{technician_id}/status")
    async def admin_technician_status(
        technician_id: str,
        body: TechnicianStatusRequest,
        identity: Identity = Depends(require_identity),
        service: DispatchService = Depends(get_service),
    ):
        technician = await service.set_technician_status(identity, technician_id, body.status)
        return {"ok": True, "technician_id": technician.id, "status": technician.status}


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "dispatch_core.transport.http_app:app",
        host="0.0.0.0",
        port=8000,
        log_level=default_settings.log_level.lower(),
    )
