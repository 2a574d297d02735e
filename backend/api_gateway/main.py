"""
Invoice Approvals - API Gateway
===============================
Single entry point for client requests.
Wires the approval services together and maps their errors to HTTP.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.cache import Cache, RateCounter, create_cache
from shared.config import settings
from shared.database import close_db, create_engine, create_session_factory, init_db
from shared.errors import ApprovalError, RateLimited
from shared.identity import IdentityProvider, create_identity_provider
from shared.logging_config import configure_logging
from shared.metrics import get_metrics
from shared.notifier import LoggingNotifier, NotificationDispatcher, Notifier
from services.access import AccessResolver
from services.audit_log import AuditLog
from services.concurrency import ConcurrencyGuard
from services.delegations import ApprovalDelegations
from services.login_security import LoginLockout, MfaService
from services.manager_assignment import ManagerAssignmentResolver
from services.workflow_engine import WorkflowEngine

from .middleware.logging import LoggingMiddleware
from .middleware.rate_limit import RateLimitMiddleware
from .routes import audit, auth, delegations, health, invoices

logger = structlog.get_logger(__name__)


def create_app(
    database_url: Optional[str] = None,
    cache: Optional[Cache] = None,
    notifier: Optional[Notifier] = None,
    identity_provider: Optional[IdentityProvider] = None,
    rate_limit_requests: Optional[int] = None,
) -> FastAPI:
    """Build the gateway; collaborators default to the configured ones."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        logger.info("Starting API Gateway", version=settings.app_version)

        engine = create_engine(database_url)
        await init_db(engine)
        session_factory = create_session_factory(engine)

        metrics = get_metrics()
        app_cache = cache or create_cache(settings.cache_backend, settings.redis_url, settings.cache_key_prefix)
        dispatcher = NotificationDispatcher(notifier or LoggingNotifier())
        audit_log = AuditLog(session_factory, metrics)
        assignment = ManagerAssignmentResolver(session_factory)

        app.state.session_factory = session_factory
        app.state.cache = app_cache
        app.state.rate_counter = RateCounter(app_cache)
        app.state.notifications = dispatcher
        app.state.audit_log = audit_log
        app.state.access = AccessResolver(session_factory)
        app.state.delegations = ApprovalDelegations(session_factory)
        app.state.workflow = WorkflowEngine(
            session_factory,
            audit_log,
            assignment,
            dispatcher,
            guard=ConcurrencyGuard(metrics),
            metrics=metrics,
        )
        app.state.lockout = LoginLockout(session_factory, dispatcher, metrics=metrics)
        app.state.mfa = MfaService(session_factory, app_cache, dispatcher, metrics=metrics)
        app.state.identity_provider = identity_provider or create_identity_provider()

        yield

        await dispatcher.drain()
        await app_cache.close()
        await close_db(engine)
        logger.info("Shutting down API Gateway")

    app = FastAPI(
        title="Invoice Approvals API",
        description="Invoice approval workflow, access control, audit trail and login security",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RateLimitMiddleware, requests_per_window=rate_limit_requests)
    app.add_middleware(LoggingMiddleware)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Track request metrics."""
        response = await call_next(request)
        if settings.metrics_enabled:
            get_metrics().record_http_request(method=request.method, status=response.status_code)
        return response

    # === Routes ===
    app.include_router(health.router, tags=["Health"])
    app.include_router(auth.router, tags=["Authentication"])
    app.include_router(invoices.router, prefix="/api/v1", tags=["Invoices"])
    app.include_router(audit.router, prefix="/api/v1/admin", tags=["Admin"])
    app.include_router(delegations.router, prefix="/api/v1/admin", tags=["Admin"])

    @app.get("/metrics", include_in_schema=False)
    async def prometheus_metrics():
        """Prometheus metrics endpoint."""
        metrics = get_metrics()
        return Response(content=metrics.get_metrics(), media_type=metrics.get_content_type())

    # === Error Handlers ===
    @app.exception_handler(ApprovalError)
    async def approval_error_handler(request: Request, exc: ApprovalError) -> JSONResponse:
        headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimited) else None
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "Request rejected",
            path=request.url.path,
            method=request.method,
            error=exc.code,
            status_code=exc.status_code,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, **exc.to_dict()},
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled errors."""
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={
                "ok": False,
                "detail": "Internal server error",
                "error_id": getattr(request.state, "trace_id", None),
            },
        )

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api_gateway.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
    )
