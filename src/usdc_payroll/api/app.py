"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from usdc_payroll import __version__
from usdc_payroll.api.rate_limit import configure_limits, limit_error, limiter
from usdc_payroll.api.routes import health_router, payroll_router, webhooks_router, workers_router
from usdc_payroll.config import Settings, get_settings
from usdc_payroll.database import Database
from usdc_payroll.errors import PayrollError, ValidationError
from usdc_payroll.logging_config import configure_logging
from usdc_payroll.providers import build_gateway_clients
from usdc_payroll.providers.base import GatewayClients
from usdc_payroll.services import build_services

logger = logging.getLogger(__name__)


def error_body(message: str, code: str, status_code: int, details: list | None = None) -> dict:
    error = {"message": message, "code": code, "statusCode": status_code}
    if details:
        error["details"] = details
    return {"error": error}


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render rejected requests in the error envelope.

    Must stay synchronous: the limiter middleware swaps coroutine handlers
    for slowapi's default response.
    """
    message, code = limit_error(exc.detail)
    client = request.client.host if request.client else "unknown"
    logger.warning("Rate limit hit on %s %s by %s (%s)", request.method, request.url.path, client, exc.detail)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=error_body(message, code, status.HTTP_429_TOO_MANY_REQUESTS),
    )


def create_app(
    settings: Settings | None = None,
    *,
    database: Database | None = None,
    gateway: GatewayClients | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``database`` and ``gateway`` are injected by tests; when omitted they are
    built from ``settings`` at startup and closed at shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        configure_logging(settings.log_level)
        db = database or Database(settings.database_url, echo=settings.debug)
        db.open()
        clients = gateway or build_gateway_clients(settings)
        services = build_services(settings, db, clients)
        app.state.services = services
        logger.info("USDC payroll API started (gateway: %s)", settings.gateway_backend)
        try:
            yield
        finally:
            await services.supervisor.shutdown()
            if gateway is None:
                await clients.aclose()
            if database is None:
                await db.close()

    app = FastAPI(
        title="USDC Payroll API",
        description="Batch USDC payroll with cross-chain transfers and gas abstraction",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    configure_limits(settings)
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(PayrollError)
    async def payroll_error_handler(request: Request, exc: PayrollError) -> JSONResponse:
        """Render domain errors with their stable code."""
        if exc.status_code >= 500:
            logger.error("%s %s failed: [%s] %s", request.method, request.url.path, exc.code, exc.message)
        details = exc.details if isinstance(exc, ValidationError) else None
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.public_message, exc.code, exc.status_code, details),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Malformed request bodies, paths and queries are 400s."""
        details = [
            {"field": ".".join(str(p) for p in err["loc"][1:]) or str(err["loc"][0]), "message": err["msg"]}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body("Invalid request data", "VALIDATION_ERROR", 400, details),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("An unexpected error occurred", "INTERNAL_ERROR", 500),
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(payroll_router, prefix="/api")
    app.include_router(workers_router, prefix="/api")
    app.include_router(webhooks_router, prefix="/api")

    return app
