"""
TradeInbox Backend — FastAPI Application Factory
===================================================

What:  Creates and configures the FastAPI application instance.
Why:   Centralizes app configuration, middleware registration, route mounting,
       and lifecycle management in one place.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   uvicorn (uvicorn tradeinbox.main:app), tests (create_app(container)).

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      FastAPI App                         │
    │                                                          │
    │  Middleware Chain:                                       │
    │  ┌────────────┐ ┌──────────┐ ┌─────────┐ ┌──────┐ ┌────┐ │
    │  │ Rate Limit │→│ Req ID   │→│ Logging │→│ GZip │→│CORS│ │
    │  └────────────┘ └──────────┘ └─────────┘ └──────┘ └────┘ │
    │                                                          │
    │  Routes:                                                 │
    │  /api/inbox/*  /api/webhooks/*  /api/files/*  /health    │
    │  WS /api/inbox/stream                                    │
    │                                                          │
    │  app.state.services: ServiceContainer                    │
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Initialize logging
    2. Validate configuration (logged, not fatal)
    3. Build the ServiceContainer unless one was injected

    Shutdown:
    1. Wait for background classification tasks
    2. Close provider HTTP clients and the database pool
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from tradeinbox import __version__
from tradeinbox.config import settings
from tradeinbox.dependencies import ServiceContainer, build_services
from tradeinbox.exceptions import (
    ArtisanNotFoundError,
    CircuitBreakerOpenError,
    DatabaseError,
    InvalidStateError,
    NotFoundError,
    ProviderError,
    RateLimitExceededError,
    TradeInboxError,
    ValidationError,
)
from tradeinbox.middleware.logging import RequestLoggingMiddleware
from tradeinbox.middleware.rate_limit import RateLimitMiddleware
from tradeinbox.middleware.request_id import RequestIDMiddleware, request_id_var
from tradeinbox.routes import files, health, inbox, webhooks

logger = logging.getLogger(__name__)

PROVIDER_FAILURE_MESSAGE = "An upstream service failed. Please try again later."


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging for the whole application, once, before anything else
    logs. Format: "%(asctime)s [%(levelname)s] %(name)s: %(message)s" on stdout.
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Third-party libraries that log every request at INFO/DEBUG
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("TradeInbox Backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Keep serving: intake and health still work without AI credentials
        logger.error("Configuration error: %s", str(e))

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)
    container: ServiceContainer = app.state.services

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("TradeInbox Backend shutting down...")
    await container.aclose()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error(status_code: int, error: str, message: str, details=None, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "details": details,
            "request_id": request_id_var.get(""),
        },
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map the exception hierarchy to HTTP responses.

    Handler hierarchy (most specific class wins):
        ValidationError / RequestValidationError → 400
        ArtisanNotFoundError     → 400 when nothing resolved, else 404
        NotFoundError            → 404
        InvalidStateError        → 409 (includes AlreadyRoutedError)
        RateLimitExceededError   → 429
        ProviderError            → 502, generic message
        CircuitBreakerOpenError  → 503 + Retry-After
        DatabaseError            → 500, generic message
        TradeInboxError / Exception → 500

    Responses never include stack traces or provider error text; those are
    logged server-side with the request id.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        return _error(400, "validation_error", exc.message, exc.context)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return _error(
            400,
            "validation_error",
            "Invalid request parameters",
            {"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]},
        )

    @app.exception_handler(ArtisanNotFoundError)
    async def handle_artisan_not_found(request: Request, exc: ArtisanNotFoundError):
        logger.warning("[%s] Artisan not resolved: %s", request_id_var.get(""), exc.message)
        if exc.artisan_id is None:
            return _error(400, "artisan_unresolved", exc.message)
        return _error(404, "artisan_not_found", exc.message, {"artisan_id": exc.artisan_id})

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error(404, "not_found", exc.message)

    @app.exception_handler(InvalidStateError)
    async def handle_invalid_state(request: Request, exc: InvalidStateError):
        return _error(409, "invalid_state", exc.message, {"current_status": exc.current_status})

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        return _error(
            429,
            "rate_limit_exceeded",
            exc.message,
            exc.context,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(ProviderError)
    async def handle_provider_error(request: Request, exc: ProviderError):
        logger.error(
            "[%s] %s: %s | Context: %s",
            request_id_var.get(""),
            type(exc).__name__,
            exc.message,
            exc.context,
        )
        return _error(502, "provider_error", PROVIDER_FAILURE_MESSAGE)

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_breaker(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("[%s] Circuit breaker open: %s", request_id_var.get(""), exc.message)
        return _error(
            503,
            "service_unavailable",
            exc.message,
            {"recovery_time": exc.recovery_time},
            headers={"Retry-After": str(exc.recovery_time)},
        )

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error(
            "[%s] Database error: %s | Context: %s", request_id_var.get(""), exc.message, exc.context
        )
        return _error(500, "server_error", "An internal error occurred. Please try again later.")

    @app.exception_handler(TradeInboxError)
    async def handle_app_error(request: Request, exc: TradeInboxError):
        logger.error("[%s] Unhandled application error: %s", request_id_var.get(""), exc.message)
        return _error(500, "server_error", exc.message)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error(
            "[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True
        )
        return _error(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        container: Pre-built services (tests). Without it the lifespan builds
                   one from settings at startup.
    """
    app = FastAPI(
        title="TradeInbox API",
        description=(
            "Inbox pipeline for artisans: photos, PDFs, voice notes and forwarded "
            "emails are classified by AI and routed into jobs, invoices, clients "
            "and expenses."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.services = container

    # ── Register Middleware ───────────────────────────────────────────────
    # Executes in reverse order of addition: RateLimit runs first, CORS last.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window,
    )

    # ── Register Exception Handlers ───────────────────────────────────────
    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(inbox.router)
    app.include_router(webhooks.router)
    app.include_router(files.router)
    app.include_router(health.router)

    return app


# ── Application Instance ─────────────────────────────────────────────────
app = create_app()
