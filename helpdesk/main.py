"""
Helpdesk Triage - Main Application
===================================

Autonomous triage for helpdesk tickets.

Modules:
- Tickets: creation and human lifecycle changes
- Triage: classify, retrieve, draft, decide, execute with retries
- Audit: per-ticket history, run reconstruction, statistics
- Configuration: auto-close switch, confidence threshold, SLA hours

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services, orchestrator and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, LLM client
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from helpdesk.config import settings
from helpdesk.core import ApplicationException

# Infrastructure
from helpdesk.infrastructure.database import init_database, close_database, create_tables
from helpdesk.infrastructure.llm import create_llm_client

# Triage module
from helpdesk.triage.application.dto import HealthResponse
from helpdesk.triage.infrastructure import (
    TriageComponents, build_triage_components, sqlalchemy_repositories
)
from helpdesk.triage.interfaces import (
    tickets_router, triage_router, audit_router, config_router
)

# Shared
from helpdesk.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler
)
from helpdesk.shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Initialize LLM client (None in stub mode or without a key)
    4. Wire triage components

    SHUTDOWN:
    1. Wait for background triage runs
    2. Close database connections

    Components injected through ``create_app`` skip the database steps.
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Helpdesk Triage", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    owns_database = getattr(app.state, "triage", None) is None
    if owns_database:
        logger.info("Initializing database")
        init_database()

        # Tables for development - use migrations in production
        try:
            await create_tables()
        except Exception as e:
            logger.warning(
                "Database not available - endpoints will fail until it is reachable",
                extra={"error": str(e)}
            )

        llm_client = create_llm_client(settings)
        app.state.triage = build_triage_components(settings, sqlalchemy_repositories(), llm_client)
        app.state.llm_enabled = llm_client is not None

    logger.info("Helpdesk Triage started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Helpdesk Triage")
    await app.state.triage.dispatcher.drain()
    if owns_database:
        await close_database()
    logger.info("Helpdesk Triage shutdown complete")


def create_app(components: Optional[TriageComponents] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        components: Pre-built triage components; when given, startup does not
            touch the database

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Helpdesk Triage API",
        description="""
        ## Autonomous ticket triage

        Every new ticket runs through a fixed pipeline: classify, retrieve
        knowledge base articles, draft a reply, decide, execute. High-confidence
        tickets are auto-closed with the drafted reply when auto-close is
        enabled; everything else is handed to a human agent.

        Every step is recorded in an append-only audit trail under a shared
        run id, so any run can be replayed from `/audit/runs/{run_id}`.
        """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    if components is not None:
        app.state.triage = components
        app.state.llm_enabled = False

    # === CORS Middleware ===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Custom Middleware (from shared) ===
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # === Include Module Routers ===
    app.include_router(tickets_router)
    app.include_router(triage_router)
    app.include_router(audit_router)
    app.include_router(config_router)

    # === Health Check Endpoint ===

    @app.get("/health", tags=["Health"], response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint for load balancers and orchestrators."""
        return HealthResponse(
            status="healthy" if getattr(request.app.state, "triage", None) else "starting",
            version=settings.app_version,
            environment=settings.environment,
            llm_enabled=getattr(request.app.state, "llm_enabled", False),
            timestamp=datetime.now(timezone.utc)
        )

    return app


app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "helpdesk.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
