"""
Escalation Desk - Main Application
==================================

Escalation matter lifecycle service for the school operations portal.

Modules:
- Escalations: raise, route, hold, close and audit escalation matters,
  mirror them onto tickets, notify over WhatsApp, gate day close

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities, value objects, state machine
- Infrastructure: Database, WhatsApp, policy file watcher
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from escalation_desk.config import settings
from escalation_desk.core import ApplicationException
from escalation_desk.infrastructure.database import init_database, close_database, create_tables
from escalation_desk.escalations.infrastructure import policy_config_manager, whatsapp_client
from escalation_desk.escalations.interfaces import escalation_router
from escalation_desk.shared.api.middleware import (
    CorrelationIDMiddleware,
    MetricsMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    request_validation_handler,
    global_exception_handler,
)
from escalation_desk.shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database
    3. Create database tables
    4. Load escalation policy and watch it for changes

    SHUTDOWN:
    1. Stop policy watcher
    2. Close WhatsApp client
    3. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Escalation Desk", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()

    # Create tables (for development - use Alembic in production)
    logger.info("Creating database tables")
    try:
        await create_tables()
    except Exception as e:
        logger.warning(f"Database not available - running in degraded mode: {e}")

    logger.info("Loading escalation policy")
    policy_config_manager.load(settings.policy_config_path)
    policy_config_manager.start_watching()

    if not settings.whatsapp_configured:
        logger.warning("Twilio credentials not set - WhatsApp deliveries will be reported as failed")

    app.state.settings = settings
    logger.info("Escalation Desk started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Escalation Desk")

    policy_config_manager.stop_watching()
    await whatsapp_client.close()
    await close_database()

    logger.info("Escalation Desk shutdown complete")


app = FastAPI(
    title="Escalation Desk API",
    description="""
    ## Escalation Matter Lifecycle

    Raise, route and resolve escalation matters inside the school portal.

    **Lifecycle:** `OPEN` → `ESCALATED` (level 2) → `ON_HOLD` → `CLOSED`.
    Every accepted transition appends an immutable step to the matter's
    audit trail.

    **Authentication:** every route except `/` and `/health` requires the
    `X-User-ID` header.

    **Errors:** `{"error": kind, "detail": message, "correlation_id": id}`
    with kinds `validation`, `unauthenticated`, `forbidden`, `not-found`,
    `invalid-state`, `invalid-target`, `already-closed`.
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware (from shared) ===
app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(escalation_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Returns service health status including policy and WhatsApp configuration.
    """
    try:
        policy = policy_config_manager.get_config()
        policy_check = f"loaded ({len(policy.role_capabilities)} roles)"
    except Exception as e:
        policy_check = f"error: {e}"

    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": {
            "escalation_policy": policy_check,
            "whatsapp": "configured" if settings.whatsapp_configured else "not_configured",
        }
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Escalation Desk",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "escalations": {
                "prefix": "/escalations",
                "endpoints": [
                    "POST /escalations/matters - Raise a matter",
                    "POST /escalations/tickets/{ticket_id}/raise - Escalate a ticket",
                    "POST /escalations/matters/{id}/escalate|hold|withdraw|close|progress|remind",
                    "GET /escalations/matters?section= - List matters",
                    "GET /escalations/counts - Section counts",
                    "GET /escalations/matters/{id} - Matter detail and timeline",
                    "GET /escalations/day-close/paused - Day-close gate",
                    "POST /escalations/day-close/overrides - Grant override",
                    "POST /escalations/day-close/overrides/revoke - Revoke override",
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "escalation_desk.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
