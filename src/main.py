"""
SLA Notifier - Main Application
================================

Periodic work item update SLA detection and chat notification service.

Modules:
- SLA Notifications: Violation evaluation, notification gate, delivery, batch runs

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, Azure DevOps, chat webhooks, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from src.config import settings
from src.core import ApplicationException

# Infrastructure
from src.infrastructure.database import (
    init_database, close_database, create_tables, get_session_maker
)

# SLA Module
from src.sla.application import (
    BatchOrchestrator,
    DeliveryChannel,
    DigestComposer,
    GatedNotificationService,
    NotificationGate,
    SubscriberService,
    ViolationEvaluator,
)
from src.sla.infrastructure import (
    AzureDevOpsWorkItemClient,
    SLAConfigManager,
    SLAScheduler,
    SQLAlchemyDeliveryEndpointRepository,
    SQLAlchemyNotificationStateRepository,
    SQLAlchemySubscriberRepository,
    WebhookChatTransport,
    build_sla_job,
)
from src.sla.interfaces import SLAServices, sla_router, gate_router, delivery_router

# Shared
from src.shared.api.middleware import (
    CorrelationIDMiddleware,
    TimingMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from src.shared.infrastructure.grafana import get_grafana_exporter
from src.shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load SLA configuration and start watching it
    4. Wire SLA services
    5. Start SLA scheduler (unless the interval is 0)

    SHUTDOWN:
    1. Signal any in-flight run to stop, stop scheduler
    2. Stop config watcher, close HTTP clients
    3. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting SLA Notifier", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database()
    try:
        await create_tables()
    except Exception as e:
        logger.warning("Database not available - running in degraded mode", extra={"error": str(e)})

    config_manager = SLAConfigManager()
    config_manager.load(settings.sla_config_path)
    config_manager.start_watching()

    session_maker = get_session_maker()
    subscriber_repo = SQLAlchemySubscriberRepository(session_maker)
    state_repo = SQLAlchemyNotificationStateRepository(session_maker)
    endpoint_repo = SQLAlchemyDeliveryEndpointRepository(session_maker)

    work_item_client = AzureDevOpsWorkItemClient()
    chat_transport = WebhookChatTransport()

    evaluator = ViolationEvaluator(work_item_client, config_manager)
    gate = NotificationGate(subscriber_repo, state_repo)
    delivery = DeliveryChannel(endpoint_repo, chat_transport)
    orchestrator = BatchOrchestrator(
        subscriber_repo, evaluator, gate, delivery, config_manager,
        composer=DigestComposer(),
    )
    exporter = get_grafana_exporter()

    services = SLAServices(
        evaluator=evaluator,
        gate=gate,
        delivery=delivery,
        orchestrator=orchestrator,
        subscribers=SubscriberService(subscriber_repo),
        gated_sender=GatedNotificationService(gate, delivery),
        exporter=exporter,
    )
    app.state.sla = services

    scheduler = None
    if settings.sla_evaluation_interval > 0:
        scheduler = SLAScheduler(interval_seconds=settings.sla_evaluation_interval)
        job = build_sla_job(
            services.run_batch,
            on_summary=lambda summary: exporter.export_run_summary(summary, trigger="scheduled"),
        )
        await scheduler.start(job)
    else:
        logger.info("SLA scheduler disabled (interval is 0); runs are manual only")
    app.state.sla_scheduler = scheduler

    logger.info("SLA Notifier started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down SLA Notifier")

    services.shutdown_event.set()
    if scheduler:
        await scheduler.stop()

    config_manager.stop_watching()
    await work_item_client.close()
    await chat_transport.close()
    await close_database()

    logger.info("SLA Notifier shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="SLA Notifier API",
    description="""
    ## Work Item Update SLA Notifier

    Periodically finds open work items that have gone too long without an
    update and sends each affected subscriber one digest per run, subject
    to per-subscriber rate limits and quiet hours.

    **Endpoints:**
    - `POST /sla/runs` - Trigger a run now
    - `GET /sla/violations` - Check one user's violations
    - `PUT /sla/subscribers/{id}` / `DELETE /sla/subscribers/{id}` - Registration
    - `POST /notification-gate/evaluate` - Gate decision for a subscriber
    - `POST /notification-gate/send` - Gated ad-hoc send
    - `GET /notification-gate/history/{id}` - Last 24 hours of notifications
    - `PUT /delivery/endpoints/{id}` - Capture or refresh a chat endpoint
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
# Added last runs first: correlation id must be set before logging reads it
app.add_middleware(LoggingMiddleware)
app.add_middleware(TimingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(sla_router)
app.include_router(gate_router)
app.include_router(delivery_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "sla_services": "ready",
                        "sla_scheduler": "running",
                        "grafana_exporter": "not_configured"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """Health check endpoint for load balancers and orchestrators."""
    scheduler = getattr(request.app.state, "sla_scheduler", None)
    services = getattr(request.app.state, "sla", None)
    exporter = services.exporter if services else None

    checks = {
        "sla_services": "ready" if services else "not_initialized",
        "sla_scheduler": "running" if scheduler and scheduler.is_running else "stopped",
        "grafana_exporter": "enabled" if exporter and exporter.is_enabled() else "not_configured",
    }

    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
