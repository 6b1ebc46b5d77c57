"""
SLA Controllers (API Routes)
=============================

FastAPI routes for work item update SLA notifications.

Controllers are thin - they delegate to application services held in
`app.state.sla` (wired at startup).
"""

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from src.sla.application import (
    BatchOrchestrator,
    DeliveryChannel,
    DeliveryEndpointResponse,
    EndpointRegisterRequest,
    GateEvaluateRequest,
    GatedNotificationService,
    GatedSendRequest,
    GatedSendResponse,
    GateResultResponse,
    DeliveryResultResponse,
    NotificationGate,
    NotificationHistoryResponse,
    RunSummaryResponse,
    SubscriberResponse,
    SubscriberService,
    SubscriberUpsertRequest,
    ViolationEvaluator,
    ViolationResponse,
    ViolationsResponse,
)
from src.sla.application.dto import NotificationEventResponse
from src.sla.domain import RunSummary
from src.shared.infrastructure.grafana import GrafanaOTLPExporter
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

sla_router = APIRouter(prefix="/sla", tags=["SLA Notifications"])
gate_router = APIRouter(prefix="/notification-gate", tags=["Notification Gate"])
delivery_router = APIRouter(prefix="/delivery", tags=["Delivery"])


@dataclass
class SLAServices:
    """Application services shared by the API and the scheduler."""

    evaluator: ViolationEvaluator
    gate: NotificationGate
    delivery: DeliveryChannel
    orchestrator: BatchOrchestrator
    subscribers: SubscriberService
    gated_sender: GatedNotificationService
    exporter: Optional[GrafanaOTLPExporter] = None
    run_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)

    async def run_batch(self) -> RunSummary:
        """One batch run; runs never overlap and stop early on shutdown."""
        async with self.run_lock:
            return await self.orchestrator.evaluate_and_notify(self.shutdown_event)


# ========== Example payloads for Swagger ==========

RUN_SUMMARY_EXAMPLE = {
    "users_processed": 12,
    "violations_detected": 31,
    "notifications_sent": 7,
    "notifications_blocked": 2,
    "errors": 0,
    "duration_seconds": 4.215,
    "cancelled": False
}

GATE_RESULT_EXAMPLE = {
    "can_send": False,
    "blocked_reason": "Hourly limit exceeded (5/5)",
    "notifications_sent_in_last_hour": 5,
    "notifications_sent_in_last_day": 9
}


# ========== Dependencies ==========

def get_sla_services(request: Request) -> SLAServices:
    """Get the services wired at startup."""
    services = getattr(request.app.state, "sla", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="SLA services are not initialized"
        )
    return services


# ========== SLA Routes ==========

@sla_router.post(
    "/runs",
    response_model=RunSummaryResponse,
    summary="Trigger an SLA notification run",
    description="""
    Run one evaluate-and-notify sweep over all registered subscribers, the
    same as the scheduled job. Returns **409** if a run is already in progress.
    """,
    responses={200: {"content": {"application/json": {"example": RUN_SUMMARY_EXAMPLE}}}}
)
async def trigger_run(services: SLAServices = Depends(get_sla_services)):
    if services.run_lock.locked():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="An SLA run is already in progress")

    summary = await services.run_batch()
    if services.exporter is not None:
        await services.exporter.export_run_summary(summary, trigger="manual")
    return RunSummaryResponse.from_domain(summary)


@sla_router.get(
    "/violations",
    response_model=ViolationsResponse,
    summary="Check SLA violations for one user",
)
async def get_violations(
    email: str = Query(..., min_length=1, description="Work-tracking identity to check"),
    area_path: Optional[List[str]] = Query(None, description="Area paths to scope the query"),
    services: SLAServices = Depends(get_sla_services)
):
    """On-demand violation check. Sends nothing and records nothing."""
    violations = await services.evaluator.get_violations(email, area_path)
    return ViolationsResponse(
        email=email,
        count=len(violations),
        violations=[ViolationResponse.from_domain(v) for v in violations],
    )


@sla_router.put(
    "/subscribers/{subscriber_id}",
    response_model=SubscriberResponse,
    summary="Register or update a subscriber",
)
async def upsert_subscriber(
    subscriber_id: str,
    request: SubscriberUpsertRequest,
    services: SLAServices = Depends(get_sla_services)
):
    subscriber = await services.subscribers.register(
        subscriber_id,
        request.email,
        direct_report_emails=request.direct_report_emails,
        area_paths=request.area_paths,
        preferences=request.preferences.to_domain(),
    )
    return SubscriberResponse.from_domain(subscriber)


@sla_router.delete(
    "/subscribers/{subscriber_id}",
    response_model=SubscriberResponse,
    summary="Unregister a subscriber (data is retained)",
)
async def unregister_subscriber(
    subscriber_id: str,
    services: SLAServices = Depends(get_sla_services)
):
    subscriber = await services.subscribers.unregister(subscriber_id)
    return SubscriberResponse.from_domain(subscriber)


# ========== Notification Gate Routes ==========

@gate_router.post(
    "/evaluate",
    response_model=GateResultResponse,
    summary="Evaluate whether a notification may be sent now",
    responses={200: {"content": {"application/json": {"example": GATE_RESULT_EXAMPLE}}}}
)
async def evaluate_gate(
    request: GateEvaluateRequest,
    services: SLAServices = Depends(get_sla_services)
):
    """Read-only; repeated calls return the same decision."""
    result = await services.gate.evaluate(request.subscriber_id)
    return GateResultResponse.from_domain(result)


@gate_router.post(
    "/send",
    response_model=GatedSendResponse,
    summary="Gated ad-hoc send: evaluate, deliver, record",
)
async def gated_send(
    request: GatedSendRequest,
    services: SLAServices = Depends(get_sla_services)
):
    gate_result, delivery_result = await services.gated_sender.send(
        request.subscriber_id,
        request.message,
        notification_type=request.notification_type,
        deduplication_key=request.deduplication_key,
    )
    return GatedSendResponse(
        gate=GateResultResponse.from_domain(gate_result),
        delivery=DeliveryResultResponse.from_domain(delivery_result) if delivery_result else None,
    )


@gate_router.get(
    "/history/{subscriber_id}",
    response_model=NotificationHistoryResponse,
    summary="Notifications sent in the last 24 hours",
)
async def get_history(
    subscriber_id: str,
    services: SLAServices = Depends(get_sla_services)
):
    events = await services.gate.get_history(subscriber_id)
    return NotificationHistoryResponse(
        subscriber_id=subscriber_id,
        events=[NotificationEventResponse.from_domain(e) for e in events],
    )


# ========== Delivery Routes ==========

@delivery_router.put(
    "/endpoints/{subscriber_id}",
    response_model=DeliveryEndpointResponse,
    summary="Capture or refresh a delivery endpoint",
    description="""
    Stores the subscriber's chat endpoint handle. Re-registering an
    endpoint whose circuit breaker is open reactivates it and resets the
    failure count.
    """,
)
async def register_endpoint(
    subscriber_id: str,
    request: EndpointRegisterRequest,
    services: SLAServices = Depends(get_sla_services)
):
    try:
        endpoint = await services.delivery.register_endpoint(subscriber_id, request.handle)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return DeliveryEndpointResponse.from_domain(endpoint)
