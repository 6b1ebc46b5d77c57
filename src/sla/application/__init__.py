"""
SLA Application Layer
======================

Application layer for work item update SLA notifications.

Contains:
- Services: Violation evaluation, notification gating, delivery, batch runs
- Messages: Digest composition
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from src.sla.application.dto import (
    SubscriberUpsertRequest,
    GateEvaluateRequest,
    GatedSendRequest,
    EndpointRegisterRequest,
    ViolationResponse,
    ViolationsResponse,
    GateResultResponse,
    GatedSendResponse,
    DeliveryResultResponse,
    NotificationHistoryResponse,
    SubscriberResponse,
    DeliveryEndpointResponse,
    RunSummaryResponse,
)
from src.sla.application.messages import DigestComposer
from src.sla.application.services import (
    ViolationEvaluator,
    NotificationGate,
    DeliveryChannel,
    GatedNotificationService,
    SubscriberService,
    BatchOrchestrator,
    ISubscriberRepository,
    INotificationStateRepository,
    IDeliveryEndpointRepository,
    IWorkItemClient,
    IChatTransport,
    ISLAConfigProvider,
)

__all__ = [
    # DTOs
    "SubscriberUpsertRequest",
    "GateEvaluateRequest",
    "GatedSendRequest",
    "EndpointRegisterRequest",
    "ViolationResponse",
    "ViolationsResponse",
    "GateResultResponse",
    "GatedSendResponse",
    "DeliveryResultResponse",
    "NotificationHistoryResponse",
    "SubscriberResponse",
    "DeliveryEndpointResponse",
    "RunSummaryResponse",
    # Services
    "DigestComposer",
    "ViolationEvaluator",
    "NotificationGate",
    "DeliveryChannel",
    "GatedNotificationService",
    "SubscriberService",
    "BatchOrchestrator",
    # Ports
    "ISubscriberRepository",
    "INotificationStateRepository",
    "IDeliveryEndpointRepository",
    "IWorkItemClient",
    "IChatTransport",
    "ISLAConfigProvider",
]
