"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for SLA notifications:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer
- External: Azure DevOps client, chat webhook transport, config watcher, scheduler
"""

from src.sla.infrastructure.models import (
    SubscriberModel,
    NotificationStateModel,
    DeliveryEndpointModel,
)
from src.sla.infrastructure.repositories import (
    SQLAlchemySubscriberRepository,
    SQLAlchemyNotificationStateRepository,
    SQLAlchemyDeliveryEndpointRepository,
)
from src.sla.infrastructure.external import (
    SLAConfigManager,
    AzureDevOpsWorkItemClient,
    WebhookChatTransport,
    SLAScheduler,
    build_sla_job,
)

__all__ = [
    "SubscriberModel",
    "NotificationStateModel",
    "DeliveryEndpointModel",
    "SQLAlchemySubscriberRepository",
    "SQLAlchemyNotificationStateRepository",
    "SQLAlchemyDeliveryEndpointRepository",
    "SLAConfigManager",
    "AzureDevOpsWorkItemClient",
    "WebhookChatTransport",
    "SLAScheduler",
    "build_sla_job",
]
