"""
SLA Domain Layer
================

Domain layer for work item update SLA notifications.

Contains:
- Entities: Objects with identity (Subscriber, NotificationState, DeliveryEndpoint)
- Value Objects: Immutable objects defined by attributes (Violation, GateResult)
- Domain Services: Stateless business logic (SLACalculator)

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from src.sla.domain.entities import (
    QuietHours,
    NotificationPreferences,
    Subscriber,
    NotificationEvent,
    NotificationState,
    DeliveryEndpoint,
    RunSummary,
)
from src.sla.domain.value_objects import (
    Violation,
    GateResult,
    DeliveryResult,
    SLACalculator,
    SLANotificationConfig,
)

__all__ = [
    # Entities
    "QuietHours",
    "NotificationPreferences",
    "Subscriber",
    "NotificationEvent",
    "NotificationState",
    "DeliveryEndpoint",
    "RunSummary",
    # Value Objects & Services
    "Violation",
    "GateResult",
    "DeliveryResult",
    "SLACalculator",
    "SLANotificationConfig",
]
