"""
SLA Interfaces Layer
====================

Interface adapters (controllers) for SLA notifications.

Contains:
- Controllers: FastAPI route handlers

This is the outermost layer - handles HTTP requests/responses and
delegates to application services.
"""

from src.sla.interfaces.controllers import (
    SLAServices,
    sla_router,
    gate_router,
    delivery_router,
)

__all__ = ["SLAServices", "sla_router", "gate_router", "delivery_router"]
