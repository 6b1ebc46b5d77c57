"""
SLA Notifications Module
========================

Bounded context for work item update SLA notifications.

Responsibilities:
- Find open work items whose last update is older than their type's SLA
- Gate notifications with per-subscriber rate limits and quiet hours
- Deliver one digest per subscriber per run over a chat webhook
- Trip a per-endpoint circuit breaker after repeated delivery failures
- Run the sweep on a schedule or on demand
"""

__version__ = "1.0.0"
