"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for SLA notifications.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.infrastructure.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriberModel(Base):
    """
    Database model for Subscriber entity (user configuration).

    Maps to the 'sla_subscribers' table. Preferences are stored as a JSON
    document since they are always read and written as a whole.
    """
    __tablename__ = "sla_subscribers"

    subscriber_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    direct_report_emails: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    area_paths: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    is_registered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    preferences: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    registered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    direct_reports_last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class NotificationStateModel(Base):
    """
    Database model for NotificationState aggregate.

    One row per subscriber; recent events live in a JSON column and are
    pruned to the retention window on every write.
    """
    __tablename__ = "sla_notification_states"

    subscriber_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    recent_notifications: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    total_notifications_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class DeliveryEndpointModel(Base):
    """
    Database model for DeliveryEndpoint entity.

    Maps to the 'sla_delivery_endpoints' table.
    """
    __tablename__ = "sla_delivery_endpoints"

    subscriber_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    handle_json: Mapped[str] = mapped_column(Text, nullable=False)

    # Circuit breaker state
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    consecutive_failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_interaction_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
