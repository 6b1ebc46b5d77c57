"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. Each call runs in its own short transaction
opened from the shared session factory, so the repositories are safe to
hold for the lifetime of the application.
"""

from contextlib import asynccontextmanager
from datetime import datetime, time, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core import RepositoryException
from src.sla.application.services import (
    IDeliveryEndpointRepository,
    INotificationStateRepository,
    ISubscriberRepository,
)
from src.sla.domain import (
    DeliveryEndpoint,
    NotificationEvent,
    NotificationPreferences,
    NotificationState,
    QuietHours,
    SLACalculator,
    Subscriber,
)
from src.sla.infrastructure.models import (
    DeliveryEndpointModel,
    NotificationStateModel,
    SubscriberModel,
)
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    return SLACalculator.to_utc(value) if value is not None else None


class _SessionScope:
    """Opens one committed-or-rolled-back transaction per repository call."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    @asynccontextmanager
    async def transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("Database operation failed", extra={"operation": operation, "error": str(e)})
            raise RepositoryException(f"{operation} failed", {"error": str(e)}) from e


# ========== Preferences (JSON document) ==========

def preferences_to_dict(prefs: NotificationPreferences) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "max_notifications_per_hour": prefs.max_notifications_per_hour,
        "max_notifications_per_day": prefs.max_notifications_per_day,
        "timezone_id": prefs.timezone_id,
        "sla_violation_notifications": prefs.sla_violation_notifications,
        "quiet_hours": None,
    }
    if prefs.quiet_hours is not None:
        data["quiet_hours"] = {
            "enabled": prefs.quiet_hours.enabled,
            "start_time": prefs.quiet_hours.start_time.strftime("%H:%M"),
            "end_time": prefs.quiet_hours.end_time.strftime("%H:%M"),
        }
    return data


def preferences_from_dict(data: Optional[Dict[str, Any]]) -> NotificationPreferences:
    if not data:
        return NotificationPreferences()

    quiet_hours = None
    raw_quiet = data.get("quiet_hours")
    if raw_quiet:
        quiet_hours = QuietHours(
            start_time=time.fromisoformat(raw_quiet.get("start_time", "22:00")),
            end_time=time.fromisoformat(raw_quiet.get("end_time", "08:00")),
            enabled=bool(raw_quiet.get("enabled", False)),
        )

    defaults = NotificationPreferences()
    return NotificationPreferences(
        max_notifications_per_hour=data.get("max_notifications_per_hour", defaults.max_notifications_per_hour),
        max_notifications_per_day=data.get("max_notifications_per_day", defaults.max_notifications_per_day),
        timezone_id=data.get("timezone_id") or "UTC",
        quiet_hours=quiet_hours,
        sla_violation_notifications=data.get("sla_violation_notifications", True),
    )


class SQLAlchemySubscriberRepository(ISubscriberRepository):
    """
    SQLAlchemy implementation of subscriber repository.

    Handles persistence of Subscriber entities using async SQLAlchemy.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._scope = _SessionScope(session_maker)

    async def get_by_subscriber_id(self, subscriber_id: str) -> Optional[Subscriber]:
        async with self._scope.transaction("get subscriber") as session:
            model = await session.get(SubscriberModel, subscriber_id)
            return self._to_domain(model) if model else None

    async def list_registered(self) -> List[Subscriber]:
        """Registered subscribers in registration order."""
        stmt = (
            select(SubscriberModel)
            .where(SubscriberModel.is_registered.is_(True))
            .order_by(SubscriberModel.registered_at.asc(), SubscriberModel.subscriber_id.asc())
        )
        async with self._scope.transaction("list subscribers") as session:
            result = await session.execute(stmt)
            return [self._to_domain(m) for m in result.scalars().all()]

    async def upsert(self, subscriber: Subscriber) -> Subscriber:
        async with self._scope.transaction("upsert subscriber") as session:
            model = await session.get(SubscriberModel, subscriber.subscriber_id)
            if model is None:
                model = SubscriberModel(subscriber_id=subscriber.subscriber_id)
                session.add(model)

            model.email = subscriber.email
            model.direct_report_emails = list(subscriber.direct_report_emails)
            model.area_paths = list(subscriber.area_paths)
            model.is_registered = subscriber.is_registered
            model.preferences = preferences_to_dict(subscriber.preferences or NotificationPreferences())
            model.registered_at = subscriber.registered_at
            model.direct_reports_last_refreshed_at = subscriber.direct_reports_last_refreshed_at

        return subscriber

    @staticmethod
    def _to_domain(model: SubscriberModel) -> Subscriber:
        return Subscriber(
            subscriber_id=model.subscriber_id,
            email=model.email,
            direct_report_emails=list(model.direct_report_emails or []),
            area_paths=list(model.area_paths or []),
            is_registered=model.is_registered,
            preferences=preferences_from_dict(model.preferences),
            registered_at=_as_utc(model.registered_at),
            direct_reports_last_refreshed_at=_as_utc(model.direct_reports_last_refreshed_at),
        )


class SQLAlchemyNotificationStateRepository(INotificationStateRepository):
    """
    SQLAlchemy implementation of the notification state aggregate.

    One row per subscriber. Pruning happens on every write.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._scope = _SessionScope(session_maker)

    async def get_or_create(self, subscriber_id: str) -> NotificationState:
        async with self._scope.transaction("get notification state") as session:
            model = await session.get(NotificationStateModel, subscriber_id)
            if model is None:
                model = NotificationStateModel(
                    subscriber_id=subscriber_id,
                    recent_notifications=[],
                    last_updated=datetime.now(timezone.utc),
                    total_notifications_sent=0,
                )
                session.add(model)
            return self._to_domain(model)

    async def record_notification(
        self,
        subscriber_id: str,
        notification_type: str,
        deduplication_key: Optional[str] = None,
        work_item_id: Optional[int] = None,
        area_path: Optional[str] = None,
        sent_at: Optional[datetime] = None
    ) -> NotificationState:
        sent_at = SLACalculator.to_utc(sent_at or datetime.now(timezone.utc))
        event = NotificationEvent(
            sent_at=sent_at,
            notification_type=notification_type,
            deduplication_key=deduplication_key,
            work_item_id=work_item_id,
            area_path=area_path,
        )

        stmt = (
            select(NotificationStateModel)
            .where(NotificationStateModel.subscriber_id == subscriber_id)
            .with_for_update()
        )
        async with self._scope.transaction("record notification") as session:
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                model = NotificationStateModel(
                    subscriber_id=subscriber_id,
                    recent_notifications=[],
                    total_notifications_sent=0,
                )
                session.add(model)

            state = self._to_domain(model)
            pruned = state.record(event, sent_at)

            # Assign fresh objects so the JSON column is flagged dirty
            model.recent_notifications = [e.to_dict() for e in state.recent_notifications]
            model.total_notifications_sent = state.total_notifications_sent
            model.last_updated = state.last_updated

        if pruned:
            logger.debug(
                "Pruned expired notification events",
                extra={"subscriber_id": subscriber_id, "pruned": pruned}
            )
        return state

    async def get_notifications_since(
        self,
        subscriber_id: str,
        since: datetime
    ) -> List[NotificationEvent]:
        async with self._scope.transaction("get notification history") as session:
            model = await session.get(NotificationStateModel, subscriber_id)
            if model is None:
                return []
            return self._to_domain(model).events_since(SLACalculator.to_utc(since))

    @staticmethod
    def _to_domain(model: NotificationStateModel) -> NotificationState:
        return NotificationState(
            subscriber_id=model.subscriber_id,
            recent_notifications=[
                NotificationEvent.from_dict(e) for e in (model.recent_notifications or [])
            ],
            last_updated=_as_utc(model.last_updated) or datetime.now(timezone.utc),
            total_notifications_sent=model.total_notifications_sent or 0,
        )


class SQLAlchemyDeliveryEndpointRepository(IDeliveryEndpointRepository):
    """SQLAlchemy implementation of delivery endpoint repository."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._scope = _SessionScope(session_maker)

    async def get_by_subscriber_id(self, subscriber_id: str) -> Optional[DeliveryEndpoint]:
        async with self._scope.transaction("get delivery endpoint") as session:
            model = await session.get(DeliveryEndpointModel, subscriber_id)
            if model is None:
                return None
            return DeliveryEndpoint(
                subscriber_id=model.subscriber_id,
                handle_json=model.handle_json,
                is_active=model.is_active,
                consecutive_failure_count=model.consecutive_failure_count,
                last_interaction_at=_as_utc(model.last_interaction_at),
            )

    async def upsert(self, endpoint: DeliveryEndpoint) -> DeliveryEndpoint:
        async with self._scope.transaction("upsert delivery endpoint") as session:
            model = await session.get(DeliveryEndpointModel, endpoint.subscriber_id)
            if model is None:
                model = DeliveryEndpointModel(subscriber_id=endpoint.subscriber_id)
                session.add(model)

            model.handle_json = endpoint.handle_json
            model.is_active = endpoint.is_active
            model.consecutive_failure_count = endpoint.consecutive_failure_count
            model.last_interaction_at = endpoint.last_interaction_at

        return endpoint
