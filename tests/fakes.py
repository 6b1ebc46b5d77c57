"""
In-memory fakes of the application ports and payload factories for tests.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from src.sla.application.services import (
    IChatTransport,
    IDeliveryEndpointRepository,
    INotificationStateRepository,
    ISLAConfigProvider,
    ISubscriberRepository,
    IWorkItemClient,
)
from src.sla.domain import (
    DeliveryEndpoint,
    NotificationEvent,
    NotificationState,
    SLANotificationConfig,
    Subscriber,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
BASE_URL = "https://dev.azure.com/org/proj/_workitems/edit"


# ============================================================================
# Clock
# ============================================================================

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ============================================================================
# In-memory repositories
# ============================================================================

class InMemorySubscriberRepository(ISubscriberRepository):
    def __init__(self):
        self._subscribers: Dict[str, Subscriber] = {}
        self.fail_listing: Optional[Exception] = None

    def add(self, subscriber: Subscriber) -> Subscriber:
        self._subscribers[subscriber.subscriber_id] = subscriber
        return subscriber

    def subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        return self._subscribers.get(subscriber_id)

    async def get_by_subscriber_id(self, subscriber_id: str) -> Optional[Subscriber]:
        return self._subscribers.get(subscriber_id)

    async def list_registered(self) -> List[Subscriber]:
        if self.fail_listing is not None:
            raise self.fail_listing
        return [s for s in self._subscribers.values() if s.is_registered]

    async def list_all(self) -> List[Subscriber]:
        return list(self._subscribers.values())

    async def upsert(self, subscriber: Subscriber) -> Subscriber:
        self._subscribers[subscriber.subscriber_id] = subscriber
        return subscriber


class InMemoryNotificationStateRepository(INotificationStateRepository):
    def __init__(self):
        self._states: Dict[str, NotificationState] = {}
        self.reads = 0

    def seed(self, subscriber_id: str, sent_at: List[datetime], notification_type: str = "WorkItemUpdateSla") -> None:
        state = self._states.setdefault(subscriber_id, NotificationState(subscriber_id=subscriber_id))
        for ts in sent_at:
            state.recent_notifications.append(NotificationEvent(sent_at=ts, notification_type=notification_type))

    def state(self, subscriber_id: str) -> Optional[NotificationState]:
        return self._states.get(subscriber_id)

    async def get_or_create(self, subscriber_id: str) -> NotificationState:
        return self._states.setdefault(subscriber_id, NotificationState(subscriber_id=subscriber_id))

    async def record_notification(
        self,
        subscriber_id: str,
        notification_type: str,
        deduplication_key: Optional[str] = None,
        work_item_id: Optional[int] = None,
        area_path: Optional[str] = None,
        sent_at: Optional[datetime] = None
    ) -> NotificationState:
        state = await self.get_or_create(subscriber_id)
        state.record(
            NotificationEvent(
                sent_at=sent_at,
                notification_type=notification_type,
                deduplication_key=deduplication_key,
                work_item_id=work_item_id,
                area_path=area_path,
            ),
            sent_at,
        )
        return state

    async def get_notifications_since(self, subscriber_id: str, since: datetime) -> List[NotificationEvent]:
        self.reads += 1
        state = self._states.get(subscriber_id)
        return state.events_since(since) if state else []


class InMemoryDeliveryEndpointRepository(IDeliveryEndpointRepository):
    def __init__(self):
        self._endpoints: Dict[str, DeliveryEndpoint] = {}
        self.lookups = 0
        self.fail_upsert: Optional[Exception] = None

    def add(self, subscriber_id: str, handle: Any = None, **kwargs) -> DeliveryEndpoint:
        handle_json = handle if isinstance(handle, str) else json.dumps(
            handle or {"webhook_url": f"https://chat.example.com/hooks/{subscriber_id}"}
        )
        endpoint = DeliveryEndpoint(subscriber_id=subscriber_id, handle_json=handle_json, **kwargs)
        self._endpoints[subscriber_id] = endpoint
        return endpoint

    def endpoint(self, subscriber_id: str) -> Optional[DeliveryEndpoint]:
        return self._endpoints.get(subscriber_id)

    async def get_by_subscriber_id(self, subscriber_id: str) -> Optional[DeliveryEndpoint]:
        self.lookups += 1
        return self._endpoints.get(subscriber_id)

    async def upsert(self, endpoint: DeliveryEndpoint) -> DeliveryEndpoint:
        if self.fail_upsert is not None:
            raise self.fail_upsert
        self._endpoints[endpoint.subscriber_id] = endpoint
        return endpoint


# ============================================================================
# External service fakes
# ============================================================================

class FakeWorkItemClient(IWorkItemClient):
    """Returns canned work items per assigned email and records each query."""

    def __init__(self):
        self.items: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.failures: Dict[str, Exception] = {}
        self.current_iteration: Optional[str] = None
        self.iteration_error: Optional[Exception] = None

    async def get_work_items_by_assigned_user(
        self,
        email: str,
        states: List[str],
        fields: List[str],
        iteration_path: Optional[str] = None,
        area_paths: Optional[List[str]] = None,
        work_item_types: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        self.calls.append({
            "email": email,
            "states": states,
            "fields": fields,
            "iteration_path": iteration_path,
            "area_paths": area_paths,
            "work_item_types": work_item_types,
        })
        if email in self.failures:
            raise self.failures[email]
        value = self.items.get(email, [])
        return {"count": len(value), "value": value}

    async def get_current_iteration_path(self, team_name: str) -> Optional[str]:
        if self.iteration_error is not None:
            raise self.iteration_error
        return self.current_iteration

    def emails_queried(self) -> List[str]:
        return [c["email"] for c in self.calls]


class RecordingTransport(IChatTransport):
    """Chat transport that records deliveries and can be told to fail."""

    def __init__(self):
        self.sent: List[tuple] = []
        self.attempts = 0
        self.error: Optional[Exception] = None
        self.on_send = None

    async def send(self, handle: Dict[str, Any], message: str) -> None:
        self.attempts += 1
        if self.on_send is not None:
            self.on_send(handle, message)
        if self.error is not None:
            raise self.error
        self.sent.append((handle, message))


class StaticConfigProvider(ISLAConfigProvider):
    def __init__(self, config: SLANotificationConfig):
        self.config = config

    def get_config(self) -> SLANotificationConfig:
        return self.config


# ============================================================================
# Factories
# ============================================================================

def work_item(
    work_item_id: Any,
    work_item_type: str = "Bug",
    changed_at: Any = None,
    title: Optional[str] = None,
    now: datetime = NOW,
    days_old: float = 0
) -> Dict[str, Any]:
    """Raw work item as returned by the work-tracking batch API."""
    if changed_at is None:
        changed_at = (now - timedelta(days=days_old)).isoformat().replace("+00:00", "Z")
    return {
        "id": work_item_id,
        "fields": {
            "System.Id": work_item_id,
            "System.Title": title or f"Item {work_item_id}",
            "System.WorkItemType": work_item_type,
            "System.ChangedDate": changed_at,
        },
    }


def make_subscriber(subscriber_id: str, email: Optional[str] = None, **kwargs) -> Subscriber:
    return Subscriber(
        subscriber_id=subscriber_id,
        email=email if email is not None else f"{subscriber_id.lower()}@example.com",
        **kwargs,
    )


