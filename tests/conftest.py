"""
Pytest configuration and fixtures for SLA notifier tests.

Provides shared fixtures for:
- A controllable clock
- In-memory repositories implementing the application ports
- Fake work-tracking client and chat transport
- Wired application services
"""

import pytest

from src.sla.application.services import (
    BatchOrchestrator,
    DeliveryChannel,
    NotificationGate,
    ViolationEvaluator,
)
from src.sla.domain import SLANotificationConfig

from tests.fakes import (
    BASE_URL,
    FakeClock,
    FakeWorkItemClient,
    InMemoryDeliveryEndpointRepository,
    InMemoryNotificationStateRepository,
    InMemorySubscriberRepository,
    RecordingTransport,
    StaticConfigProvider,
)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sla_config():
    return SLANotificationConfig(
        work_item_base_url=BASE_URL + "/",
        sla_rules={"Bug": 3, "Task": 5},
        max_notifications_per_run=100,
    )


@pytest.fixture
def config_provider(sla_config):
    return StaticConfigProvider(sla_config)


@pytest.fixture
def subscriber_repo():
    return InMemorySubscriberRepository()


@pytest.fixture
def state_repo():
    return InMemoryNotificationStateRepository()


@pytest.fixture
def endpoint_repo():
    return InMemoryDeliveryEndpointRepository()


@pytest.fixture
def work_items():
    return FakeWorkItemClient()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def evaluator(work_items, config_provider, clock):
    return ViolationEvaluator(work_items, config_provider, clock=clock)


@pytest.fixture
def gate(subscriber_repo, state_repo, clock):
    return NotificationGate(subscriber_repo, state_repo, clock=clock)


@pytest.fixture
def delivery(endpoint_repo, transport, clock):
    return DeliveryChannel(endpoint_repo, transport, clock=clock)


@pytest.fixture
def orchestrator(subscriber_repo, evaluator, gate, delivery, config_provider, clock):
    return BatchOrchestrator(
        subscriber_repo, evaluator, gate, delivery, config_provider, clock=clock
    )

