"""
Domain entity and value object tests.
"""

from datetime import datetime, time, timedelta, timezone

import pytest
from pydantic import ValidationError

from src.sla.domain import (
    DeliveryEndpoint,
    NotificationEvent,
    NotificationState,
    RunSummary,
    SLACalculator,
    SLANotificationConfig,
    Subscriber,
)

from tests.fakes import NOW


class TestSLACalculator:
    """Update age, violation threshold, quiet window and dedup key."""

    def test_days_truncate_toward_zero(self):
        changed = NOW - timedelta(days=2, hours=23, minutes=59)
        assert SLACalculator.days_since_update(changed, NOW) == 2

    def test_days_exact_boundary(self):
        assert SLACalculator.days_since_update(NOW - timedelta(days=3), NOW) == 3

    def test_naive_timestamps_are_utc(self):
        naive = (NOW - timedelta(days=4)).replace(tzinfo=None)
        assert SLACalculator.days_since_update(naive, NOW) == 4

    def test_offsets_are_normalized(self):
        changed = datetime(2026, 3, 7, 17, 30, tzinfo=timezone(timedelta(hours=5, minutes=30)))
        # 12:00 UTC on the 7th -> exactly 3 days before NOW
        assert SLACalculator.days_since_update(changed, NOW) == 3

    def test_equal_to_threshold_is_not_violation(self):
        assert SLACalculator.is_violation(3, 3) is False
        assert SLACalculator.is_violation(4, 3) is True
        assert SLACalculator.is_violation(0, 0) is False

    @pytest.mark.parametrize("current,expected", [
        (time(22, 0), True),
        (time(23, 30), True),
        (time(0, 0), True),
        (time(7, 59), True),
        (time(8, 0), False),
        (time(12, 0), False),
        (time(21, 59), False),
    ])
    def test_wrapping_window(self, current, expected):
        assert SLACalculator.within_quiet_window(time(22, 0), time(8, 0), current) is expected

    @pytest.mark.parametrize("current,expected", [
        (time(8, 59), False),
        (time(9, 0), True),
        (time(16, 59), True),
        (time(17, 0), False),
    ])
    def test_same_day_window(self, current, expected):
        assert SLACalculator.within_quiet_window(time(9, 0), time(17, 0), current) is expected

    def test_deduplication_key_uses_utc_day(self):
        late_evening_elsewhere = datetime(2026, 3, 10, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
        key = SLACalculator.deduplication_key("WorkItemUpdateSla", "29:abc", late_evening_elsewhere)
        assert key == "WorkItemUpdateSla_29:abc_20260311"


class TestSLANotificationConfig:

    def test_defaults(self):
        config = SLANotificationConfig()
        assert config.enabled is True
        assert config.max_notifications_per_run == 100
        assert config.max_concurrency == 1
        assert config.bypass_gates is False
        assert config.work_item_types == []

    def test_negative_threshold_rejected(self):
        with pytest.raises(ValidationError):
            SLANotificationConfig(sla_rules={"Bug": -1})

    def test_concurrency_bounds(self):
        with pytest.raises(ValidationError):
            SLANotificationConfig(max_concurrency=0)

    def test_work_item_url_strips_trailing_slash(self):
        config = SLANotificationConfig(work_item_base_url="https://example.com/edit/")
        assert config.work_item_url(42) == "https://example.com/edit/42"

    def test_threshold_lookup(self):
        config = SLANotificationConfig(sla_rules={"Bug": 3})
        assert config.get_threshold("Bug") == 3
        assert config.get_threshold("Epic") is None


class TestSubscriber:

    def test_individual_checks_only_own_email(self):
        subscriber = Subscriber(subscriber_id="A", email="a@example.com")
        assert subscriber.is_manager is False
        assert subscriber.emails_to_check == ["a@example.com"]

    def test_manager_checks_reports_after_own_email(self):
        subscriber = Subscriber(
            subscriber_id="M",
            email="m@example.com",
            direct_report_emails=["r1@example.com", "", "m@example.com", "r2@example.com"],
        )
        assert subscriber.is_manager is True
        assert subscriber.emails_to_check == ["m@example.com", "r1@example.com", "r2@example.com"]


class TestNotificationState:

    def test_record_prunes_expired_events(self):
        state = NotificationState(subscriber_id="A")
        state.recent_notifications.append(
            NotificationEvent(sent_at=NOW - timedelta(hours=25), notification_type="WorkItemUpdateSla")
        )
        state.recent_notifications.append(
            NotificationEvent(sent_at=NOW - timedelta(hours=23), notification_type="WorkItemUpdateSla")
        )

        pruned = state.record(NotificationEvent(sent_at=NOW, notification_type="WorkItemUpdateSla"), NOW)

        assert pruned == 1
        assert len(state.recent_notifications) == 2
        assert state.total_notifications_sent == 1
        assert state.last_updated == NOW

    def test_events_since_newest_first(self):
        state = NotificationState(subscriber_id="A")
        for minutes in (50, 5, 30):
            state.recent_notifications.append(
                NotificationEvent(sent_at=NOW - timedelta(minutes=minutes), notification_type="AdHoc")
            )

        events = state.events_since(NOW - timedelta(minutes=40))

        assert [e.sent_at for e in events] == [NOW - timedelta(minutes=5), NOW - timedelta(minutes=30)]

    def test_event_dict_round_trip_keeps_utc(self):
        event = NotificationEvent(
            sent_at=NOW,
            notification_type="WorkItemUpdateSla",
            deduplication_key="WorkItemUpdateSla_A_20260310",
            work_item_id=7,
        )
        restored = NotificationEvent.from_dict(event.to_dict())
        assert restored == event
        assert restored.sent_at.tzinfo is not None


class TestDeliveryEndpoint:

    def test_opens_at_threshold_and_reports_once(self):
        endpoint = DeliveryEndpoint(subscriber_id="A", handle_json="{}")
        opened = [endpoint.record_failure() for _ in range(6)]

        assert opened == [False, False, False, False, True, False]
        assert endpoint.is_active is False
        assert endpoint.consecutive_failure_count == 6

    def test_success_resets_count(self):
        endpoint = DeliveryEndpoint(subscriber_id="A", handle_json="{}", consecutive_failure_count=4)
        endpoint.record_success()
        assert endpoint.consecutive_failure_count == 0
        assert endpoint.is_active is True

    def test_reactivate_closes_circuit(self):
        endpoint = DeliveryEndpoint(
            subscriber_id="A", handle_json="{}", is_active=False, consecutive_failure_count=5
        )
        endpoint.reactivate('{"webhook_url": "https://x"}', NOW)

        assert endpoint.allows_delivery is True
        assert endpoint.consecutive_failure_count == 0
        assert endpoint.handle_json == '{"webhook_url": "https://x"}'
        assert endpoint.last_interaction_at == NOW


def test_run_summary_to_dict():
    summary = RunSummary(users_processed=2, notifications_sent=1, duration=timedelta(milliseconds=1500))
    data = summary.to_dict()
    assert data["users_processed"] == 2
    assert data["notifications_sent"] == 1
    assert data["duration_seconds"] == 1.5
    assert data["cancelled"] is False
