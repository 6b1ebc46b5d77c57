"""
SLA Domain Entities
====================

Pure Python domain entities for work item update SLA notifications.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import List, Optional

from src.config import (
    MAX_CONSECUTIVE_DELIVERY_FAILURES,
    NOTIFICATION_RETENTION_HOURS,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QuietHours:
    """
    Local time-of-day window during which notifications are suppressed.

    Times are in the subscriber's timezone (see NotificationPreferences).
    """

    start_time: time = time(22, 0)
    end_time: time = time(8, 0)
    enabled: bool = False


@dataclass
class NotificationPreferences:
    """Per-subscriber throttling and quiet hours preferences."""

    max_notifications_per_hour: int = 5
    max_notifications_per_day: int = 20
    timezone_id: str = "UTC"
    quiet_hours: Optional[QuietHours] = None
    sla_violation_notifications: bool = True


@dataclass
class Subscriber:
    """
    A user registered for work item update SLA notifications.

    The subscriber id is the opaque chat identity; the email is the
    work-tracking identity resolved at registration time.
    """

    subscriber_id: str
    email: str
    direct_report_emails: List[str] = field(default_factory=list)
    area_paths: List[str] = field(default_factory=list)
    is_registered: bool = True
    preferences: NotificationPreferences = field(default_factory=NotificationPreferences)
    registered_at: datetime = field(default_factory=_utcnow)
    direct_reports_last_refreshed_at: Optional[datetime] = None

    @property
    def is_manager(self) -> bool:
        """A subscriber is a manager if they have direct reports."""
        return len(self.direct_report_emails) > 0

    @property
    def emails_to_check(self) -> List[str]:
        """Own email first, then direct reports for managers."""
        emails = [self.email]
        if self.is_manager:
            emails.extend(e for e in self.direct_report_emails if e and e != self.email)
        return emails


@dataclass
class NotificationEvent:
    """A single sent notification in a subscriber's recent history."""

    sent_at: datetime
    notification_type: str
    deduplication_key: Optional[str] = None
    work_item_id: Optional[int] = None
    area_path: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "sent_at": self.sent_at.isoformat(),
            "notification_type": self.notification_type,
            "deduplication_key": self.deduplication_key,
            "work_item_id": self.work_item_id,
            "area_path": self.area_path,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationEvent":
        sent_at = datetime.fromisoformat(data["sent_at"])
        if sent_at.tzinfo is None:
            sent_at = sent_at.replace(tzinfo=timezone.utc)
        return cls(
            sent_at=sent_at,
            notification_type=data.get("notification_type", ""),
            deduplication_key=data.get("deduplication_key"),
            work_item_id=data.get("work_item_id"),
            area_path=data.get("area_path"),
        )


@dataclass
class NotificationState:
    """
    Aggregate of one subscriber's recent notification history.

    One aggregate per subscriber (rather than one row per event) keeps
    storage bounded; events older than the retention window are pruned
    on every write.
    """

    subscriber_id: str
    recent_notifications: List[NotificationEvent] = field(default_factory=list)
    last_updated: datetime = field(default_factory=_utcnow)
    total_notifications_sent: int = 0

    def record(self, event: NotificationEvent, current_time: Optional[datetime] = None) -> int:
        """
        Append an event, prune expired events and bump the lifetime counter.

        Returns:
            Number of events pruned
        """
        current_time = current_time or _utcnow()
        self.recent_notifications.append(event)
        pruned = self.prune(current_time)
        self.total_notifications_sent += 1
        self.last_updated = current_time
        return pruned

    def prune(self, current_time: datetime) -> int:
        """Drop events older than the retention window."""
        cutoff = current_time - timedelta(hours=NOTIFICATION_RETENTION_HOURS)
        before = len(self.recent_notifications)
        self.recent_notifications = [
            e for e in self.recent_notifications if e.sent_at >= cutoff
        ]
        return before - len(self.recent_notifications)

    def events_since(self, since: datetime) -> List[NotificationEvent]:
        """Events at or after `since`, newest first."""
        return sorted(
            (e for e in self.recent_notifications if e.sent_at >= since),
            key=lambda e: e.sent_at,
            reverse=True,
        )


@dataclass
class DeliveryEndpoint:
    """
    Captured chat delivery endpoint for one subscriber, with breaker state.

    The breaker has two states: closed (is_active) and open. It opens after
    MAX_CONSECUTIVE_DELIVERY_FAILURES consecutive failures and never closes
    on its own; only re-registering the endpoint reactivates it.
    """

    subscriber_id: str
    handle_json: str
    is_active: bool = True
    consecutive_failure_count: int = 0
    last_interaction_at: datetime = field(default_factory=_utcnow)

    @property
    def allows_delivery(self) -> bool:
        return self.is_active

    def record_success(self) -> None:
        """Record successful delivery."""
        self.consecutive_failure_count = 0

    def record_failure(
        self,
        failure_threshold: int = MAX_CONSECUTIVE_DELIVERY_FAILURES
    ) -> bool:
        """
        Record failed delivery.

        Returns:
            True if this failure opened the circuit
        """
        self.consecutive_failure_count += 1
        if self.is_active and self.consecutive_failure_count >= failure_threshold:
            self.is_active = False
            return True
        return False

    def reactivate(self, handle_json: str, current_time: Optional[datetime] = None) -> None:
        """Refresh the handle and close the circuit (external re-registration)."""
        self.handle_json = handle_json
        self.is_active = True
        self.consecutive_failure_count = 0
        self.last_interaction_at = current_time or _utcnow()


@dataclass
class RunSummary:
    """Counters for one batch run. Returned to the caller, never persisted."""

    users_processed: int = 0
    violations_detected: int = 0
    notifications_sent: int = 0
    notifications_blocked: int = 0
    errors: int = 0
    duration: timedelta = timedelta(0)
    cancelled: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses and logs."""
        return {
            "users_processed": self.users_processed,
            "violations_detected": self.violations_detected,
            "notifications_sent": self.notifications_sent,
            "notifications_blocked": self.notifications_blocked,
            "errors": self.errors,
            "duration_seconds": round(self.duration.total_seconds(), 3),
            "cancelled": self.cancelled,
        }
