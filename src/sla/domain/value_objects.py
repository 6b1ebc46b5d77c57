"""
SLA Value Objects
==================

Immutable value objects for the work item update SLA domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

import math
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


@dataclass(frozen=True)
class Violation:
    """A work item whose update age exceeds its type's SLA threshold."""

    work_item_id: int
    title: str
    work_item_type: str
    days_since_update: int
    sla_threshold_days: int
    url: str

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "work_item_id": self.work_item_id,
            "title": self.title,
            "work_item_type": self.work_item_type,
            "days_since_update": self.days_since_update,
            "sla_threshold_days": self.sla_threshold_days,
            "url": self.url,
        }


@dataclass(frozen=True)
class GateResult:
    """
    Outcome of a notification gate evaluation.

    Computed fresh on every evaluation and never persisted. Both counters
    are reported whether or not the send is admitted.
    """

    can_send: bool
    blocked_reason: Optional[str] = None
    notifications_sent_in_last_hour: int = 0
    notifications_sent_in_last_day: int = 0


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of a single delivery attempt."""

    success: bool
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None


class SLACalculator:
    """
    Pure functions for SLA calculations.

    Stateless utility class - all update-age, quiet window and
    deduplication key logic in one place.
    """

    @staticmethod
    def to_utc(value: datetime) -> datetime:
        """Normalize a timestamp to UTC (naive values are taken as UTC)."""
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @staticmethod
    def days_since_update(changed_at: datetime, current_time: datetime) -> int:
        """
        Whole days elapsed since the last update.

        Truncates toward zero, so 2 days 23 hours counts as 2 days.
        """
        elapsed = SLACalculator.to_utc(current_time) - SLACalculator.to_utc(changed_at)
        return math.trunc(elapsed.total_seconds() / 86400)

    @staticmethod
    def is_violation(days_since_update: int, threshold_days: int) -> bool:
        """An item violates its SLA only when strictly past the threshold."""
        return days_since_update > threshold_days

    @staticmethod
    def within_quiet_window(start: time, end: time, current: time) -> bool:
        """
        Check a local time-of-day against a [start, end) window.

        A window whose start is after its end wraps midnight
        (e.g. 22:00 - 08:00).
        """
        if start > end:
            return current >= start or current < end
        return start <= current < end

    @staticmethod
    def deduplication_key(
        notification_type: str,
        subscriber_id: str,
        current_time: datetime
    ) -> str:
        """One key per notification type, subscriber and UTC calendar day."""
        day = SLACalculator.to_utc(current_time).strftime("%Y%m%d")
        return f"{notification_type}_{subscriber_id}_{day}"


class SLANotificationConfig(BaseModel):
    """
    Work item update SLA notification configuration loaded from YAML.

    This is a value object - replaced wholesale on reload, never mutated.
    """
    enabled: bool = Field(default=True, description="Master switch for SLA notification runs")
    work_item_base_url: str = Field(
        default="",
        description="Base URL for work item deep links (id is appended)"
    )
    sla_rules: Dict[str, int] = Field(
        default_factory=dict,
        description="Days without update allowed per work item type"
    )
    team_name: Optional[str] = Field(
        default=None,
        description="Team used to resolve the current iteration path"
    )
    iteration_path: Optional[str] = Field(
        default=None,
        description="Static iteration path filter, used when no team is set or resolution fails"
    )
    max_notifications_per_run: int = Field(
        default=100,
        ge=0,
        description="Global notification budget for one run"
    )
    deduplication_window_hours: int = Field(
        default=24,
        ge=1,
        description="Informational; the enforced window is the 24h history horizon"
    )
    bypass_gates: bool = Field(
        default=False,
        description="Skip gate evaluation and recording (testing/backfill only)"
    )
    max_concurrency: int = Field(
        default=1,
        ge=1,
        le=64,
        description="Subscribers processed in parallel within one run"
    )

    @field_validator("sla_rules")
    @classmethod
    def validate_sla_rules(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Thresholds must be non-negative day counts."""
        for work_item_type, days in v.items():
            if days < 0:
                raise ValueError(f"SLA threshold for '{work_item_type}' must be >= 0")
        return v

    @field_validator("work_item_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def work_item_types(self) -> List[str]:
        """Work item types with a configured threshold."""
        return list(self.sla_rules.keys())

    def get_threshold(self, work_item_type: str) -> Optional[int]:
        """Get the SLA threshold in days, or None if the type has no rule."""
        return self.sla_rules.get(work_item_type)

    def work_item_url(self, work_item_id: int) -> str:
        """Deep link to a work item."""
        return f"{self.work_item_base_url}/{work_item_id}"
