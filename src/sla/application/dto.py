"""
SLA Application DTOs
=====================

Data Transfer Objects for SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses. Following YAGNI - only what's needed.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime, time

from src.sla.domain import (
    DeliveryEndpoint,
    DeliveryResult,
    GateResult,
    NotificationEvent,
    NotificationPreferences,
    QuietHours,
    RunSummary,
    Subscriber,
    Violation,
)


# ========== Request DTOs ==========

class QuietHoursDTO(BaseModel):
    """Quiet hours window in the subscriber's local time."""
    enabled: bool = Field(default=False, description="Whether quiet hours apply")
    start_time: time = Field(default=time(22, 0), description="Window start (inclusive)")
    end_time: time = Field(default=time(8, 0), description="Window end (exclusive)")


class NotificationPreferencesDTO(BaseModel):
    """Throttling and quiet hours preferences."""
    max_notifications_per_hour: int = Field(default=5, ge=0)
    max_notifications_per_day: int = Field(default=20, ge=0)
    timezone_id: str = Field(default="UTC", description="IANA timezone id")
    quiet_hours: Optional[QuietHoursDTO] = None
    sla_violation_notifications: bool = True

    def to_domain(self) -> NotificationPreferences:
        quiet_hours = None
        if self.quiet_hours is not None:
            quiet_hours = QuietHours(
                start_time=self.quiet_hours.start_time,
                end_time=self.quiet_hours.end_time,
                enabled=self.quiet_hours.enabled,
            )
        return NotificationPreferences(
            max_notifications_per_hour=self.max_notifications_per_hour,
            max_notifications_per_day=self.max_notifications_per_day,
            timezone_id=self.timezone_id,
            quiet_hours=quiet_hours,
            sla_violation_notifications=self.sla_violation_notifications,
        )


class SubscriberUpsertRequest(BaseModel):
    """Request model for registering or updating a subscriber."""
    email: str = Field(..., min_length=3, description="Work-tracking identity (email)")
    direct_report_emails: List[str] = Field(default_factory=list)
    area_paths: List[str] = Field(default_factory=list)
    preferences: NotificationPreferencesDTO = Field(default_factory=NotificationPreferencesDTO)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Require a plausible address; full validation happens upstream."""
        v = v.strip()
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v

    @field_validator("direct_report_emails")
    @classmethod
    def drop_blank_reports(cls, v: List[str]) -> List[str]:
        return [e.strip() for e in v if e and e.strip()]


class GateEvaluateRequest(BaseModel):
    """Request model for a read-only gate evaluation."""
    subscriber_id: str = Field(..., description="Subscriber to evaluate")


class GatedSendRequest(BaseModel):
    """Request model for an ad-hoc gated send."""
    subscriber_id: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    notification_type: str = Field(default="AdHoc")
    deduplication_key: Optional[str] = None


class EndpointRegisterRequest(BaseModel):
    """Captured chat endpoint handle."""
    handle: Dict[str, Any] = Field(..., description="Opaque channel handle, e.g. {'webhook_url': ...}")


# ========== Response DTOs ==========

class ViolationResponse(BaseModel):
    """Response model for a single SLA violation."""
    work_item_id: int
    title: str
    work_item_type: str
    days_since_update: int
    sla_threshold_days: int
    url: str

    @classmethod
    def from_domain(cls, violation: Violation) -> "ViolationResponse":
        return cls(**violation.to_dict())


class ViolationsResponse(BaseModel):
    """Response model for an on-demand violation check."""
    email: str
    count: int
    violations: List[ViolationResponse] = Field(default_factory=list)


class GateResultResponse(BaseModel):
    """Response model for a gate decision."""
    can_send: bool
    blocked_reason: Optional[str] = None
    notifications_sent_in_last_hour: int = 0
    notifications_sent_in_last_day: int = 0

    @classmethod
    def from_domain(cls, result: GateResult) -> "GateResultResponse":
        return cls(
            can_send=result.can_send,
            blocked_reason=result.blocked_reason,
            notifications_sent_in_last_hour=result.notifications_sent_in_last_hour,
            notifications_sent_in_last_day=result.notifications_sent_in_last_day,
        )


class DeliveryResultResponse(BaseModel):
    success: bool
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, result: DeliveryResult) -> "DeliveryResultResponse":
        return cls(success=result.success, error_message=result.error_message, sent_at=result.sent_at)


class GatedSendResponse(BaseModel):
    """Gate decision plus delivery outcome (absent when blocked)."""
    gate: GateResultResponse
    delivery: Optional[DeliveryResultResponse] = None


class NotificationEventResponse(BaseModel):
    sent_at: datetime
    notification_type: str
    deduplication_key: Optional[str] = None
    work_item_id: Optional[int] = None
    area_path: Optional[str] = None

    @classmethod
    def from_domain(cls, event: NotificationEvent) -> "NotificationEventResponse":
        return cls(
            sent_at=event.sent_at,
            notification_type=event.notification_type,
            deduplication_key=event.deduplication_key,
            work_item_id=event.work_item_id,
            area_path=event.area_path,
        )


class NotificationHistoryResponse(BaseModel):
    """Recent notification history, newest first."""
    subscriber_id: str
    events: List[NotificationEventResponse] = Field(default_factory=list)


class SubscriberResponse(BaseModel):
    subscriber_id: str
    email: str
    direct_report_emails: List[str]
    area_paths: List[str]
    is_registered: bool
    is_manager: bool
    registered_at: datetime

    @classmethod
    def from_domain(cls, subscriber: Subscriber) -> "SubscriberResponse":
        return cls(
            subscriber_id=subscriber.subscriber_id,
            email=subscriber.email,
            direct_report_emails=list(subscriber.direct_report_emails),
            area_paths=list(subscriber.area_paths),
            is_registered=subscriber.is_registered,
            is_manager=subscriber.is_manager,
            registered_at=subscriber.registered_at,
        )


class DeliveryEndpointResponse(BaseModel):
    """Endpoint breaker state; the handle itself is never echoed back."""
    subscriber_id: str
    is_active: bool
    consecutive_failure_count: int
    last_interaction_at: datetime

    @classmethod
    def from_domain(cls, endpoint: DeliveryEndpoint) -> "DeliveryEndpointResponse":
        return cls(
            subscriber_id=endpoint.subscriber_id,
            is_active=endpoint.is_active,
            consecutive_failure_count=endpoint.consecutive_failure_count,
            last_interaction_at=endpoint.last_interaction_at,
        )


class RunSummaryResponse(BaseModel):
    """Response model for a batch run."""
    users_processed: int
    violations_detected: int
    notifications_sent: int
    notifications_blocked: int
    errors: int
    duration_seconds: float
    cancelled: bool = False

    @classmethod
    def from_domain(cls, summary: RunSummary) -> "RunSummaryResponse":
        return cls(**summary.to_dict())
