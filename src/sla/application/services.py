"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories, clients), not concrete implementations
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional, Tuple
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.config import (
    BlockedReason,
    NotificationType,
    WorkItemField,
    OPEN_WORK_ITEM_STATES,
    VIOLATION_QUERY_FIELDS,
    MAX_CONSECUTIVE_DELIVERY_FAILURES,
    NOTIFICATION_RETENTION_HOURS,
)
from src.core.exceptions import ResourceNotFoundException, ValidationException
from src.sla.domain import (
    DeliveryEndpoint,
    DeliveryResult,
    GateResult,
    NotificationEvent,
    NotificationPreferences,
    NotificationState,
    QuietHours,
    RunSummary,
    SLACalculator,
    SLANotificationConfig,
    Subscriber,
    Violation,
)
from src.sla.application.messages import DigestComposer
from src.shared.infrastructure.locks import KeyedLock
from src.shared.infrastructure.logging import get_logger, get_context_logger, log_latency

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ========== Repository Interfaces (Dependency Inversion) ==========

class ISubscriberRepository(ABC):
    """Interface for subscriber (user configuration) data access."""

    @abstractmethod
    async def get_by_subscriber_id(self, subscriber_id: str) -> Optional[Subscriber]:
        """Get subscriber by id."""

    @abstractmethod
    async def list_registered(self) -> List[Subscriber]:
        """List registered subscribers in stored order."""

    @abstractmethod
    async def upsert(self, subscriber: Subscriber) -> Subscriber:
        """Create or replace a subscriber."""


class INotificationStateRepository(ABC):
    """Interface for the per-subscriber notification history aggregate."""

    @abstractmethod
    async def get_or_create(self, subscriber_id: str) -> NotificationState:
        """Get the subscriber's aggregate, creating an empty one if missing."""

    @abstractmethod
    async def record_notification(
        self,
        subscriber_id: str,
        notification_type: str,
        deduplication_key: Optional[str] = None,
        work_item_id: Optional[int] = None,
        area_path: Optional[str] = None,
        sent_at: Optional[datetime] = None
    ) -> NotificationState:
        """Append one event, prune to the retention window and persist."""

    @abstractmethod
    async def get_notifications_since(
        self,
        subscriber_id: str,
        since: datetime
    ) -> List[NotificationEvent]:
        """Events at or after `since` from a single aggregate read."""


class IDeliveryEndpointRepository(ABC):
    """Interface for delivery endpoint (breaker state) data access."""

    @abstractmethod
    async def get_by_subscriber_id(self, subscriber_id: str) -> Optional[DeliveryEndpoint]:
        """Get the subscriber's endpoint."""

    @abstractmethod
    async def upsert(self, endpoint: DeliveryEndpoint) -> DeliveryEndpoint:
        """Create or replace an endpoint."""


class IWorkItemClient(ABC):
    """Interface for the work-tracking query API."""

    @abstractmethod
    async def get_work_items_by_assigned_user(
        self,
        email: str,
        states: List[str],
        fields: List[str],
        iteration_path: Optional[str] = None,
        area_paths: Optional[List[str]] = None,
        work_item_types: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Return {"count": n, "value": [{"id": ..., "fields": {...}}]}."""

    @abstractmethod
    async def get_current_iteration_path(self, team_name: str) -> Optional[str]:
        """Resolve the team's current iteration path."""


class IChatTransport(ABC):
    """Interface for the low-level chat send primitive."""

    @abstractmethod
    async def send(self, handle: Dict[str, Any], message: str) -> None:
        """Deliver a message; raise on failure."""


class ISLAConfigProvider(ABC):
    """Interface for SLA notification configuration access."""

    @abstractmethod
    def get_config(self) -> SLANotificationConfig:
        """Get current SLA notification configuration."""


# ========== Application Services ==========

class ViolationEvaluator:
    """
    Finds work items whose update age exceeds their type's SLA threshold.

    Only types with a configured threshold are queried. A malformed item is
    logged and skipped; a failed query propagates to the caller.
    """

    def __init__(
        self,
        work_item_client: IWorkItemClient,
        config_provider: ISLAConfigProvider,
        clock: Optional[Clock] = None
    ):
        self._client = work_item_client
        self._config_provider = config_provider
        self._clock = clock or utcnow

    async def get_violations(
        self,
        email: str,
        area_paths: Optional[List[str]] = None
    ) -> List[Violation]:
        """
        Check one email's open work items for SLA violations.

        Args:
            email: Work-tracking identity to query
            area_paths: Optional area path scope (None or empty = unscoped)

        Returns:
            Violations, in the order the query returned the items
        """
        if not email or not email.strip():
            logger.warning("Violation check called with empty email")
            return []

        config = self._config_provider.get_config()
        if not config.sla_rules:
            logger.debug("No SLA rules configured, skipping query", extra={"email": email})
            return []

        iteration_path = await self._resolve_iteration_path(config)

        with log_latency(logger, "work_item_query", email=email):
            payload = await self._client.get_work_items_by_assigned_user(
                email,
                list(OPEN_WORK_ITEM_STATES),
                list(VIOLATION_QUERY_FIELDS),
                iteration_path,
                area_paths or None,
                config.work_item_types,
            )

        violations = self._calculate_violations(payload, config, self._clock())

        logger.debug(
            "SLA violation check complete",
            extra={"email": email, "violations": len(violations)}
        )
        return violations

    async def _resolve_iteration_path(self, config: SLANotificationConfig) -> Optional[str]:
        """Current iteration for the configured team, else the static path."""
        if not config.team_name or not config.team_name.strip():
            return config.iteration_path

        try:
            resolved = await self._client.get_current_iteration_path(config.team_name)
        except Exception as e:
            logger.warning(
                "Failed to resolve current iteration, using configured path",
                extra={
                    "team_name": config.team_name,
                    "iteration_path": config.iteration_path,
                    "error": str(e)
                }
            )
            return config.iteration_path

        logger.debug(
            "Resolved current iteration",
            extra={"team_name": config.team_name, "iteration_path": resolved}
        )
        return resolved

    def _calculate_violations(
        self,
        payload: Any,
        config: SLANotificationConfig,
        current_time: datetime
    ) -> List[Violation]:
        if not payload:
            return []

        items = payload.get("value") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            logger.warning("Work item response has no 'value' collection")
            return []

        violations = []
        for item in items:
            violation = self._check_work_item(item, config, current_time)
            if violation is not None:
                violations.append(violation)
        return violations

    def _check_work_item(
        self,
        item: Any,
        config: SLANotificationConfig,
        current_time: datetime
    ) -> Optional[Violation]:
        """Check a single work item; malformed items yield None."""
        try:
            fields = item["fields"]
            work_item_id = _parse_work_item_id(fields[WorkItemField.ID])
            work_item_type = fields[WorkItemField.WORK_ITEM_TYPE] or ""
            title = fields[WorkItemField.TITLE] or ""
            changed_at = datetime.fromisoformat(fields[WorkItemField.CHANGED_DATE])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(
                "Skipping malformed work item",
                extra={"work_item": _describe_item(item), "error": str(e)}
            )
            return None

        threshold = config.get_threshold(work_item_type)
        if threshold is None:
            return None

        days = SLACalculator.days_since_update(changed_at, current_time)
        if not SLACalculator.is_violation(days, threshold):
            return None

        return Violation(
            work_item_id=work_item_id,
            title=title,
            work_item_type=work_item_type,
            days_since_update=days,
            sla_threshold_days=threshold,
            url=config.work_item_url(work_item_id),
        )


def _parse_work_item_id(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("work item id must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    raise ValueError(f"invalid work item id: {value!r}")


def _describe_item(item: Any) -> Any:
    if isinstance(item, dict):
        return item.get("id")
    return type(item).__name__


class NotificationGate:
    """
    Admission control for outbound notifications.

    Evaluation is read-only: it checks quiet hours, then the hourly and
    daily caps over a single 24h history read. Recording is a separate
    step that callers perform only after a successful send.
    """

    def __init__(
        self,
        subscriber_repository: ISubscriberRepository,
        notification_state_repository: INotificationStateRepository,
        clock: Optional[Clock] = None
    ):
        self._subscriber_repo = subscriber_repository
        self._state_repo = notification_state_repository
        self._clock = clock or utcnow
        self._locks = KeyedLock()

    def hold(self, subscriber_id: str) -> AsyncContextManager[None]:
        """Serialize evaluate-send-record sequences for one subscriber."""
        return self._locks.hold(subscriber_id)

    async def evaluate(self, subscriber_id: str) -> GateResult:
        """
        Decide whether a notification may be sent to the subscriber now.

        Args:
            subscriber_id: Subscriber to evaluate

        Returns:
            GateResult with both window counts populated
        """
        if not subscriber_id or not subscriber_id.strip():
            return GateResult(can_send=False, blocked_reason=BlockedReason.MISSING_SUBSCRIBER)

        now = self._clock()
        subscriber = await self._subscriber_repo.get_by_subscriber_id(subscriber_id)
        prefs = subscriber.preferences if subscriber and subscriber.preferences else NotificationPreferences()

        if self.is_in_quiet_hours(prefs.quiet_hours, now, prefs.timezone_id):
            logger.debug("Notification blocked: quiet hours", extra={"subscriber_id": subscriber_id})
            return GateResult(can_send=False, blocked_reason=BlockedReason.QUIET_HOURS)

        recent = await self._state_repo.get_notifications_since(
            subscriber_id,
            now - timedelta(hours=NOTIFICATION_RETENTION_HOURS)
        )
        hour_ago = now - timedelta(hours=1)
        last_hour = sum(1 for e in recent if e.sent_at >= hour_ago)
        last_day = len(recent)

        logger.debug(
            "Notification gate evaluation",
            extra={"subscriber_id": subscriber_id, "last_hour": last_hour, "last_day": last_day}
        )

        if last_hour >= prefs.max_notifications_per_hour:
            return GateResult(
                can_send=False,
                blocked_reason=f"{BlockedReason.HOURLY_LIMIT} ({last_hour}/{prefs.max_notifications_per_hour})",
                notifications_sent_in_last_hour=last_hour,
                notifications_sent_in_last_day=last_day,
            )

        if last_day >= prefs.max_notifications_per_day:
            return GateResult(
                can_send=False,
                blocked_reason=f"{BlockedReason.DAILY_LIMIT} ({last_day}/{prefs.max_notifications_per_day})",
                notifications_sent_in_last_hour=last_hour,
                notifications_sent_in_last_day=last_day,
            )

        return GateResult(
            can_send=True,
            notifications_sent_in_last_hour=last_hour,
            notifications_sent_in_last_day=last_day,
        )

    def is_in_quiet_hours(
        self,
        quiet_hours: Optional[QuietHours],
        utc_now: datetime,
        timezone_id: Optional[str] = None
    ) -> bool:
        """Check whether `utc_now` falls inside the subscriber's local quiet window."""
        if quiet_hours is None or not quiet_hours.enabled:
            return False

        local_now = SLACalculator.to_utc(utc_now).astimezone(self._resolve_timezone(timezone_id))
        return SLACalculator.within_quiet_window(
            quiet_hours.start_time,
            quiet_hours.end_time,
            local_now.time().replace(tzinfo=None),
        )

    def _resolve_timezone(self, timezone_id: Optional[str]):
        try:
            return ZoneInfo(timezone_id or "UTC")
        except (ZoneInfoNotFoundError, ValueError, OSError):
            logger.warning(
                "Invalid timezone, falling back to UTC",
                extra={"timezone_id": timezone_id}
            )
            return timezone.utc

    async def record_sent(
        self,
        subscriber_id: str,
        notification_type: str,
        deduplication_key: Optional[str] = None,
        work_item_id: Optional[int] = None,
        area_path: Optional[str] = None
    ) -> None:
        """Append a sent notification to the subscriber's history. No admission check."""
        if not subscriber_id or not subscriber_id.strip():
            logger.warning("Cannot record notification: subscriber ID is required")
            return

        state = await self._state_repo.record_notification(
            subscriber_id,
            notification_type,
            deduplication_key=deduplication_key,
            work_item_id=work_item_id,
            area_path=area_path,
            sent_at=self._clock(),
        )

        logger.info(
            "Recorded notification",
            extra={
                "subscriber_id": subscriber_id,
                "notification_type": notification_type,
                "total_sent": state.total_notifications_sent,
                "recent": len(state.recent_notifications),
            }
        )

    async def get_history(self, subscriber_id: str) -> List[NotificationEvent]:
        """Events within the retention window, newest first."""
        since = self._clock() - timedelta(hours=NOTIFICATION_RETENTION_HOURS)
        return await self._state_repo.get_notifications_since(subscriber_id, since)


class DeliveryChannel:
    """
    Sends messages to a subscriber's captured chat endpoint.

    Each endpoint carries its own circuit breaker: consecutive failures are
    counted, and at the threshold the endpoint is deactivated until it is
    registered again. This class is the only writer of endpoint state.
    """

    def __init__(
        self,
        endpoint_repository: IDeliveryEndpointRepository,
        transport: IChatTransport,
        clock: Optional[Clock] = None,
        failure_threshold: int = MAX_CONSECUTIVE_DELIVERY_FAILURES
    ):
        self._endpoint_repo = endpoint_repository
        self._transport = transport
        self._clock = clock or utcnow
        self._failure_threshold = failure_threshold
        self._locks = KeyedLock()

    async def send(self, subscriber_id: str, message: str) -> DeliveryResult:
        """
        Deliver a message to the subscriber's endpoint.

        Returns:
            DeliveryResult; failures carry the error text and never raise
        """
        if not subscriber_id or not subscriber_id.strip():
            return DeliveryResult(success=False, error_message="Subscriber ID cannot be empty")
        if not message or not message.strip():
            return DeliveryResult(success=False, error_message="Message cannot be empty")

        async with self._locks.hold(subscriber_id):
            return await self._send_locked(subscriber_id, message)

    async def _send_locked(self, subscriber_id: str, message: str) -> DeliveryResult:
        try:
            endpoint = await self._endpoint_repo.get_by_subscriber_id(subscriber_id)
        except Exception as e:
            logger.error(
                "Failed to load delivery endpoint",
                extra={"subscriber_id": subscriber_id, "error": str(e)}
            )
            return DeliveryResult(success=False, error_message=str(e), sent_at=self._clock())

        if endpoint is None or not endpoint.allows_delivery:
            logger.warning(
                "No active delivery endpoint",
                extra={"subscriber_id": subscriber_id}
            )
            return DeliveryResult(success=False, error_message="No active delivery endpoint found")

        try:
            handle = json.loads(endpoint.handle_json)
            if not isinstance(handle, dict):
                raise ValueError("endpoint handle must be a JSON object")
        except ValueError as e:
            logger.error(
                "Invalid delivery endpoint handle",
                extra={"subscriber_id": subscriber_id, "error": str(e)}
            )
            await self._record_failure(endpoint)
            return DeliveryResult(success=False, error_message="Invalid delivery endpoint", sent_at=self._clock())

        try:
            await self._transport.send(handle, message)
        except Exception as e:
            logger.error(
                "Delivery failed",
                extra={"subscriber_id": subscriber_id, "error": str(e)}
            )
            await self._record_failure(endpoint)
            return DeliveryResult(success=False, error_message=str(e), sent_at=self._clock())

        logger.info("Delivered message", extra={"subscriber_id": subscriber_id})

        endpoint.record_success()
        try:
            await self._endpoint_repo.upsert(endpoint)
        except Exception as e:
            logger.error(
                "Failed to persist delivery success",
                extra={"subscriber_id": subscriber_id, "error": str(e)}
            )

        return DeliveryResult(success=True, sent_at=self._clock())

    async def _record_failure(self, endpoint: DeliveryEndpoint) -> None:
        opened = endpoint.record_failure(self._failure_threshold)
        if opened:
            logger.warning(
                "Circuit breaker opened, endpoint deactivated",
                extra={
                    "subscriber_id": endpoint.subscriber_id,
                    "failure_count": endpoint.consecutive_failure_count
                }
            )
        try:
            await self._endpoint_repo.upsert(endpoint)
        except Exception as e:
            logger.error(
                "Failed to persist delivery failure count",
                extra={"subscriber_id": endpoint.subscriber_id, "error": str(e)}
            )

    async def register_endpoint(self, subscriber_id: str, handle: Dict[str, Any]) -> DeliveryEndpoint:
        """
        Capture or refresh a subscriber's endpoint.

        This is the external re-registration path: it stores the new handle
        and closes the circuit.
        """
        if not subscriber_id or not subscriber_id.strip():
            raise ValueError("Subscriber ID cannot be empty")

        handle_json = json.dumps(handle)
        async with self._locks.hold(subscriber_id):
            endpoint = await self._endpoint_repo.get_by_subscriber_id(subscriber_id)
            if endpoint is None:
                endpoint = DeliveryEndpoint(
                    subscriber_id=subscriber_id,
                    handle_json=handle_json,
                    last_interaction_at=self._clock(),
                )
            else:
                endpoint.reactivate(handle_json, self._clock())
            endpoint = await self._endpoint_repo.upsert(endpoint)

        logger.info("Registered delivery endpoint", extra={"subscriber_id": subscriber_id})
        return endpoint


class SubscriberService:
    """Registration lifecycle for subscribers. Unregistering retains data."""

    def __init__(self, subscriber_repository: ISubscriberRepository, clock: Optional[Clock] = None):
        self._subscriber_repo = subscriber_repository
        self._clock = clock or utcnow

    async def register(
        self,
        subscriber_id: str,
        email: str,
        direct_report_emails: Optional[List[str]] = None,
        area_paths: Optional[List[str]] = None,
        preferences: Optional[NotificationPreferences] = None
    ) -> Subscriber:
        if not subscriber_id or not subscriber_id.strip():
            raise ValidationException("Subscriber ID is required")
        if not email or not email.strip():
            raise ValidationException("Email is required", {"subscriber_id": subscriber_id})

        now = self._clock()
        existing = await self._subscriber_repo.get_by_subscriber_id(subscriber_id)
        reports = list(direct_report_emails or [])

        subscriber = Subscriber(
            subscriber_id=subscriber_id,
            email=email.strip(),
            direct_report_emails=reports,
            area_paths=list(area_paths or []),
            is_registered=True,
            preferences=preferences or NotificationPreferences(),
            registered_at=existing.registered_at if existing else now,
            direct_reports_last_refreshed_at=now if reports else None,
        )
        subscriber = await self._subscriber_repo.upsert(subscriber)

        logger.info(
            "Subscriber registered",
            extra={
                "subscriber_id": subscriber_id,
                "is_manager": subscriber.is_manager,
                "area_paths": len(subscriber.area_paths),
                "new": existing is None,
            }
        )
        return subscriber

    async def unregister(self, subscriber_id: str) -> Subscriber:
        subscriber = await self._subscriber_repo.get_by_subscriber_id(subscriber_id)
        if subscriber is None:
            raise ResourceNotFoundException("Subscriber", subscriber_id)

        subscriber.is_registered = False
        subscriber = await self._subscriber_repo.upsert(subscriber)
        logger.info("Subscriber unregistered", extra={"subscriber_id": subscriber_id})
        return subscriber


class GatedNotificationService:
    """
    Ad-hoc gated send: evaluate, deliver, then record.

    Shares the gate's per-subscriber lock with batch runs.
    """

    def __init__(self, gate: NotificationGate, delivery: DeliveryChannel):
        self._gate = gate
        self._delivery = delivery

    async def send(
        self,
        subscriber_id: str,
        message: str,
        notification_type: str = NotificationType.AD_HOC,
        deduplication_key: Optional[str] = None
    ) -> Tuple[GateResult, Optional[DeliveryResult]]:
        async with self._gate.hold(subscriber_id):
            gate_result = await self._gate.evaluate(subscriber_id)
            if not gate_result.can_send:
                return gate_result, None

            result = await self._delivery.send(subscriber_id, message)
            if result.success:
                await self._gate.record_sent(
                    subscriber_id,
                    notification_type,
                    deduplication_key=deduplication_key or f"{notification_type}_{uuid4()}",
                )
            return gate_result, result


@dataclass
class _SubscriberOutcome:
    """What processing one subscriber produced; merged by the run aggregator."""

    subscriber_id: str
    violations: int = 0
    blocked: bool = False
    sent: bool = False
    error: bool = False
    budget_exhausted: bool = False


class _RunBudget:
    """
    Per-run notification budget shared by all workers.

    check-and-reserve has no await between test and increment, so it is
    atomic on the event loop.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self.sent = 0
        self.reserved = 0

    @property
    def exhausted(self) -> bool:
        return self.sent >= self.limit

    def try_reserve(self) -> bool:
        if self.sent + self.reserved >= self.limit:
            return False
        self.reserved += 1
        return True

    def commit(self) -> None:
        self.reserved -= 1
        self.sent += 1

    def release(self) -> None:
        self.reserved -= 1


class BatchOrchestrator:
    """
    Runs one evaluate-and-notify sweep across registered subscribers.

    Subscribers are taken in stored order by a bounded pool of workers
    (one worker reproduces a strictly sequential sweep). The loop stops as
    soon as the per-run budget is spent. A failure while processing one
    subscriber is logged and counted and never stops the run; a failure to
    list subscribers propagates.
    """

    def __init__(
        self,
        subscriber_repository: ISubscriberRepository,
        evaluator: ViolationEvaluator,
        gate: NotificationGate,
        delivery: DeliveryChannel,
        config_provider: ISLAConfigProvider,
        composer: Optional[DigestComposer] = None,
        bypass_gates: Optional[bool] = None,
        clock: Optional[Clock] = None
    ):
        self._subscriber_repo = subscriber_repository
        self._evaluator = evaluator
        self._gate = gate
        self._delivery = delivery
        self._config_provider = config_provider
        self._composer = composer or DigestComposer()
        self._bypass_override = bypass_gates
        self._clock = clock or utcnow

    async def evaluate_and_notify(
        self,
        cancel_event: Optional[asyncio.Event] = None
    ) -> RunSummary:
        """
        Evaluate all registered subscribers and send digests.

        Args:
            cancel_event: Checked between subscribers; a set event ends the
                run early with a partial summary

        Returns:
            RunSummary for this run
        """
        start = time.perf_counter()
        summary = RunSummary()
        run_logger = get_context_logger(__name__, uuid4().hex)

        try:
            config = self._config_provider.get_config()
            if not config.enabled:
                run_logger.info("SLA notifications are disabled in configuration")
                return summary

            subscribers = await self._subscriber_repo.list_registered()
            if not subscribers:
                run_logger.info("No registered subscribers for SLA notifications")
                return summary

            bypass = config.bypass_gates if self._bypass_override is None else self._bypass_override
            run_logger.info(
                "Processing subscribers for SLA violations",
                extra={
                    "subscribers": len(subscribers),
                    "max_notifications_per_run": config.max_notifications_per_run,
                    "max_concurrency": config.max_concurrency,
                    "bypass_gates": bypass,
                }
            )

            await self._run_workers(subscribers, config, bypass, summary, cancel_event, run_logger)
        finally:
            summary.duration = timedelta(seconds=time.perf_counter() - start)

        run_logger.info("SLA notification run finished", extra=summary.to_dict())
        return summary

    async def _run_workers(
        self,
        subscribers: List[Subscriber],
        config: SLANotificationConfig,
        bypass: bool,
        summary: RunSummary,
        cancel_event: Optional[asyncio.Event],
        run_logger
    ) -> None:
        pending: asyncio.Queue = asyncio.Queue()
        for subscriber in subscribers:
            pending.put_nowait(subscriber)

        outcomes: asyncio.Queue = asyncio.Queue()
        budget = _RunBudget(config.max_notifications_per_run)
        stop = asyncio.Event()

        async def worker() -> None:
            while not stop.is_set():
                if cancel_event is not None and cancel_event.is_set():
                    if not pending.empty():
                        summary.cancelled = True
                        run_logger.warning("SLA notification run cancelled")
                    stop.set()
                    return
                if budget.exhausted:
                    run_logger.warning(
                        "Reached max notifications per run, stopping evaluation",
                        extra={"max_notifications_per_run": budget.limit}
                    )
                    stop.set()
                    return
                try:
                    subscriber = pending.get_nowait()
                except asyncio.QueueEmpty:
                    return

                outcome = await self._process_subscriber_safely(subscriber, config, bypass, budget, run_logger)
                outcomes.put_nowait(outcome)
                if outcome.budget_exhausted:
                    stop.set()

        async def aggregate() -> None:
            while True:
                outcome = await outcomes.get()
                if outcome is None:
                    return
                summary.users_processed += 1
                summary.violations_detected += outcome.violations
                summary.notifications_blocked += int(outcome.blocked)
                summary.notifications_sent += int(outcome.sent)
                summary.errors += int(outcome.error)

        aggregator = asyncio.create_task(aggregate())
        try:
            await asyncio.gather(*(worker() for _ in range(config.max_concurrency)))
        finally:
            outcomes.put_nowait(None)
            await aggregator

    async def _process_subscriber_safely(
        self,
        subscriber: Subscriber,
        config: SLANotificationConfig,
        bypass: bool,
        budget: _RunBudget,
        run_logger
    ) -> _SubscriberOutcome:
        outcome = _SubscriberOutcome(subscriber_id=subscriber.subscriber_id)
        try:
            await self._process_subscriber(subscriber, config, bypass, budget, outcome, run_logger)
        except Exception as e:
            outcome.error = True
            run_logger.exception(
                "Error processing subscriber",
                extra={"subscriber_id": subscriber.subscriber_id, "error": str(e)}
            )
        return outcome

    async def _process_subscriber(
        self,
        subscriber: Subscriber,
        config: SLANotificationConfig,
        bypass: bool,
        budget: _RunBudget,
        outcome: _SubscriberOutcome,
        run_logger
    ) -> None:
        subscriber_id = subscriber.subscriber_id

        if not subscriber.is_registered:
            run_logger.warning("Subscriber is not registered, skipping", extra={"subscriber_id": subscriber_id})
            return
        if not subscriber.email or not subscriber.email.strip():
            run_logger.warning("Subscriber has empty email, skipping", extra={"subscriber_id": subscriber_id})
            return

        emails = subscriber.emails_to_check
        results = await asyncio.gather(
            *(self._evaluator.get_violations(email, subscriber.area_paths or None) for email in emails)
        )
        violations_by_owner = {
            email: violations for email, violations in zip(emails, results) if violations
        }
        if not violations_by_owner:
            run_logger.debug("No SLA violations found", extra={"subscriber_id": subscriber_id})
            return

        outcome.violations = sum(len(v) for v in violations_by_owner.values())
        run_logger.info(
            "Found SLA violations",
            extra={
                "subscriber_id": subscriber_id,
                "violations": outcome.violations,
                "owners": len(violations_by_owner),
            }
        )

        async with self._gate.hold(subscriber_id):
            if not bypass:
                gate_result = await self._gate.evaluate(subscriber_id)
                if not gate_result.can_send:
                    outcome.blocked = True
                    run_logger.info(
                        "Notification blocked",
                        extra={"subscriber_id": subscriber_id, "reason": gate_result.blocked_reason}
                    )
                    return

            if subscriber.is_manager:
                message = self._composer.compose_manager_digest(violations_by_owner, subscriber.email)
            else:
                message = self._composer.compose_digest(violations_by_owner.get(subscriber.email, []))

            if not budget.try_reserve():
                outcome.budget_exhausted = True
                return

            try:
                result = await self._delivery.send(subscriber_id, message)
            except Exception:
                budget.release()
                raise

            if not result.success:
                budget.release()
                outcome.error = True
                run_logger.error(
                    "Failed to send notification",
                    extra={"subscriber_id": subscriber_id, "error": result.error_message}
                )
                return

            budget.commit()
            outcome.sent = True
            run_logger.info(
                "Sent SLA notification",
                extra={
                    "subscriber_id": subscriber_id,
                    "kind": "manager" if subscriber.is_manager else "individual",
                    "violations": outcome.violations,
                }
            )

            if not bypass:
                await self._gate.record_sent(
                    subscriber_id,
                    NotificationType.WORK_ITEM_UPDATE_SLA,
                    deduplication_key=SLACalculator.deduplication_key(
                        NotificationType.WORK_ITEM_UPDATE_SLA, subscriber_id, self._clock()
                    ),
                )
