"""
Grafana OTLP Metrics Exporter
==============================

Pushes SLA notification run metrics to Grafana Cloud via OTLP.

Metrics exported (gauges, one data point per run):
- sla_run_users_processed
- sla_run_violations_detected
- sla_run_notifications_sent
- sla_run_notifications_blocked
- sla_run_errors
- sla_run_duration_ms
"""

import base64
import time
from typing import Any, Dict, List, Optional

import httpx

from src.config import settings
from src.sla.domain import RunSummary
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class GrafanaOTLPExporter:
    """
    Export run metrics to Grafana Cloud via OTLP HTTP endpoint.

    Uses OpenTelemetry Protocol (OTLP) JSON format for metrics. Export is a
    no-op unless host, API key and instance id are all configured.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize Grafana OTLP exporter.

        Args:
            host: Grafana OTLP gateway URL (e.g., https://otlp-gateway-prod-ap-south-1.grafana.net)
            api_key: Grafana API key
            instance_id: Instance ID for authentication
            transport: Optional httpx transport (tests)
        """
        self._host = host or settings.grafana_host
        self._api_key = api_key or settings.grafana_api_key
        self._instance_id = instance_id or settings.grafana_instance_id
        self._transport = transport
        self._enabled = bool(self._host and self._api_key and self._instance_id)

        if self._enabled:
            auth_pair = f"{self._instance_id}:{self._api_key}"
            self._auth_encoded = base64.b64encode(auth_pair.encode()).decode()
            # Don't double-append the path if host already includes it
            if "/otlp/v1/metrics" not in self._host:
                self._url = f"{self._host.rstrip('/')}/otlp/v1/metrics"
            else:
                self._url = self._host
            logger.info(
                "Grafana OTLP exporter initialized",
                extra={"host": self._host, "instance_id": self._instance_id}
            )
        else:
            logger.info(
                "Grafana OTLP exporter not configured - run metrics will not be exported",
                extra={
                    "host_configured": bool(self._host),
                    "api_key_configured": bool(self._api_key),
                    "instance_id_configured": bool(self._instance_id)
                }
            )

    def is_enabled(self) -> bool:
        """Check if exporter is properly configured."""
        return self._enabled

    @staticmethod
    def _gauge(name: str, unit: str, description: str, value: int,
               timestamp_ns: int, attributes: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "name": name,
            "unit": unit,
            "description": description,
            "gauge": {
                "dataPoints": [
                    {"asInt": value, "timeUnixNano": timestamp_ns, "attributes": attributes}
                ]
            }
        }

    def build_run_payload(self, summary: RunSummary, trigger: str = "scheduled") -> Dict[str, Any]:
        """OTLP metrics payload for one run summary."""
        timestamp_ns = int(time.time() * 1_000_000_000)
        attributes = [
            {"key": "trigger", "value": {"stringValue": trigger}},
            {"key": "cancelled", "value": {"stringValue": str(summary.cancelled).lower()}},
            {"key": "service", "value": {"stringValue": settings.app_name}},
        ]

        metrics = [
            self._gauge("sla_run_users_processed", "1", "Subscribers processed in the run",
                        summary.users_processed, timestamp_ns, attributes),
            self._gauge("sla_run_violations_detected", "1", "SLA violations detected in the run",
                        summary.violations_detected, timestamp_ns, attributes),
            self._gauge("sla_run_notifications_sent", "1", "Digests delivered in the run",
                        summary.notifications_sent, timestamp_ns, attributes),
            self._gauge("sla_run_notifications_blocked", "1", "Digests blocked by the notification gate",
                        summary.notifications_blocked, timestamp_ns, attributes),
            self._gauge("sla_run_errors", "1", "Per-subscriber errors in the run",
                        summary.errors, timestamp_ns, attributes),
            self._gauge("sla_run_duration_ms", "ms", "Run wall-clock duration",
                        int(summary.duration.total_seconds() * 1000), timestamp_ns, attributes),
        ]

        return {
            "resourceMetrics": [
                {
                    "resource": {
                        "attributes": [
                            {"key": "service.name", "value": {"stringValue": settings.app_name}},
                            {"key": "service.version", "value": {"stringValue": settings.app_version}},
                            {"key": "deployment.environment", "value": {"stringValue": settings.environment}},
                        ]
                    },
                    "scopeMetrics": [{"metrics": metrics}]
                }
            ]
        }

    async def export_run_summary(self, summary: RunSummary, trigger: str = "scheduled") -> bool:
        """
        Export one run summary to Grafana.

        Returns:
            True if export succeeded, False otherwise (never raises)
        """
        if not self._enabled:
            logger.debug("Grafana exporter not enabled - skipping metrics export")
            return False

        payload = self.build_run_payload(summary, trigger)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self._auth_encoded}",
            "X-Grafana-Org-Id": str(self._instance_id)
        }

        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.post(self._url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error("Error exporting run metrics to Grafana", extra={"error": str(e)})
            return False

        if response.status_code in (200, 202):
            logger.debug(
                "Run metrics exported to Grafana",
                extra={"trigger": trigger, "status_code": response.status_code}
            )
            return True

        logger.warning(
            "Failed to export run metrics to Grafana",
            extra={
                "status_code": response.status_code,
                "response": response.text[:500],
                "url": self._url
            }
        )
        return False


# Global exporter instance
_grafana_exporter: Optional[GrafanaOTLPExporter] = None


def get_grafana_exporter() -> GrafanaOTLPExporter:
    """Get or create global Grafana exporter instance."""
    global _grafana_exporter
    if _grafana_exporter is None:
        _grafana_exporter = GrafanaOTLPExporter()
    return _grafana_exporter
