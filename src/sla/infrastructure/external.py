"""
SLA External Service Integrations
==================================

External services for SLA notifications:
- YAML config file watcher
- Azure DevOps work item queries (WIQL)
- Chat webhook transport
- APScheduler for periodic runs
"""

import threading
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from src.config import settings, WorkItemField
from src.core import ConfigurationException, DeliveryException, WorkTrackingException
from src.sla.application.services import IChatTransport, ISLAConfigProvider, IWorkItemClient
from src.sla.domain import RunSummary, SLANotificationConfig
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

AZURE_DEVOPS_API_VERSION = "7.1"
WORK_ITEMS_BATCH_SIZE = 200


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for SLA config file changes."""

    def __init__(self, config_manager: "SLAConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        """Handle file modification event."""
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info("Config file changed", extra={"path": event.src_path})
            self.config_manager.reload()


class SLAConfigManager(ISLAConfigProvider):
    """
    Thread-safe SLA notification configuration with hot-reload support.

    Uses watchdog to monitor file changes and reload configuration
    without restarting the service. A reload that fails keeps the
    previous configuration.
    """

    def __init__(self):
        self._config: Optional[SLANotificationConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> SLANotificationConfig:
        """Initial configuration load."""
        self._path = path
        config = self._load_from_file(path)
        with self._lock:
            self._config = config
        return config

    def _load_from_file(self, path: Path) -> SLANotificationConfig:
        """Load and parse YAML config file."""
        if not path.exists():
            logger.warning("SLA config file not found, using defaults", extra={"path": str(path)})
            return SLANotificationConfig()

        with open(path, "r") as f:
            data = yaml.safe_load(f)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationException("SLA config file must contain a mapping", {"path": str(path)})

        # Accept either a bare mapping or one nested under a section key
        if "work_item_update_sla" in data:
            data = data["work_item_update_sla"]
            if not isinstance(data, dict):
                raise ConfigurationException(
                    "work_item_update_sla section must be a mapping", {"path": str(path)}
                )

        try:
            config = SLANotificationConfig(**data)
        except ValidationError as e:
            raise ConfigurationException("Invalid SLA notification configuration", {"errors": e.errors()}) from e

        if config.bypass_gates and settings.environment == "production":
            logger.warning("bypass_gates is enabled in production; rate limits and quiet hours are skipped")

        return config

    def reload(self) -> bool:
        """Reload configuration from file."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except Exception as e:
            logger.error("Failed to reload SLA config, keeping previous", extra={"error": str(e)})
            return False

        with self._lock:
            self._config = new_config
        logger.info(
            "SLA configuration reloaded",
            extra={"enabled": new_config.enabled, "rules": len(new_config.sla_rules)}
        )
        return True

    def start_watching(self) -> None:
        """
        Start watching configuration file for changes.

        Skipped when the file doesn't exist or inotify is unavailable.
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info("Config file doesn't exist, skipping file watch", extra={"path": str(self._path)})
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info("Started watching config file", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static config", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching configuration file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_config(self) -> SLANotificationConfig:
        with self._lock:
            if self._config is None:
                raise RuntimeError("SLA configuration not loaded")
            return self._config

    @property
    def config(self) -> SLANotificationConfig:
        """Get current configuration."""
        return self.get_config()


def _wiql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_assigned_items_wiql(
    email: str,
    states: List[str],
    iteration_path: Optional[str] = None,
    area_paths: Optional[List[str]] = None,
    work_item_types: Optional[List[str]] = None
) -> str:
    """WIQL for open items assigned to one user, optionally scoped."""
    clauses = [
        "[System.TeamProject] = @project",
        f"[System.AssignedTo] = {_wiql_literal(email)}",
    ]
    if states:
        clauses.append(f"[System.State] IN ({', '.join(_wiql_literal(s) for s in states)})")
    if work_item_types:
        clauses.append(f"[System.WorkItemType] IN ({', '.join(_wiql_literal(t) for t in work_item_types)})")
    if iteration_path:
        clauses.append(f"[System.IterationPath] UNDER {_wiql_literal(iteration_path)}")
    if area_paths:
        scoped = " OR ".join(f"[System.AreaPath] UNDER {_wiql_literal(p)}" for p in area_paths)
        clauses.append(f"({scoped})")

    return (
        f"SELECT [{WorkItemField.ID}] FROM WorkItems WHERE "
        + " AND ".join(clauses)
        + f" ORDER BY [{WorkItemField.CHANGED_DATE}] ASC"
    )


class AzureDevOpsWorkItemClient(IWorkItemClient):
    """
    Azure DevOps REST client for work item queries.

    Runs a WIQL query for ids, then fetches fields in batches. Any
    transport or HTTP error surfaces as WorkTrackingException.
    """

    def __init__(
        self,
        org_url: Optional[str] = None,
        project: Optional[str] = None,
        personal_access_token: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._org_url = (org_url or settings.azure_devops_org_url).rstrip("/")
        self._project = project if project is not None else settings.azure_devops_project
        self._pat = personal_access_token if personal_access_token is not None else settings.azure_devops_pat
        self._timeout = timeout_seconds or settings.azure_devops_timeout_seconds
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout,
                auth=("", self._pat or ""),
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._http_client

    def _project_url(self, path: str, team: Optional[str] = None) -> str:
        parts = [self._org_url, self._project]
        if team:
            parts.append(team)
        return "/".join(parts) + path

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        params = {"api-version": AZURE_DEVOPS_API_VERSION, **kwargs.pop("params", {})}
        client = await self._get_client()
        try:
            response = await client.request(method, url, params=params, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise WorkTrackingException(
                f"HTTP {e.response.status_code} from {e.request.url.path}",
                {"status_code": e.response.status_code}
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise WorkTrackingException(str(e) or type(e).__name__) from e

    async def get_work_items_by_assigned_user(
        self,
        email: str,
        states: List[str],
        fields: List[str],
        iteration_path: Optional[str] = None,
        area_paths: Optional[List[str]] = None,
        work_item_types: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        if not email or not email.strip():
            raise WorkTrackingException("Assigned user email is required")

        query = build_assigned_items_wiql(email, states, iteration_path, area_paths, work_item_types)
        result = await self._request("POST", self._project_url("/_apis/wit/wiql"), json={"query": query})
        ids = [ref["id"] for ref in result.get("workItems", []) if "id" in ref]

        items: List[Dict[str, Any]] = []
        for start in range(0, len(ids), WORK_ITEMS_BATCH_SIZE):
            batch = await self._request(
                "POST",
                self._project_url("/_apis/wit/workitemsbatch"),
                json={"ids": ids[start:start + WORK_ITEMS_BATCH_SIZE], "fields": list(fields)},
            )
            items.extend(batch.get("value", []))

        logger.debug("Fetched assigned work items", extra={"email": email, "count": len(items)})
        return {"count": len(items), "value": items}

    async def get_current_iteration_path(self, team_name: str) -> Optional[str]:
        result = await self._request(
            "GET",
            self._project_url("/_apis/work/teamsettings/iterations", team=team_name),
            params={"$timeframe": "current"},
        )
        iterations = result.get("value") or []
        if not iterations:
            return None
        return iterations[0].get("path")

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class WebhookChatTransport(IChatTransport):
    """
    Posts messages to a chat incoming-webhook.

    The endpoint handle carries `webhook_url` and an optional `channel`.
    No retries: the caller's breaker tracks consecutive failures.
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._timeout = timeout_seconds or settings.chat_timeout_seconds
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._http_client

    async def send(self, handle: Dict[str, Any], message: str) -> None:
        webhook_url = handle.get("webhook_url")
        if not webhook_url:
            raise DeliveryException("Endpoint handle has no webhook_url")

        payload: Dict[str, Any] = {"text": message}
        if handle.get("channel"):
            payload["channel"] = handle["channel"]

        client = await self._get_client()
        try:
            response = await client.post(webhook_url, json=payload)
        except httpx.HTTPError as e:
            raise DeliveryException(str(e) or type(e).__name__) from e

        if response.status_code >= 300:
            raise DeliveryException(
                f"Webhook returned HTTP {response.status_code}",
                {"status_code": response.status_code}
            )

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


def build_sla_job(
    run: Callable[[], Awaitable[RunSummary]],
    on_summary: Optional[Callable[[RunSummary], Awaitable[None]]] = None
) -> Callable[[], Awaitable[RunSummary]]:
    """
    Wrap a batch run as a scheduler job.

    Logs the summary and hands it to `on_summary`; a fatal run error is
    logged and re-raised so the scheduler records the failed execution.
    """

    async def sla_notification_job() -> RunSummary:
        try:
            summary = await run()
        except Exception as e:
            logger.exception("SLA notification run failed", extra={"error": str(e)})
            raise

        logger.info("SLA notification job completed", extra=summary.to_dict())
        if on_summary is not None:
            try:
                await on_summary(summary)
            except Exception as e:
                logger.warning("Run summary export failed", extra={"error": str(e)})
        return summary

    return sla_notification_job


class SLAScheduler:
    """
    Wrapper for APScheduler for periodic SLA notification runs.

    Manages the lifecycle of the scheduler and jobs.
    """

    def __init__(self, interval_seconds: int = 3600):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("SLA scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="work_item_update_sla",
            name="Work Item Update SLA Notifications",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self._scheduler.start()
        self._running = True

        logger.info(
            "SLA scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("SLA scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
