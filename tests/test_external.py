"""
External integration tests: Azure DevOps client, webhook transport, YAML
config manager, scheduler job wrapper and Grafana exporter.

HTTP is stubbed with httpx.MockTransport.
"""

import base64
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from src.core import ConfigurationException, DeliveryException, WorkTrackingException
from src.shared.infrastructure.grafana import GrafanaOTLPExporter
from src.sla.domain import RunSummary
from src.sla.infrastructure.external import (
    AzureDevOpsWorkItemClient,
    SLAConfigManager,
    WebhookChatTransport,
    build_assigned_items_wiql,
    build_sla_job,
)

ORG_URL = "https://dev.azure.com/contoso"


def azure_client(handler) -> AzureDevOpsWorkItemClient:
    return AzureDevOpsWorkItemClient(
        org_url=ORG_URL + "/",
        project="Platform",
        personal_access_token="secret-pat",
        timeout_seconds=5,
        transport=httpx.MockTransport(handler),
    )


class TestWiqlBuilder:

    def test_full_query(self):
        query = build_assigned_items_wiql(
            "dev@example.com",
            ["Active", "New"],
            iteration_path="Platform\\Sprint 7",
            area_paths=["Platform\\Web", "Platform\\Api"],
            work_item_types=["Bug", "Task"],
        )

        assert query.startswith("SELECT [System.Id] FROM WorkItems WHERE [System.TeamProject] = @project")
        assert "[System.AssignedTo] = 'dev@example.com'" in query
        assert "[System.State] IN ('Active', 'New')" in query
        assert "[System.WorkItemType] IN ('Bug', 'Task')" in query
        assert "[System.IterationPath] UNDER 'Platform\\Sprint 7'" in query
        assert "([System.AreaPath] UNDER 'Platform\\Web' OR [System.AreaPath] UNDER 'Platform\\Api')" in query
        assert query.endswith("ORDER BY [System.ChangedDate] ASC")

    def test_optional_filters_omitted(self):
        query = build_assigned_items_wiql("dev@example.com", ["Active"])

        assert "IterationPath" not in query
        assert "AreaPath" not in query
        assert "WorkItemType" not in query

    def test_quotes_are_escaped(self):
        query = build_assigned_items_wiql("o'brien@example.com", ["Active"])
        assert "[System.AssignedTo] = 'o''brien@example.com'" in query


class TestAzureDevOpsWorkItemClient:

    @pytest.mark.asyncio
    async def test_query_then_batch_fetch(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            body = json.loads(request.content)
            if request.url.path.endswith("/_apis/wit/wiql"):
                return httpx.Response(200, json={"workItems": [{"id": i} for i in range(1, 251)]})
            return httpx.Response(200, json={"value": [{"id": i, "fields": {}} for i in body["ids"]]})

        client = azure_client(handler)
        result = await client.get_work_items_by_assigned_user(
            "dev@example.com", ["Active"], ["System.Id", "System.Title"]
        )
        await client.close()

        assert result["count"] == 250
        assert [r.url.path for r in requests] == [
            "/contoso/Platform/_apis/wit/wiql",
            "/contoso/Platform/_apis/wit/workitemsbatch",
            "/contoso/Platform/_apis/wit/workitemsbatch",
        ]
        batches = [json.loads(r.content) for r in requests[1:]]
        assert [len(b["ids"]) for b in batches] == [200, 50]
        assert batches[0]["fields"] == ["System.Id", "System.Title"]
        assert all(r.url.params["api-version"] == "7.1" for r in requests)

    @pytest.mark.asyncio
    async def test_uses_basic_auth_with_pat(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"workItems": []})

        client = azure_client(handler)
        result = await client.get_work_items_by_assigned_user("dev@example.com", ["Active"], ["System.Id"])

        assert result == {"count": 0, "value": []}
        assert seen["auth"] == "Basic " + base64.b64encode(b":secret-pat").decode()

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        client = azure_client(lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(WorkTrackingException) as exc_info:
            await client.get_work_items_by_assigned_user("dev@example.com", ["Active"], ["System.Id"])

        assert "HTTP 500" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connection_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = azure_client(handler)

        with pytest.raises(WorkTrackingException):
            await client.get_work_items_by_assigned_user("dev@example.com", ["Active"], ["System.Id"])

    @pytest.mark.asyncio
    async def test_current_iteration(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/contoso/Platform/Web Team/_apis/work/teamsettings/iterations"
            assert request.url.params["$timeframe"] == "current"
            return httpx.Response(200, json={"value": [{"path": "Platform\\Sprint 7"}]})

        client = azure_client(handler)

        assert await client.get_current_iteration_path("Web Team") == "Platform\\Sprint 7"

    @pytest.mark.asyncio
    async def test_no_current_iteration(self):
        client = azure_client(lambda request: httpx.Response(200, json={"value": []}))
        assert await client.get_current_iteration_path("Web Team") is None


class TestWebhookChatTransport:

    @pytest.mark.asyncio
    async def test_posts_text_and_channel(self):
        posted = []

        def handler(request: httpx.Request) -> httpx.Response:
            posted.append((str(request.url), json.loads(request.content)))
            return httpx.Response(200)

        transport = WebhookChatTransport(transport=httpx.MockTransport(handler))
        await transport.send({"webhook_url": "https://chat.example.com/hooks/a", "channel": "#dev"}, "hello")
        await transport.close()

        assert posted == [("https://chat.example.com/hooks/a", {"text": "hello", "channel": "#dev"})]

    @pytest.mark.asyncio
    async def test_missing_webhook_url(self):
        transport = WebhookChatTransport(transport=httpx.MockTransport(lambda r: httpx.Response(200)))

        with pytest.raises(DeliveryException):
            await transport.send({"channel": "#dev"}, "hello")

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        transport = WebhookChatTransport(transport=httpx.MockTransport(lambda r: httpx.Response(404)))

        with pytest.raises(DeliveryException) as exc_info:
            await transport.send({"webhook_url": "https://chat.example.com/hooks/a"}, "hello")

        assert exc_info.value.details == {"status_code": 404}


class TestSLAConfigManager:

    def test_missing_file_uses_defaults(self, tmp_path, caplog):
        manager = SLAConfigManager()

        config = manager.load(tmp_path / "missing.yaml")

        assert config.sla_rules == {}
        assert manager.get_config() is config
        assert "using defaults" in caplog.text

    def test_nested_section(self, tmp_path):
        path = tmp_path / "sla.yaml"
        path.write_text(
            "work_item_update_sla:\n"
            "  work_item_base_url: https://example.com/edit/\n"
            "  sla_rules:\n"
            "    Bug: 3\n"
            "    User Story: 7\n"
            "  max_concurrency: 4\n"
        )

        config = SLAConfigManager().load(path)

        assert config.sla_rules == {"Bug": 3, "User Story": 7}
        assert config.work_item_base_url == "https://example.com/edit"
        assert config.max_concurrency == 4

    def test_flat_mapping(self, tmp_path):
        path = tmp_path / "sla.yaml"
        path.write_text("enabled: false\nsla_rules:\n  Task: 5\n")

        config = SLAConfigManager().load(path)

        assert config.enabled is False
        assert config.get_threshold("Task") == 5

    def test_invalid_initial_config_raises(self, tmp_path):
        path = tmp_path / "sla.yaml"
        path.write_text("sla_rules:\n  Bug: -2\n")

        with pytest.raises(ConfigurationException):
            SLAConfigManager().load(path)

    @pytest.mark.parametrize("content", ["- a\n- b\n", "work_item_update_sla:\n"])
    def test_non_mapping_initial_config_raises(self, tmp_path, content):
        path = tmp_path / "sla.yaml"
        path.write_text(content)

        with pytest.raises(ConfigurationException):
            SLAConfigManager().load(path)

    @pytest.mark.parametrize("bad_content", [
        "sla_rules: [unclosed\n",
        "sla_rules:\n  Bug: -1\n",
        "- a\n- b\n",
        "just a string\n",
        "work_item_update_sla:\n",
        "work_item_update_sla: [1, 2]\n",
    ])
    def test_failed_reload_keeps_previous(self, tmp_path, bad_content):
        path = tmp_path / "sla.yaml"
        path.write_text("sla_rules:\n  Bug: 3\n")
        manager = SLAConfigManager()
        manager.load(path)

        path.write_text(bad_content)

        assert manager.reload() is False
        assert manager.config.sla_rules == {"Bug": 3}

    def test_reload_swaps_config(self, tmp_path):
        path = tmp_path / "sla.yaml"
        path.write_text("sla_rules:\n  Bug: 3\n")
        manager = SLAConfigManager()
        first = manager.load(path)

        path.write_text("sla_rules:\n  Bug: 1\n")

        assert manager.reload() is True
        assert manager.get_config().get_threshold("Bug") == 1
        assert first.get_threshold("Bug") == 3

    def test_get_config_before_load(self):
        with pytest.raises(RuntimeError):
            SLAConfigManager().get_config()


class TestSchedulerJob:

    @pytest.mark.asyncio
    async def test_hands_summary_to_callback(self):
        summary = RunSummary(notifications_sent=2)
        on_summary = AsyncMock()
        job = build_sla_job(AsyncMock(return_value=summary), on_summary=on_summary)

        assert await job() is summary
        on_summary.assert_awaited_once_with(summary)

    @pytest.mark.asyncio
    async def test_run_failure_is_reraised(self):
        on_summary = AsyncMock()
        job = build_sla_job(AsyncMock(side_effect=RuntimeError("boom")), on_summary=on_summary)

        with pytest.raises(RuntimeError):
            await job()
        on_summary.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_callback_failure_is_logged_only(self, caplog):
        summary = RunSummary()
        job = build_sla_job(AsyncMock(return_value=summary), on_summary=AsyncMock(side_effect=ValueError("x")))

        assert await job() is summary
        assert "Run summary export failed" in caplog.text


class TestGrafanaExporter:

    @pytest.mark.asyncio
    async def test_disabled_without_credentials(self, monkeypatch):
        monkeypatch.setattr("src.shared.infrastructure.grafana.settings.grafana_api_key", None)
        exporter = GrafanaOTLPExporter(host="https://otlp.example.com", instance_id="123")

        assert exporter.is_enabled() is False
        assert await exporter.export_run_summary(RunSummary()) is False

    @pytest.mark.asyncio
    async def test_exports_run_gauges(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200)

        exporter = GrafanaOTLPExporter(
            host="https://otlp.example.com",
            api_key="key",
            instance_id="123",
            transport=httpx.MockTransport(handler),
        )
        summary = RunSummary(users_processed=4, notifications_sent=2, duration=timedelta(seconds=1.5))

        assert await exporter.export_run_summary(summary, trigger="manual") is True

        assert captured["url"] == "https://otlp.example.com/otlp/v1/metrics"
        assert captured["auth"] == "Basic " + base64.b64encode(b"123:key").decode()
        metrics = captured["body"]["resourceMetrics"][0]["scopeMetrics"][0]["metrics"]
        values = {m["name"]: m["gauge"]["dataPoints"][0]["asInt"] for m in metrics}
        assert values["sla_run_users_processed"] == 4
        assert values["sla_run_notifications_sent"] == 2
        assert values["sla_run_duration_ms"] == 1500
        attributes = metrics[0]["gauge"]["dataPoints"][0]["attributes"]
        assert {"key": "trigger", "value": {"stringValue": "manual"}} in attributes

    @pytest.mark.asyncio
    async def test_rejected_export_returns_false(self):
        exporter = GrafanaOTLPExporter(
            host="https://otlp.example.com/otlp/v1/metrics",
            api_key="key",
            instance_id="123",
            transport=httpx.MockTransport(lambda r: httpx.Response(401, text="unauthorized")),
        )

        assert await exporter.export_run_summary(RunSummary()) is False
