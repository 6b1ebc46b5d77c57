"""
Shared infrastructure tests: JSON log formatting and keyed locks.
"""

import asyncio
import json
import logging

import pytest

from src.shared.infrastructure.locks import KeyedLock
from src.shared.infrastructure.logging import CustomJsonFormatter, get_context_logger


def format_record(**extra) -> dict:
    formatter = CustomJsonFormatter("%(name)s %(levelname)s %(message)s", environment="test")
    record = logging.makeLogRecord({
        "name": "src.sla",
        "levelname": "INFO",
        "levelno": logging.INFO,
        "msg": "Delivered message",
        **extra,
    })
    return json.loads(formatter.format(record))


class TestCustomJsonFormatter:

    def test_adds_timestamp_and_environment(self):
        data = format_record(correlation_id="run-1")

        assert data["message"] == "Delivered message"
        assert data["environment"] == "test"
        assert data["correlation_id"] == "run-1"
        assert data["timestamp"]

    def test_redacts_secrets(self):
        data = format_record(
            webhook_url="https://chat.example.com/hooks/secret",
            azure_devops_pat="abc",
            access_token="xyz",
            api_key="k",
        )

        assert data["webhook_url"] == "***REDACTED***"
        assert data["azure_devops_pat"] == "***REDACTED***"
        assert data["access_token"] == "***REDACTED***"
        assert data["api_key"] == "***REDACTED***"

    def test_keeps_ordinary_fields(self):
        data = format_record(area_path="Proj\\Web", subscriber_id="29:abc", failure_count=5)

        assert data["area_path"] == "Proj\\Web"
        assert data["subscriber_id"] == "29:abc"
        assert data["failure_count"] == 5


def test_context_logger_merges_extra(caplog):
    logger = get_context_logger("src.tests", "run-42")

    with caplog.at_level(logging.INFO, logger="src.tests"):
        logger.info("Processing", extra={"subscriber_id": "A"})

    [record] = caplog.records
    assert record.correlation_id == "run-42"
    assert record.subscriber_id == "A"


class TestKeyedLock:

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        locks = KeyedLock()
        inside = asyncio.Event()
        release = asyncio.Event()

        async def first():
            async with locks.hold("A"):
                inside.set()
                await release.wait()

        async def second():
            await inside.wait()
            async with locks.hold("B"):
                release.set()

        await asyncio.wait_for(asyncio.gather(first(), second()), timeout=1)

    @pytest.mark.asyncio
    async def test_idle_locks_are_discarded(self):
        locks = KeyedLock()

        async with locks.hold("A"):
            assert len(locks) == 1

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        locks = KeyedLock()

        with pytest.raises(RuntimeError):
            async with locks.hold("A"):
                raise RuntimeError("boom")

        async with locks.hold("A"):
            pass
        assert len(locks) == 0
