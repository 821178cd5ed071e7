"""Environment-driven queue settings."""

import pytest

from agentcue.config import QueueSettings, build_queue
from agentcue.store import HttpTaskStore, MemoryTaskStore


class TestQueueSettings:
    """Reading AGENTCUE_* variables."""

    def test_defaults(self):
        settings = QueueSettings.from_env({})
        assert settings == QueueSettings()
        assert settings.build_task_store() is None

    def test_reads_environment(self):
        settings = QueueSettings.from_env({
            "AGENTCUE_DB_PATH": "/tmp/jobs.db",
            "AGENTCUE_CONCURRENCY": "8",
            "AGENTCUE_MAX_ATTEMPTS": "5",
            "AGENTCUE_BACKOFF_TYPE": "fixed",
            "AGENTCUE_BACKOFF_MS": "500",
            "AGENTCUE_STALL_INTERVAL_MS": "10000",
        })
        assert settings.db_path == "/tmp/jobs.db"
        assert settings.concurrency == 8
        assert settings.max_attempts == 5
        assert settings.backoff_type == "fixed"
        assert settings.backoff_ms == 500
        assert settings.stall_interval_ms == 10_000

    def test_refresh_interval(self):
        assert QueueSettings.from_env({"AGENTCUE_REFRESH_INTERVAL": "2.5"}).refresh_interval == 2.5
        with pytest.raises(ValueError, match="AGENTCUE_REFRESH_INTERVAL must be a number"):
            QueueSettings.from_env({"AGENTCUE_REFRESH_INTERVAL": "soon"})

    def test_empty_values_fall_back(self):
        assert QueueSettings.from_env({"AGENTCUE_CONCURRENCY": ""}).concurrency == 2

    def test_bad_number(self):
        with pytest.raises(ValueError, match="AGENTCUE_CONCURRENCY must be an integer"):
            QueueSettings.from_env({"AGENTCUE_CONCURRENCY": "lots"})

    async def test_http_task_store(self):
        settings = QueueSettings.from_env({
            "AGENTCUE_TASK_STORE_URL": "https://tasks.example.com/",
            "AGENTCUE_TASK_STORE_SECRET": "s3cret",
        })
        store = settings.build_task_store()
        assert isinstance(store, HttpTaskStore)
        assert store.base_url == "https://tasks.example.com"
        await store.aclose()


class TestBuildQueue:
    """Wiring a queue from settings."""

    async def test_settings_applied(self):
        store = MemoryTaskStore()
        queue = build_queue(
            {"AGENTCUE_DB_PATH": ":memory:", "AGENTCUE_CONCURRENCY": "3", "AGENTCUE_BACKOFF_TYPE": "fixed"},
            task_store=store,
        )

        assert queue.concurrency == 3
        assert queue.backoff.type == "fixed"
        assert queue.monitor.refresh_interval == 10.0
        assert queue.reporter.store is store
        await queue.close()

    def test_invalid_backoff_type(self):
        with pytest.raises(ValueError, match="Unknown backoff type"):
            build_queue({"AGENTCUE_DB_PATH": ":memory:", "AGENTCUE_BACKOFF_TYPE": "linear"})
