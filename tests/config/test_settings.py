"""Tests for environment-driven settings."""

import os

import pytest
from pydantic import ValidationError

from buildpilot.circuit_breaker_registry import CircuitBreakerRegistry
from buildpilot.config import Settings, get_settings
from buildpilot.device_cloud import DeviceCloudOrchestrator
from buildpilot.jobs import PriorityJobQueue
from buildpilot.worker import PHASE_SEQUENCE, WorkerPool


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Drop any BUILDPILOT_* variables from the developer's environment."""
    for key in list(os.environ):
        if key.startswith("BUILDPILOT_"):
            monkeypatch.delenv(key)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.queue_concurrency == 2
        assert settings.queue_default_max_attempts == 3
        assert settings.queue_job_timeout_seconds == 600.0
        assert settings.generation_breaker_failure_threshold == 3
        assert settings.generation_breaker_reset_timeout_seconds == 60.0
        assert settings.generation_breaker_request_timeout_seconds == 120.0
        assert settings.device_cloud_poll_interval_seconds == 10.0
        assert settings.device_cloud_session_timeout_seconds == 600.0
        assert settings.browserstack_username is None
        assert settings.log_format == "text"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("BUILDPILOT_QUEUE_CONCURRENCY", "4")
        monkeypatch.setenv("BUILDPILOT_DEVICE_CLOUD_POLL_INTERVAL_SECONDS", "2.5")
        monkeypatch.setenv("BUILDPILOT_BROWSERSTACK_USERNAME", "ci-bot")
        monkeypatch.setenv("BUILDPILOT_LOG_FORMAT", "json")

        settings = Settings(_env_file=None)

        assert settings.queue_concurrency == 4
        assert settings.device_cloud_poll_interval_seconds == 2.5
        assert settings.browserstack_username == "ci-bot"
        assert settings.log_format == "json"

    def test_log_level_is_case_insensitive(self, monkeypatch):
        monkeypatch.setenv("BUILDPILOT_LOG_LEVEL", "debug")

        assert Settings(_env_file=None).log_level == "DEBUG"

    @pytest.mark.parametrize(
        "name,value",
        [
            ("BUILDPILOT_QUEUE_CONCURRENCY", "0"),
            ("BUILDPILOT_QUEUE_JOB_TIMEOUT_SECONDS", "-5"),
            ("BUILDPILOT_SAUCE_REGION", "ap-south-1"),
            ("BUILDPILOT_LOG_FORMAT", "xml"),
            ("BUILDPILOT_LOG_LEVEL", "verbose"),
        ],
    )
    def test_invalid_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestFromSettings:
    """Components built from settings."""

    def test_queue_from_settings(self):
        settings = Settings(
            _env_file=None, queue_concurrency=3, queue_job_timeout_seconds=30, queue_retention_seconds=3600
        )

        queue = PriorityJobQueue.from_settings(settings)

        assert queue.concurrency == 3
        assert queue.default_max_attempts == 3
        assert queue.job_timeout == 30
        assert queue.retention == 3600

    def test_worker_pool_from_settings(self):
        settings = Settings(
            _env_file=None,
            generation_breaker_failure_threshold=5,
            generation_breaker_request_timeout_seconds=45,
            retry_base_delay_seconds=0.5,
        )
        queue = PriorityJobQueue.from_settings(settings)

        async def handler(job, ctx):
            return None

        registry = CircuitBreakerRegistry()
        pool = WorkerPool.from_settings(
            settings, queue, {phase.value: handler for phase in PHASE_SEQUENCE}, registry=registry
        )

        assert pool.breaker is registry.get("ai-generation")
        assert pool.breaker.config.failure_threshold == 5
        assert pool.breaker.config.request_timeout == 45
        assert pool.generate_policy.base_delay == 0.5
        assert pool.generate_policy.max_attempts == 3
        assert pool.phase_policy.max_attempts == 2

    def test_orchestrator_from_settings(self):
        settings = Settings(_env_file=None, device_cloud_poll_interval_seconds=1.5)

        orchestrator = DeviceCloudOrchestrator.from_settings(settings)

        assert orchestrator.poll_interval == 1.5
        assert orchestrator.session_timeout == 600.0
        assert orchestrator.registry.names() == ["local"]
