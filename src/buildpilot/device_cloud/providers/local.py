"""Local simulator/emulator provider."""

import logging
import uuid
from typing import List

from ..models import (
    DeviceArtifact,
    DeviceTestResult,
    Platform,
    Provider,
    RunState,
    TestRunConfig,
    TestRunStatus,
)
from .base import ProviderAdapter

logger = logging.getLogger(__name__)


class LocalDeviceProvider(ProviderAdapter):
    """No-op adapter used when no device cloud is configured.

    Locators are passed through unchanged and every run reports completed
    immediately without per-device results.
    """

    name = Provider.LOCAL

    async def upload_app(self, app_path: str, platform: Platform) -> str:
        logger.info(f"[Local] Using local {Platform(platform).value} app: {app_path}")
        return app_path

    async def upload_tests(self, test_path: str) -> str:
        logger.info(f"[Local] Using local tests: {test_path}")
        return test_path

    async def start_test_run(self, config: TestRunConfig) -> str:
        run_id = f"local-run-{uuid.uuid4().hex[:12]}"
        logger.info(f"[Local] Starting local run {run_id} on {len(config.devices)} devices")
        return run_id

    async def get_test_status(self, run_id: str) -> TestRunStatus:
        return TestRunStatus(status=RunState.COMPLETED, progress=100.0)

    async def get_test_results(self, run_id: str) -> List[DeviceTestResult]:
        return []

    async def get_artifacts(self, run_id: str, device_id: str) -> List[DeviceArtifact]:
        return []

    async def cancel_run(self, run_id: str) -> None:
        logger.info(f"[Local] Cancelling run: {run_id}")
