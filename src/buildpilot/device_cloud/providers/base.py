"""Uniform contract every device cloud vendor adapter implements."""

from abc import ABC, abstractmethod
from typing import List

from ..device_matrix import DEVICE_MATRICES
from ..models import (
    DeviceArtifact,
    DeviceSpec,
    DeviceTestResult,
    DeviceTier,
    Platform,
    Provider,
    TestRunConfig,
    TestRunStatus,
)


class ProviderAdapter(ABC):
    """Translates the seven-operation test contract into vendor API calls.

    The orchestrator only ever talks to this interface; vendor identity is
    resolved once, by the provider registry.
    """

    name: Provider

    @abstractmethod
    async def upload_app(self, app_path: str, platform: Platform) -> str:
        """Upload an app build.

        Args:
            app_path: Local path or URL of the platform-specific build
            platform: Platform the build targets

        Returns:
            Provider handle of the uploaded app
        """

    @abstractmethod
    async def upload_tests(self, test_path: str) -> str:
        """Upload the test bundle and return its provider handle."""

    @abstractmethod
    async def start_test_run(self, config: TestRunConfig) -> str:
        """Start one run covering every device in ``config`` and return the run handle."""

    @abstractmethod
    async def get_test_status(self, run_id: str) -> TestRunStatus:
        """Poll the run."""

    @abstractmethod
    async def get_test_results(self, run_id: str) -> List[DeviceTestResult]:
        """Per-device results of the run (may be partial for unfinished runs)."""

    @abstractmethod
    async def get_artifacts(self, run_id: str, device_id: str) -> List[DeviceArtifact]:
        """Artifacts recorded on one device of the run."""

    @abstractmethod
    async def cancel_run(self, run_id: str) -> None:
        """Stop the run on the provider side."""

    async def list_devices(self) -> List[DeviceSpec]:
        """Devices this provider can run on."""
        return list(DEVICE_MATRICES[DeviceTier.COMPREHENSIVE])

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
