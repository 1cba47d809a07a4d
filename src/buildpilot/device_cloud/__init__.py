"""Device cloud testing: provider adapters, device matrices and session orchestration.

Quick Start:
    >>> from buildpilot.device_cloud import DeviceCloudOrchestrator, DeviceTestConfig
    >>> orchestrator = DeviceCloudOrchestrator()
    >>> session = await orchestrator.start_test_session(
    ...     project_id="p1", build_id="b1", app_path="app.apk", test_path="flows.zip",
    ...     config=DeviceTestConfig(tier="minimal"),
    ... )
"""

from .device_matrix import DEVICE_MATRICES, app_path_for_platform, get_recommended_devices
from .models import (
    CaseStatus,
    DeviceArtifact,
    DeviceResultStatus,
    DeviceSpec,
    DeviceTestConfig,
    DeviceTestResult,
    DeviceTestSession,
    DeviceTestSummary,
    DeviceTier,
    FormFactor,
    Platform,
    Provider,
    RunState,
    SessionStatus,
    SuiteType,
    TestCaseResult,
    TestRunConfig,
    TestRunStatus,
)
from .orchestrator import DeviceCloudOrchestrator
from .providers import (
    BrowserStackProvider,
    LocalDeviceProvider,
    ProviderAdapter,
    ProviderRegistry,
)

__all__ = [
    "DeviceCloudOrchestrator",
    "ProviderAdapter",
    "ProviderRegistry",
    "BrowserStackProvider",
    "LocalDeviceProvider",
    "DEVICE_MATRICES",
    "get_recommended_devices",
    "app_path_for_platform",
    "Provider",
    "Platform",
    "FormFactor",
    "DeviceTier",
    "SuiteType",
    "CaseStatus",
    "DeviceResultStatus",
    "SessionStatus",
    "RunState",
    "DeviceSpec",
    "DeviceArtifact",
    "TestCaseResult",
    "DeviceTestResult",
    "DeviceTestSummary",
    "DeviceTestConfig",
    "DeviceTestSession",
    "TestRunConfig",
    "TestRunStatus",
]
