"""Device cloud test models (Pydantic-based)."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Provider(str, Enum):
    """Supported device cloud vendors."""

    AWS_DEVICE_FARM = "aws-device-farm"
    BROWSERSTACK = "browserstack"
    FIREBASE_TEST_LAB = "firebase-test-lab"
    MAESTRO_CLOUD = "maestro-cloud"
    SAUCE_LABS = "sauce-labs"
    LAMBDATEST = "lambdatest"
    LOCAL = "local"


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class FormFactor(str, Enum):
    PHONE = "phone"
    TABLET = "tablet"


class DeviceTier(str, Enum):
    """Built-in device matrix sizes."""

    MINIMAL = "minimal"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class SuiteType(str, Enum):
    """Test framework of the uploaded test bundle."""

    MAESTRO = "maestro"
    APPIUM = "appium"
    XCUITEST = "xcuitest"
    ESPRESSO = "espresso"
    ROBO = "robo"


class CaseStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class DeviceResultStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"


class ArtifactType(str, Enum):
    SCREENSHOT = "screenshot"
    VIDEO = "video"
    LOG = "log"
    REPORT = "report"


class SessionStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunState(str, Enum):
    """Provider-side run states reported while polling."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceSpec(BaseModel):
    """A target device. Pure value: equal specs are the same device."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    platform: Platform
    name: str
    os_version: str
    form_factor: FormFactor = FormFactor.PHONE

    @property
    def label(self) -> str:
        """``<name>-<os version>``, the form most device clouds accept."""
        return f"{self.name}-{self.os_version}"


class TestCaseResult(BaseModel):
    """Outcome of one test case (one flow) on one device."""

    __test__: ClassVar[bool] = False

    name: str
    status: CaseStatus
    duration: float = 0.0
    error: Optional[str] = None


class DeviceArtifact(BaseModel):
    """A file produced on a device (video, log, screenshot)."""

    type: ArtifactType
    name: str
    url: str
    size: Optional[int] = None


class DeviceTestResult(BaseModel):
    """Everything that happened on one device during a run."""

    device: DeviceSpec
    device_id: Optional[str] = None
    status: DeviceResultStatus
    tests: List[TestCaseResult] = Field(default_factory=list)
    duration: float = 0.0
    artifacts: List[DeviceArtifact] = Field(default_factory=list)
    error: Optional[str] = None


class DeviceTestSummary(BaseModel):
    """Aggregate counts for a session.

    ``passed_devices + failed_devices`` always equals the number of results
    the counts were computed from; ``total_devices`` is the requested count.
    """

    total_devices: int = 0
    passed_devices: int = 0
    failed_devices: int = 0
    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    duration: float = 0.0

    @classmethod
    def from_results(
        cls, results: Iterable[DeviceTestResult], total_devices: Optional[int] = None
    ) -> "DeviceTestSummary":
        results = list(results)
        summary = cls(total_devices=len(results) if total_devices is None else total_devices)
        for result in results:
            if result.status == DeviceResultStatus.PASSED:
                summary.passed_devices += 1
            else:
                summary.failed_devices += 1

            summary.total_tests += len(result.tests)
            summary.passed_tests += sum(1 for t in result.tests if t.status == CaseStatus.PASSED)
            summary.failed_tests += sum(1 for t in result.tests if t.status == CaseStatus.FAILED)
            summary.duration += result.duration
        return summary


class DeviceTestConfig(BaseModel):
    """Options for one test session. Unset values fall back to orchestrator defaults."""

    model_config = ConfigDict(extra="forbid")

    provider: Optional[Provider] = None
    devices: Optional[List[DeviceSpec]] = None
    tier: DeviceTier = DeviceTier.MINIMAL
    test_type: SuiteType = SuiteType.MAESTRO
    timeout: Optional[float] = Field(default=None, gt=0)
    poll_interval: Optional[float] = Field(default=None, gt=0)
    parallel: bool = True


class DeviceTestSession(BaseModel):
    """The orchestrator's record of one test run across a device matrix."""

    id: str
    provider: Provider
    project_id: str
    build_id: str
    status: SessionStatus = SessionStatus.QUEUED
    devices: List[DeviceSpec] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    results: List[DeviceTestResult] = Field(default_factory=list)
    summary: DeviceTestSummary = Field(default_factory=DeviceTestSummary)
    run_id: Optional[str] = None
    progress: Optional[float] = None
    error: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.completed_at is not None


class TestRunConfig(BaseModel):
    """What an adapter needs to start a provider-side run."""

    __test__: ClassVar[bool] = False

    app_ids: Dict[Platform, str]
    test_id: Optional[str] = None
    devices: List[DeviceSpec]
    test_type: SuiteType = SuiteType.MAESTRO
    timeout: float = 600.0
    parallel: bool = True
    project: Optional[str] = None


class TestRunStatus(BaseModel):
    """One poll of a provider-side run."""

    __test__: ClassVar[bool] = False

    status: RunState
    progress: Optional[float] = None
    current_device: Optional[str] = None
    started_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    message: Optional[str] = None
