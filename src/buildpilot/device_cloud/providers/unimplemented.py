"""Adapters for vendors whose API integration has not been built yet.

They validate their credentials and satisfy the full adapter contract, but
every operation raises ``ProviderNotImplementedError`` instead of returning
made-up data, so a session pointed at them fails loudly.
"""

import logging
from typing import List, NoReturn, Optional

from ...exceptions import ProviderNotImplementedError, ValidationError
from ..models import DeviceArtifact, DeviceTestResult, Platform, Provider, TestRunConfig, TestRunStatus
from .base import ProviderAdapter

logger = logging.getLogger(__name__)


def _require(provider: Provider, **credentials: Optional[str]) -> None:
    missing = [key for key, value in credentials.items() if not value]
    if missing:
        raise ValidationError(f"{provider.value} requires credentials: {', '.join(missing)}")


class UnimplementedProvider(ProviderAdapter):
    """Contract-complete adapter whose operations are not wired to the vendor."""

    def _not_implemented(self, operation: str) -> NoReturn:
        logger.error(f"[{self.name.value}] {operation} is not implemented")
        raise ProviderNotImplementedError(self.name.value, operation)

    async def upload_app(self, app_path: str, platform: Platform) -> str:
        self._not_implemented("upload_app")

    async def upload_tests(self, test_path: str) -> str:
        self._not_implemented("upload_tests")

    async def start_test_run(self, config: TestRunConfig) -> str:
        self._not_implemented("start_test_run")

    async def get_test_status(self, run_id: str) -> TestRunStatus:
        self._not_implemented("get_test_status")

    async def get_test_results(self, run_id: str) -> List[DeviceTestResult]:
        self._not_implemented("get_test_results")

    async def get_artifacts(self, run_id: str, device_id: str) -> List[DeviceArtifact]:
        self._not_implemented("get_artifacts")

    async def cancel_run(self, run_id: str) -> None:
        self._not_implemented("cancel_run")


class AWSDeviceFarmProvider(UnimplementedProvider):
    """AWS Device Farm (CreateUpload / ScheduleRun / GetRun / ListJobs / StopRun)."""

    name = Provider.AWS_DEVICE_FARM

    def __init__(
        self,
        access_key_id: str,
        secret_access_key: str,
        region: str = "us-west-2",
        project_arn: Optional[str] = None,
    ):
        _require(self.name, access_key_id=access_key_id, secret_access_key=secret_access_key)
        self.access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self.region = region
        self.project_arn = project_arn


class FirebaseTestLabProvider(UnimplementedProvider):
    """Firebase Test Lab (test matrices on Google Cloud Storage uploads)."""

    name = Provider.FIREBASE_TEST_LAB

    def __init__(self, project_id: str, service_account_key: str):
        _require(self.name, project_id=project_id, service_account_key=service_account_key)
        self.project_id = project_id
        self._service_account_key = service_account_key


class MaestroCloudProvider(UnimplementedProvider):
    """Maestro Cloud (app and flows are uploaded together with the run)."""

    name = Provider.MAESTRO_CLOUD
    base_url = "https://api.mobile.dev"

    def __init__(self, api_key: str):
        _require(self.name, api_key=api_key)
        self._api_key = api_key


class SauceLabsProvider(UnimplementedProvider):
    name = Provider.SAUCE_LABS

    def __init__(self, username: str, access_key: str, region: str = "us-west-1"):
        _require(self.name, username=username, access_key=access_key)
        if region not in ("us-west-1", "eu-central-1"):
            raise ValidationError(f"Unsupported Sauce Labs region: {region}")
        self.username = username
        self._access_key = access_key
        self.region = region


class LambdaTestProvider(UnimplementedProvider):
    name = Provider.LAMBDATEST

    def __init__(self, username: str, access_key: str):
        _require(self.name, username=username, access_key=access_key)
        self.username = username
        self._access_key = access_key
