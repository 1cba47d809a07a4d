"""BrowserStack App Automate provider (Maestro flows).

API flow:
1. POST /app                  upload an app build        -> app_url (bs://...)
2. POST /test-suite           upload the zipped flows    -> test_suite_url
3. POST /{platform}/build     one build per platform     -> build_id
4. GET  /builds/{id}          build + per-device sessions
5. GET  /builds/{id}/sessions/{session_id}   test cases and artifacts
6. POST /builds/{id}/stop

A run spanning iOS and Android devices becomes two builds. The run handle
encodes both (``ios:<build_id>,android:<build_id>``) so the adapter keeps no
per-run state.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ...exceptions import NetworkError, ProviderAPIError, ValidationError
from ..device_matrix import guess_form_factor
from ..models import (
    ArtifactType,
    CaseStatus,
    DeviceArtifact,
    DeviceResultStatus,
    DeviceSpec,
    DeviceTestResult,
    Platform,
    Provider,
    RunState,
    TestCaseResult,
    TestRunConfig,
    TestRunStatus,
)
from .base import ProviderAdapter

logger = logging.getLogger(__name__)

BASE_URL = "https://api-cloud.browserstack.com/app-automate/maestro/v2"
DEVICES_URL = "https://api-cloud.browserstack.com/app-automate/devices.json"

# Build/session states reported by BrowserStack
_PENDING_STATES = {"queued", "running"}
_RUN_STATE_MAP = {
    "passed": RunState.COMPLETED,
    "failed": RunState.COMPLETED,
    "error": RunState.FAILED,
    "timedout": RunState.FAILED,
    "stopped": RunState.CANCELLED,
}
_DEVICE_STATUS_MAP = {
    "passed": DeviceResultStatus.PASSED,
    "failed": DeviceResultStatus.FAILED,
    "error": DeviceResultStatus.ERROR,
    "timedout": DeviceResultStatus.ERROR,
    "stopped": DeviceResultStatus.SKIPPED,
    "skipped": DeviceResultStatus.SKIPPED,
}
_ARTIFACT_KEYS = {
    "video_url": ArtifactType.VIDEO,
    "device_logs": ArtifactType.LOG,
    "maestro_log": ArtifactType.LOG,
    "network_logs": ArtifactType.LOG,
    "report_url": ArtifactType.REPORT,
}


def encode_run_id(builds: Dict[Platform, str]) -> str:
    return ",".join(f"{platform.value}:{build_id}" for platform, build_id in builds.items())


def decode_run_id(run_id: str) -> Dict[Platform, str]:
    """Inverse of ``encode_run_id``.

    Raises:
        ValidationError: If the handle was not produced by this adapter
    """
    builds: Dict[Platform, str] = {}
    for part in run_id.split(","):
        platform, sep, build_id = part.partition(":")
        if not sep or not build_id:
            raise ValidationError(f"Malformed BrowserStack run id: {run_id}")
        try:
            builds[Platform(platform)] = build_id
        except ValueError:
            raise ValidationError(f"Malformed BrowserStack run id: {run_id}")
    return builds


def _split_device_id(device_id: str) -> Tuple[str, str]:
    build_id, sep, session_id = device_id.partition(":")
    if not sep or not session_id:
        raise ValidationError(f"Malformed BrowserStack device id: {device_id}")
    return build_id, session_id


class BrowserStackProvider(ProviderAdapter):
    """Runs Maestro flows on BrowserStack real devices.

    Example:
        provider = BrowserStackProvider(username="me", access_key="key")
        app = await provider.upload_app("build/app.apk", Platform.ANDROID)
        ...
        await provider.aclose()
    """

    name = Provider.BROWSERSTACK

    def __init__(
        self,
        username: str,
        access_key: str,
        project: str = "buildpilot",
        timeout: float = 60.0,
        base_url: str = BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the adapter.

        Args:
            username: BrowserStack username
            access_key: BrowserStack access key
            project: Project name builds are grouped under in the dashboard
            timeout: HTTP timeout in seconds
            base_url: API root (overridable for testing)
            client: Preconfigured HTTP client (the adapter then does not own it)

        Raises:
            ValidationError: If credentials are missing
        """
        if not username or not access_key:
            raise ValidationError("BrowserStack username and access key are required")

        self.username = username
        self.project = project
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(auth=(username, access_key), timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        return await self._request_url(method, f"{self.base_url}{path}", **kwargs)

    async def _request_url(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await getattr(self._client, method)(url, **kwargs)
        except httpx.TransportError as e:
            raise NetworkError(f"BrowserStack request to {url} failed: {e}") from e

        if response.status_code >= 400:
            data = self._safe_json(response)
            detail = data.get("message") or data.get("error") or ""
            raise ProviderAPIError(
                f"BrowserStack API error: {response.status_code} {detail}".strip(),
                provider=self.name.value,
                status_code=response.status_code,
                response_data=data,
            )
        return self._safe_json(response)

    @staticmethod
    def _safe_json(response: Any) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}

    async def _upload(self, path: str, locator: str, result_key: str) -> str:
        if locator.startswith("bs://"):
            return locator

        if locator.startswith(("http://", "https://")):
            data = await self._request("post", path, data={"url": locator})
        else:
            file_path = Path(locator)
            if not file_path.is_file():
                raise ValidationError(f"File not found: {locator}")
            with file_path.open("rb") as fh:
                data = await self._request("post", path, files={"file": (file_path.name, fh)})

        handle = data.get(result_key)
        if not handle:
            raise ProviderAPIError(
                f"BrowserStack upload response missing {result_key}",
                provider=self.name.value,
                status_code=200,
                response_data=data,
            )
        return handle

    async def upload_app(self, app_path: str, platform: Platform) -> str:
        logger.info(f"[BrowserStack] Uploading {Platform(platform).value} app: {app_path}")
        app_url = await self._upload("/app", app_path, "app_url")
        logger.info(f"[BrowserStack] App uploaded: {app_url}")
        return app_url

    async def upload_tests(self, test_path: str) -> str:
        logger.info(f"[BrowserStack] Uploading test suite: {test_path}")
        return await self._upload("/test-suite", test_path, "test_suite_url")

    async def start_test_run(self, config: TestRunConfig) -> str:
        if not config.test_id:
            raise ValidationError("BrowserStack Maestro runs require an uploaded test suite")

        builds: Dict[Platform, str] = {}
        try:
            for platform in (Platform.IOS, Platform.ANDROID):
                devices = [device for device in config.devices if device.platform == platform]
                if not devices:
                    continue
                app_id = config.app_ids.get(platform)
                if not app_id:
                    raise ValidationError(f"No {platform.value} app uploaded for {len(devices)} devices")
                builds[platform] = await self._start_build(platform, app_id, devices, config)
        except Exception:
            await self._stop_builds(builds)
            raise

        if not builds:
            raise ValidationError("No devices to run on")
        return encode_run_id(builds)

    async def _start_build(
        self, platform: Platform, app_id: str, devices: List[DeviceSpec], config: TestRunConfig
    ) -> str:
        body = {
            "app": app_id,
            "testSuite": config.test_id,
            "devices": [device.label for device in devices],
            "project": config.project or self.project,
        }
        data = await self._request("post", f"/{platform.value}/build", json=body)
        build_id = data.get("build_id")
        if not build_id:
            raise ProviderAPIError(
                "BrowserStack build response missing build_id",
                provider=self.name.value,
                status_code=200,
                response_data=data,
            )
        logger.info(f"[BrowserStack] Started {platform.value} build {build_id} on {len(devices)} devices")
        return build_id

    async def _stop_builds(self, builds: Dict[Platform, str]) -> None:
        """Stop builds of a run that could not be started completely."""
        for platform, build_id in builds.items():
            logger.warning(f"[BrowserStack] Stopping orphaned {platform.value} build {build_id}")
            try:
                await self._request("post", f"/builds/{build_id}/stop")
            except Exception as e:
                logger.error(f"[BrowserStack] Failed to stop build {build_id}: {e}")

    async def _get_build(self, build_id: str) -> Dict[str, Any]:
        return await self._request("get", f"/builds/{build_id}")

    async def get_test_status(self, run_id: str) -> TestRunStatus:
        states: List[str] = []
        sessions_total = 0
        sessions_done = 0
        for build_id in decode_run_id(run_id).values():
            build = await self._get_build(build_id)
            states.append(str(build.get("status", "queued")).lower())
            for device in build.get("devices", []):
                for session in device.get("sessions", []):
                    sessions_total += 1
                    if str(session.get("status", "")).lower() not in _PENDING_STATES:
                        sessions_done += 1

        progress = (100.0 * sessions_done / sessions_total) if sessions_total else None

        if any(state in _PENDING_STATES for state in states):
            overall = RunState.QUEUED if all(state == "queued" for state in states) else RunState.RUNNING
            return TestRunStatus(status=overall, progress=progress)

        mapped = [_RUN_STATE_MAP.get(state, RunState.FAILED) for state in states]
        if RunState.CANCELLED in mapped:
            overall = RunState.CANCELLED
        elif RunState.FAILED in mapped:
            overall = RunState.FAILED
        else:
            overall = RunState.COMPLETED
        return TestRunStatus(status=overall, progress=100.0, message=",".join(states))

    async def get_test_results(self, run_id: str) -> List[DeviceTestResult]:
        results: List[DeviceTestResult] = []
        for platform, build_id in decode_run_id(run_id).items():
            build = await self._get_build(build_id)
            for device in build.get("devices", []):
                name = device.get("device", "unknown")
                spec = DeviceSpec(
                    platform=platform,
                    name=name,
                    os_version=str(device.get("os_version", "")),
                    form_factor=guess_form_factor(name),
                )
                for session in device.get("sessions", []):
                    session_id = session.get("id")
                    if not session_id:
                        continue
                    details = await self._request("get", f"/builds/{build_id}/sessions/{session_id}")
                    results.append(self._parse_session(spec, build_id, session, details))
        return results

    def _parse_session(
        self, device: DeviceSpec, build_id: str, session: Dict[str, Any], details: Dict[str, Any]
    ) -> DeviceTestResult:
        raw_status = str(details.get("status") or session.get("status") or "error").lower()
        tests = [
            TestCaseResult(
                name=case.get("name", "unnamed"),
                status=self._case_status(case.get("status")),
                duration=float(case.get("duration") or 0.0),
                error=case.get("reason") or case.get("error"),
            )
            for group in (details.get("testcases") or {}).get("data", [])
            for case in group.get("testcases", [])
        ]
        status = _DEVICE_STATUS_MAP.get(raw_status, DeviceResultStatus.ERROR)
        return DeviceTestResult(
            device=device,
            device_id=f"{build_id}:{session['id']}",
            status=status,
            tests=tests,
            duration=float(details.get("duration") or session.get("duration") or 0.0),
            artifacts=self._parse_artifacts(details),
            error=details.get("error_message") if status == DeviceResultStatus.ERROR else None,
        )

    @staticmethod
    def _case_status(raw: Optional[str]) -> CaseStatus:
        raw = (raw or "").lower()
        if raw == "passed":
            return CaseStatus.PASSED
        if raw in ("skipped", "ignored"):
            return CaseStatus.SKIPPED
        return CaseStatus.FAILED

    @staticmethod
    def _parse_artifacts(details: Dict[str, Any]) -> List[DeviceArtifact]:
        artifacts = [
            DeviceArtifact(type=artifact_type, name=key, url=details[key])
            for key, artifact_type in _ARTIFACT_KEYS.items()
            if isinstance(details.get(key), str) and details[key]
        ]
        for index, url in enumerate(details.get("screenshots") or []):
            artifacts.append(DeviceArtifact(type=ArtifactType.SCREENSHOT, name=f"screenshot_{index + 1}", url=url))
        return artifacts

    async def get_artifacts(self, run_id: str, device_id: str) -> List[DeviceArtifact]:
        build_id, session_id = _split_device_id(device_id)
        if build_id not in decode_run_id(run_id).values():
            raise ValidationError(f"Device {device_id} does not belong to run {run_id}")
        details = await self._request("get", f"/builds/{build_id}/sessions/{session_id}")
        return self._parse_artifacts(details)

    async def cancel_run(self, run_id: str) -> None:
        for build_id in decode_run_id(run_id).values():
            logger.info(f"[BrowserStack] Stopping build {build_id}")
            await self._request("post", f"/builds/{build_id}/stop")

    async def list_devices(self) -> List[DeviceSpec]:
        """Devices currently offered for Maestro runs."""
        data = await self._request_url("get", DEVICES_URL)
        entries = data.get("data", [])
        devices = []
        for entry in entries:
            try:
                platform = Platform(str(entry.get("os", "")).lower())
            except ValueError:
                continue
            name = entry.get("device", "unknown")
            devices.append(
                DeviceSpec(
                    platform=platform,
                    name=name,
                    os_version=str(entry.get("os_version", "")),
                    form_factor=guess_form_factor(name),
                )
            )
        return devices
