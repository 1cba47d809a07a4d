"""Tests for the BrowserStack App Automate adapter."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import pytest_asyncio

from buildpilot.device_cloud.models import (
    ArtifactType,
    CaseStatus,
    DeviceResultStatus,
    DeviceSpec,
    FormFactor,
    Platform,
    RunState,
    TestRunConfig,
)
from buildpilot.device_cloud.providers.browserstack import (
    BASE_URL,
    DEVICES_URL,
    BrowserStackProvider,
    decode_run_id,
    encode_run_id,
)
from buildpilot.exceptions import NetworkError, ProviderAPIError, ValidationError

IPHONE = DeviceSpec(platform=Platform.IOS, name="iPhone 15", os_version="17.0")
PIXEL = DeviceSpec(platform=Platform.ANDROID, name="Pixel 7", os_version="14")


def _response(status_code=200, data=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = data if data is not None else {}
    return response


@pytest_asyncio.fixture
async def provider():
    provider = BrowserStackProvider(username="user", access_key="key")
    yield provider
    await provider.aclose()


class TestRunIds:
    """Run handle encoding."""

    def test_round_trip(self):
        builds = {Platform.IOS: "b-ios", Platform.ANDROID: "b-android"}
        assert encode_run_id(builds) == "ios:b-ios,android:b-android"
        assert decode_run_id("ios:b-ios,android:b-android") == builds

    @pytest.mark.parametrize("run_id", ["", "b-1", "windows:b-1", "ios:"])
    def test_malformed(self, run_id):
        with pytest.raises(ValidationError):
            decode_run_id(run_id)


class TestBrowserStackProvider:
    """Tests for BrowserStackProvider."""

    def test_requires_credentials(self):
        with pytest.raises(ValidationError):
            BrowserStackProvider(username="", access_key="key")

    @pytest.mark.asyncio
    async def test_upload_app_from_url(self, provider):
        """Test uploading an app by URL."""
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _response(data={"app_url": "bs://app-123"})

            app_url = await provider.upload_app("https://cdn.example.com/app.apk", Platform.ANDROID)

            assert app_url == "bs://app-123"
            assert mock_post.call_args.args[0] == f"{BASE_URL}/app"
            assert mock_post.call_args.kwargs["data"] == {"url": "https://cdn.example.com/app.apk"}

    @pytest.mark.asyncio
    async def test_upload_app_from_file(self, provider, tmp_path):
        app = tmp_path / "app.ipa"
        app.write_bytes(b"binary")

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _response(data={"app_url": "bs://app-ios"})

            app_url = await provider.upload_app(str(app), Platform.IOS)

            assert app_url == "bs://app-ios"
            assert mock_post.call_args.kwargs["files"]["file"][0] == "app.ipa"

    @pytest.mark.asyncio
    async def test_upload_missing_file(self, provider, tmp_path):
        with pytest.raises(ValidationError, match="File not found"):
            await provider.upload_app(str(tmp_path / "missing.apk"), Platform.ANDROID)

    @pytest.mark.asyncio
    async def test_already_uploaded_handle_is_reused(self, provider):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            assert await provider.upload_tests("bs://suite-1") == "bs://suite-1"
            mock_post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_upload_tests(self, provider):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _response(data={"test_suite_url": "bs://suite-9"})

            assert await provider.upload_tests("https://cdn.example.com/flows.zip") == "bs://suite-9"
            assert mock_post.call_args.args[0] == f"{BASE_URL}/test-suite"

    @pytest.mark.asyncio
    async def test_upload_response_without_handle(self, provider):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _response(data={"unexpected": True})

            with pytest.raises(ProviderAPIError, match="app_url"):
                await provider.upload_app("https://cdn.example.com/app.apk", Platform.ANDROID)

    @pytest.mark.asyncio
    async def test_api_error(self, provider):
        """Error responses become ProviderAPIError with the status code."""
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _response(401, {"message": "Unauthorized"})

            with pytest.raises(ProviderAPIError) as exc_info:
                await provider.upload_app("https://cdn.example.com/app.apk", Platform.ANDROID)

            assert exc_info.value.status_code == 401
            assert exc_info.value.is_transient is False
            assert "Unauthorized" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, provider):
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = _response(503, {"error": "maintenance"})

            with pytest.raises(ProviderAPIError) as exc_info:
                await provider.get_test_status("android:b-1")

            assert exc_info.value.is_transient is True

    @pytest.mark.asyncio
    async def test_transport_error_becomes_network_error(self, provider):
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock) as mock_get:
            mock_get.side_effect = httpx.ConnectError("connection refused")

            with pytest.raises(NetworkError):
                await provider.get_test_status("android:b-1")

    @pytest.mark.asyncio
    async def test_start_test_run_creates_one_build_per_platform(self, provider):
        config = TestRunConfig(
            app_ids={Platform.IOS: "bs://ios", Platform.ANDROID: "bs://android"},
            test_id="bs://suite",
            devices=[IPHONE, PIXEL],
            project="p1",
        )

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.side_effect = [
                _response(data={"build_id": "b-ios"}),
                _response(data={"build_id": "b-android"}),
            ]

            run_id = await provider.start_test_run(config)

            assert run_id == "ios:b-ios,android:b-android"
            ios_call, android_call = mock_post.call_args_list
            assert ios_call.args[0] == f"{BASE_URL}/ios/build"
            assert ios_call.kwargs["json"] == {
                "app": "bs://ios",
                "testSuite": "bs://suite",
                "devices": ["iPhone 15-17.0"],
                "project": "p1",
            }
            assert android_call.kwargs["json"]["devices"] == ["Pixel 7-14"]

    @pytest.mark.asyncio
    async def test_failed_start_stops_builds_already_running(self, provider):
        """An Android build failure stops the iOS build started before it."""
        config = TestRunConfig(
            app_ids={Platform.IOS: "bs://ios", Platform.ANDROID: "bs://android"},
            test_id="bs://suite",
            devices=[IPHONE, PIXEL],
        )

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.side_effect = [
                _response(data={"build_id": "b-ios"}),
                _response(503, {"error": "maintenance"}),
                _response(data={"message": "stopped"}),
            ]

            with pytest.raises(ProviderAPIError) as exc_info:
                await provider.start_test_run(config)

            assert exc_info.value.status_code == 503
            assert [c.args[0] for c in mock_post.call_args_list] == [
                f"{BASE_URL}/ios/build",
                f"{BASE_URL}/android/build",
                f"{BASE_URL}/builds/b-ios/stop",
            ]

    @pytest.mark.asyncio
    async def test_failed_stop_does_not_mask_start_error(self, provider):
        config = TestRunConfig(
            app_ids={Platform.IOS: "bs://ios"},
            test_id="bs://suite",
            devices=[IPHONE, PIXEL],
        )

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.side_effect = [
                _response(data={"build_id": "b-ios"}),
                _response(500, {"error": "boom"}),
            ]

            with pytest.raises(ValidationError, match="android"):
                await provider.start_test_run(config)

            assert mock_post.call_args_list[-1].args[0] == f"{BASE_URL}/builds/b-ios/stop"

    @pytest.mark.asyncio
    async def test_start_test_run_requires_app_for_each_platform(self, provider):
        config = TestRunConfig(app_ids={Platform.ANDROID: "bs://android"}, test_id="bs://suite", devices=[IPHONE])
        with pytest.raises(ValidationError):
            await provider.start_test_run(config)

    @pytest.mark.asyncio
    async def test_start_test_run_requires_test_suite(self, provider):
        config = TestRunConfig(app_ids={Platform.ANDROID: "bs://android"}, devices=[PIXEL])
        with pytest.raises(ValidationError):
            await provider.start_test_run(config)

    @pytest.mark.asyncio
    async def test_status_running_with_progress(self, provider):
        build = {
            "status": "running",
            "devices": [
                {"device": "Pixel 7", "sessions": [{"id": "s1", "status": "passed"}]},
                {"device": "Galaxy S23", "sessions": [{"id": "s2", "status": "running"}]},
            ],
        }
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = _response(data=build)

            status = await provider.get_test_status("android:b-1")

            assert status.status == RunState.RUNNING
            assert status.progress == 50.0
            assert mock_get.call_args.args[0] == f"{BASE_URL}/builds/b-1"

    @pytest.mark.asyncio
    async def test_status_all_queued(self, provider):
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = _response(data={"status": "queued"})

            status = await provider.get_test_status("ios:b-1,android:b-2")

            assert status.status == RunState.QUEUED
            assert status.progress is None

    @pytest.mark.parametrize(
        "states,expected",
        [
            (["passed", "failed"], RunState.COMPLETED),
            (["passed", "error"], RunState.FAILED),
            (["timedout", "passed"], RunState.FAILED),
            (["stopped", "passed"], RunState.CANCELLED),
        ],
    )
    @pytest.mark.asyncio
    async def test_terminal_status_mapping(self, provider, states, expected):
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock) as mock_get:
            mock_get.side_effect = [_response(data={"status": state}) for state in states]

            status = await provider.get_test_status("ios:b-1,android:b-2")

            assert status.status == expected
            assert status.progress == 100.0

    @pytest.mark.asyncio
    async def test_get_test_results(self, provider):
        build = {
            "status": "failed",
            "devices": [
                {
                    "device": "Samsung Galaxy Tab S9",
                    "os_version": "14",
                    "sessions": [{"id": "s1", "status": "failed"}],
                }
            ],
        }
        session = {
            "status": "failed",
            "duration": 42,
            "video_url": "https://video/s1.mp4",
            "device_logs": "https://logs/s1.txt",
            "screenshots": ["https://shots/1.png"],
            "testcases": {
                "data": [
                    {
                        "testcases": [
                            {"name": "login", "status": "passed", "duration": 3.5},
                            {"name": "checkout", "status": "failed", "reason": "button missing"},
                        ]
                    }
                ]
            },
        }
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock) as mock_get:
            mock_get.side_effect = [_response(data=build), _response(data=session)]

            results = await provider.get_test_results("android:b-1")

            assert mock_get.call_args.args[0] == f"{BASE_URL}/builds/b-1/sessions/s1"

        assert len(results) == 1
        result = results[0]
        assert result.device_id == "b-1:s1"
        assert result.device.platform == Platform.ANDROID
        assert result.device.form_factor == FormFactor.TABLET
        assert result.status == DeviceResultStatus.FAILED
        assert result.duration == 42.0
        assert [(t.name, t.status) for t in result.tests] == [
            ("login", CaseStatus.PASSED),
            ("checkout", CaseStatus.FAILED),
        ]
        assert result.tests[1].error == "button missing"
        assert {a.type for a in result.artifacts} == {ArtifactType.VIDEO, ArtifactType.LOG, ArtifactType.SCREENSHOT}

    @pytest.mark.asyncio
    async def test_get_artifacts_checks_run_membership(self, provider):
        with pytest.raises(ValidationError):
            await provider.get_artifacts("android:b-1", "b-9:s1")

    @pytest.mark.asyncio
    async def test_get_artifacts(self, provider):
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = _response(data={"report_url": "https://report/s1"})

            artifacts = await provider.get_artifacts("android:b-1", "b-1:s1")

            assert [(a.type, a.url) for a in artifacts] == [(ArtifactType.REPORT, "https://report/s1")]

    @pytest.mark.asyncio
    async def test_cancel_run_stops_every_build(self, provider):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _response(data={"message": "stopped"})

            await provider.cancel_run("ios:b-1,android:b-2")

            assert [c.args[0] for c in mock_post.call_args_list] == [
                f"{BASE_URL}/builds/b-1/stop",
                f"{BASE_URL}/builds/b-2/stop",
            ]

    @pytest.mark.asyncio
    async def test_list_devices(self, provider):
        data = {
            "data": [
                {"os": "ios", "device": "iPad Air", "os_version": "17"},
                {"os": "android", "device": "Pixel 8", "os_version": "14"},
                {"os": "windows", "device": "Surface", "os_version": "11"},
            ]
        }
        with patch("httpx.AsyncClient.get", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = _response(data=data)

            devices = await provider.list_devices()

            assert mock_get.call_args.args[0] == DEVICES_URL

        assert [(d.platform, d.name, d.form_factor) for d in devices] == [
            (Platform.IOS, "iPad Air", FormFactor.TABLET),
            (Platform.ANDROID, "Pixel 8", FormFactor.PHONE),
        ]

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self):
        client = MagicMock()
        client.aclose = AsyncMock()
        provider = BrowserStackProvider(username="user", access_key="key", client=client)

        await provider.aclose()

        client.aclose.assert_not_awaited()
