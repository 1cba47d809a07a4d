"""Device cloud test orchestration.

Drives one test session end to end:

1. Resolve the provider adapter and the device matrix
2. Upload the app once per platform in the matrix and the test bundle once
3. Start one provider-side run for the whole matrix
4. Poll until the run is terminal, the session times out, or it is cancelled
5. Fetch per-device results and aggregate the summary

Failures never escape ``start_test_session``: the returned session carries
``status=failed`` and a human-readable ``error``. Results fetched before a
failure stay on the session.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Union

from ..events import EventBus, EventType
from ..exceptions import OperationCancelledError, TestRunTimeoutError, ValidationError
from ..logging_config import correlation_id_var
from ..retry import RetryPredicates
from .device_matrix import DEVICE_MATRICES, app_path_for_platform, get_recommended_devices, platforms_in
from .models import (
    DeviceSpec,
    DeviceTestConfig,
    DeviceTestResult,
    DeviceTestSession,
    DeviceTestSummary,
    DeviceTier,
    Platform,
    Provider,
    RunState,
    SessionStatus,
    TestRunConfig,
    TestRunStatus,
)
from .providers import ProviderAdapter, ProviderRegistry

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[DeviceTestSession], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _default_session_id() -> str:
    return f"session-{uuid.uuid4().hex[:16]}"


class DeviceCloudOrchestrator:
    """Runs test sessions on device clouds through provider adapters.

    Example:
        orchestrator = DeviceCloudOrchestrator(ProviderRegistry([browserstack]))
        session = await orchestrator.start_test_session(
            project_id="p1",
            build_id="b1",
            app_path="dist/app.apk",
            test_path="dist/flows.zip",
            config=DeviceTestConfig(tier="standard"),
            on_progress=lambda s: print(s.status),
        )
        print(session.summary)
    """

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        event_bus: Optional[EventBus] = None,
        poll_interval: float = 10.0,
        session_timeout: float = 600.0,
        max_poll_errors: int = 3,
        clock: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] = _default_session_id,
    ):
        """Initialize the orchestrator.

        Args:
            registry: Configured provider adapters (local only if None)
            event_bus: Bus receiving ``session.*`` events
            poll_interval: Seconds between status polls
            session_timeout: Seconds a run may take before the session fails
            max_poll_errors: Consecutive transient polling errors tolerated
            clock: Monotonic time source in seconds
            id_factory: Generator for session IDs
        """
        self.registry = registry or ProviderRegistry()
        self.poll_interval = poll_interval
        self.session_timeout = session_timeout
        self.max_poll_errors = max_poll_errors
        self._event_bus = event_bus or EventBus()
        self._clock = clock
        self._id_factory = id_factory
        self._sessions: Dict[str, DeviceTestSession] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}

    @classmethod
    def from_settings(cls, settings: "Settings", event_bus: Optional[EventBus] = None) -> "DeviceCloudOrchestrator":
        return cls(
            registry=ProviderRegistry.from_settings(settings),
            event_bus=event_bus,
            poll_interval=settings.device_cloud_poll_interval_seconds,
            session_timeout=settings.device_cloud_session_timeout_seconds,
        )

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    async def aclose(self) -> None:
        await self.registry.aclose()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_test_session(
        self,
        project_id: str,
        build_id: str,
        app_path: str,
        test_path: str,
        config: Optional[DeviceTestConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> DeviceTestSession:
        """Run a test session to completion.

        Args:
            project_id: Project the build belongs to
            build_id: Build under test
            app_path: Locator of the app build (the platform variant is derived from it)
            test_path: Locator of the test bundle
            config: Provider, devices/tier and timing options
            on_progress: Called with the session on every state change

        Returns:
            The finished session (``completed`` or ``failed``)

        Raises:
            ProviderNotConfiguredError: If the requested provider is not registered
            ValidationError: If an explicit device list is empty
        """
        config = config or DeviceTestConfig()
        adapter = self.registry.get(config.provider)
        if config.devices is None:
            devices = list(DEVICE_MATRICES[config.tier])
        elif config.devices:
            devices = list(config.devices)
        else:
            raise ValidationError("Explicit device list is empty")

        session = DeviceTestSession(
            id=self._new_session_id(),
            provider=adapter.name,
            project_id=project_id,
            build_id=build_id,
            devices=devices,
            summary=DeviceTestSummary(total_devices=len(devices)),
        )
        self._sessions[session.id] = session
        cancel_event = asyncio.Event()
        self._cancel_events[session.id] = cancel_event

        token = correlation_id_var.set(session.id)
        try:
            logger.info(
                f"[DeviceCloud] Session {session.id} created: provider={adapter.name.value}, "
                f"devices={len(devices)}, project={project_id}, build={build_id}"
            )
            await self._notify(session, EventType.SESSION_CREATED, on_progress)
            try:
                await self._run_session(session, adapter, app_path, test_path, config, cancel_event, on_progress)
            except Exception as e:
                await self._fail(session, e, on_progress)
        finally:
            self._cancel_events.pop(session.id, None)
            correlation_id_var.reset(token)

        return session

    async def _run_session(
        self,
        session: DeviceTestSession,
        adapter: ProviderAdapter,
        app_path: str,
        test_path: str,
        config: DeviceTestConfig,
        cancel_event: asyncio.Event,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        timeout = config.timeout or self.session_timeout
        poll_interval = config.poll_interval or self.poll_interval

        app_ids: Dict[Platform, str] = {}
        for platform in platforms_in(session.devices):
            app_ids[platform] = await adapter.upload_app(app_path_for_platform(app_path, platform), platform)
        test_id = await adapter.upload_tests(test_path)
        self._raise_if_cancelled(cancel_event)

        run_id = await adapter.start_test_run(
            TestRunConfig(
                app_ids=app_ids,
                test_id=test_id,
                devices=session.devices,
                test_type=config.test_type,
                timeout=timeout,
                parallel=config.parallel,
                project=session.project_id,
            )
        )
        session.run_id = run_id
        session.status = SessionStatus.RUNNING
        logger.info(f"[DeviceCloud] Session {session.id} running as {run_id}")
        await self._notify(session, EventType.SESSION_PROGRESS, on_progress)

        final = await self._poll_until_terminal(
            session, adapter, run_id, timeout, poll_interval, cancel_event, on_progress
        )

        if final.status != RunState.COMPLETED:
            # Keep whatever the devices that did finish reported
            await self._collect_results(session, adapter, run_id, best_effort=True)
            detail = f": {final.message}" if final.message else ""
            await self._fail(session, f"Test run {final.status.value}{detail}", on_progress)
            return

        await self._collect_results(session, adapter, run_id)
        if session.is_finished:
            return
        session.status = SessionStatus.COMPLETED
        session.completed_at = _utcnow()
        logger.info(
            f"[DeviceCloud] Session {session.id} completed: "
            f"{session.summary.passed_devices}/{session.summary.total_devices} devices passed, "
            f"{session.summary.passed_tests}/{session.summary.total_tests} tests passed"
        )
        await self._notify(session, EventType.SESSION_COMPLETED, on_progress)

    async def _poll_until_terminal(
        self,
        session: DeviceTestSession,
        adapter: ProviderAdapter,
        run_id: str,
        timeout: float,
        poll_interval: float,
        cancel_event: asyncio.Event,
        on_progress: Optional[ProgressCallback],
    ) -> TestRunStatus:
        deadline = self._clock() + timeout
        poll_errors = 0

        while True:
            self._raise_if_cancelled(cancel_event)
            try:
                status = await adapter.get_test_status(run_id)
                poll_errors = 0
            except Exception as e:
                poll_errors += 1
                if not RetryPredicates.transient_errors(e) or poll_errors >= self.max_poll_errors:
                    raise
                logger.warning(
                    f"[DeviceCloud] Status poll {poll_errors}/{self.max_poll_errors} for {run_id} failed: {e}"
                )
                status = None

            if status is not None:
                if status.status.is_terminal:
                    logger.info(f"[DeviceCloud] Run {run_id} finished with status {status.status.value}")
                    return status
                if status.progress is not None and status.progress != session.progress:
                    session.progress = status.progress
                    await self._notify(session, EventType.SESSION_PROGRESS, on_progress)

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise TestRunTimeoutError(f"Test run timed out after {timeout}s", timeout)
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=min(poll_interval, remaining))
            except asyncio.TimeoutError:
                pass

    async def _collect_results(
        self,
        session: DeviceTestSession,
        adapter: ProviderAdapter,
        run_id: str,
        best_effort: bool = False,
    ) -> None:
        try:
            results = await adapter.get_test_results(run_id)
        except Exception as e:
            if not best_effort:
                raise
            logger.warning(f"[DeviceCloud] Could not fetch partial results for {run_id}: {e}")
            return

        if session.is_finished:
            return
        for result in results:
            await self._attach_artifacts(adapter, run_id, result)
        session.results = results
        session.summary = DeviceTestSummary.from_results(results, total_devices=len(session.devices))

    async def _attach_artifacts(self, adapter: ProviderAdapter, run_id: str, result: DeviceTestResult) -> None:
        if result.artifacts or not result.device_id:
            return
        try:
            result.artifacts = await adapter.get_artifacts(run_id, result.device_id)
        except Exception as e:
            logger.warning(f"[DeviceCloud] No artifacts for device {result.device_id}: {e}")

    async def cancel_session(self, session_id: str) -> bool:
        """Cancel a running session.

        Stops the poll loop, asks the provider to cancel the run and marks the
        session failed.

        Returns:
            True if a running session was cancelled
        """
        session = self._sessions.get(session_id)
        if session is None or session.status != SessionStatus.RUNNING or session.is_finished:
            return False

        error = "Cancelled"
        if session.run_id is not None:
            try:
                await self.registry.get(session.provider).cancel_run(session.run_id)
            except Exception as e:
                logger.error(f"[DeviceCloud] Provider failed to cancel run {session.run_id}: {e}")
                error = f"Cancelled (provider cancel failed: {e})"

        cancel_event = self._cancel_events.get(session_id)
        if cancel_event is not None:
            cancel_event.set()
        await self._fail(session, error, None)
        logger.info(f"[DeviceCloud] Session {session_id} cancelled")
        return True

    def get_session(self, session_id: str) -> Optional[DeviceTestSession]:
        return self._sessions.get(session_id)

    def list_sessions(
        self,
        project_id: Optional[str] = None,
        status: Optional[Union[SessionStatus, str]] = None,
    ) -> List[DeviceTestSession]:
        sessions = list(self._sessions.values())
        if project_id is not None:
            sessions = [s for s in sessions if s.project_id == project_id]
        if status is not None:
            status = SessionStatus(status)
            sessions = [s for s in sessions if s.status == status]
        return sessions

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def get_recommended_devices(
        self,
        tier: Union[DeviceTier, str] = DeviceTier.MINIMAL,
        platforms: Optional[Iterable[Union[Platform, str]]] = None,
    ) -> List[DeviceSpec]:
        return get_recommended_devices(tier, platforms)

    async def get_available_devices(self, provider: Optional[Union[Provider, str]] = None) -> List[DeviceSpec]:
        """Devices offered by ``provider`` (the default provider if None)."""
        return await self.registry.get(provider).list_devices()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_session_id(self) -> str:
        session_id = self._id_factory()
        while session_id in self._sessions:
            session_id = self._id_factory()
        return session_id

    @staticmethod
    def _raise_if_cancelled(cancel_event: asyncio.Event) -> None:
        if cancel_event.is_set():
            raise OperationCancelledError("Cancelled")

    async def _fail(
        self,
        session: DeviceTestSession,
        error: Union[BaseException, str],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        if session.is_finished:
            return
        message = error if isinstance(error, str) else (str(error) or type(error).__name__)
        session.status = SessionStatus.FAILED
        session.error = message
        session.completed_at = _utcnow()
        logger.error(f"[DeviceCloud] Session {session.id} failed: {message}")
        await self._notify(session, EventType.SESSION_FAILED, on_progress)

    async def _notify(
        self,
        session: DeviceTestSession,
        event_type: EventType,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        self._event_bus.emit(
            event_type,
            source="device_cloud",
            payload={
                "session_id": session.id,
                "provider": session.provider.value,
                "project_id": session.project_id,
                "status": session.status.value,
                "progress": session.progress,
                "error": session.error,
            },
            correlation_id=session.id,
        )
        if on_progress is None:
            return
        try:
            outcome = on_progress(session)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"[DeviceCloud] Progress callback failed for session {session.id}: {e}")
