"""
Per-device poll scheduling with failure hysteresis
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from rigwatch.adapters import create_adapter
from rigwatch.adapters.base import Credentials, DeviceAdapter, DeviceSnapshot, FetchResult
from rigwatch.core.config import settings
from rigwatch.core.detector import DeviceTypeDetector
from rigwatch.core.events import EventBus, NewRecordEvent, SnapshotEvent, StatusChangeEvent
from rigwatch.core.registry import Device, DeviceRegistry, TelemetrySink
from rigwatch.core.utils import format_difficulty

logger = logging.getLogger(__name__)


@dataclass
class PollSession:
    """Transient polling state for one device"""
    device_id: int
    job_id: str
    interval_ms: int
    failure_count: int = 0
    redetect_attempted: bool = False
    auth_blocked: bool = False
    in_flight: bool = False
    latest: Optional[DeviceSnapshot] = None
    latest_at: Optional[datetime] = None


class PollSessionStore:
    """Active poll sessions keyed by device id"""

    def __init__(self):
        self._sessions: Dict[int, PollSession] = {}

    def get(self, device_id: int) -> Optional[PollSession]:
        return self._sessions.get(device_id)

    def set(self, session: PollSession) -> None:
        self._sessions[session.device_id] = session

    def delete(self, device_id: int) -> Optional[PollSession]:
        return self._sessions.pop(device_id, None)

    def ids(self) -> List[int]:
        return list(self._sessions.keys())

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)


class PollScheduler:
    """
    Drives one interval job per device and tracks online/offline state.

    A device only goes offline after `offline_threshold` consecutive
    failed polls; one success resets the streak. The first failure of a
    session triggers a single re-detection, which corrects devices that
    were registered with the wrong firmware family.

    A device that demands credentials is not a transient failure: its
    session is paused with an auth_required status event until
    start_polling() is called again with new credentials.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        sink: TelemetrySink,
        events: Optional[EventBus] = None,
        adapter_factory: Callable[[str], Optional[DeviceAdapter]] = create_adapter,
        detector: Optional[DeviceTypeDetector] = None,
        offline_threshold: Optional[int] = None,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        self.registry = registry
        self.sink = sink
        self.events = events or EventBus()
        self.adapter_factory = adapter_factory
        self.detector = detector or DeviceTypeDetector(adapter_factory)
        self.offline_threshold = offline_threshold or settings.OFFLINE_THRESHOLD
        self.scheduler = scheduler or AsyncIOScheduler()
        self.sessions = PollSessionStore()

    def start(self):
        """Start the underlying scheduler"""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("⏰ Poll scheduler started")

    def shutdown(self):
        """Stop every session and the underlying scheduler"""
        self.stop_all_polling()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("⏰ Poll scheduler stopped")

    async def start_polling_all_devices(self) -> int:
        """Start a session for every registered device; returns the count"""
        devices = await self.registry.list_devices()
        for device in devices:
            self.start_polling(device)
        logger.info(f"📡 Polling {len(devices)} devices")
        return len(devices)

    def start_polling(self, device: Device, immediate: bool = True) -> PollSession:
        """
        (Re)create the poll session for a device.

        Any existing session is destroyed first, so failure counters and
        the cached snapshot start fresh.

        Args:
            device: Registry record to poll
            immediate: Run the first poll now instead of after one interval
        """
        self.stop_polling(device.id)

        interval_ms = device.poll_interval or settings.POLL_INTERVAL_MS
        session = PollSession(device_id=device.id, job_id=f"poll_{device.id}", interval_ms=interval_ms)
        self.sessions.set(session)

        job_kwargs: Dict[str, Any] = {}
        if immediate:
            job_kwargs["next_run_time"] = datetime.now(timezone.utc)

        self.scheduler.add_job(
            self.poll_device,
            IntervalTrigger(seconds=interval_ms / 1000),
            args=[device.id],
            id=session.job_id,
            name=f"Poll {device.name}",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **job_kwargs
        )
        logger.debug(f"Started polling {device.name} ({device.device_type}) every {interval_ms}ms")
        return session

    def stop_polling(self, device_id: int):
        """Cancel a device's job and drop its transient state; no-op if not polling"""
        session = self.sessions.delete(device_id)
        if session is None:
            return

        try:
            self.scheduler.remove_job(session.job_id)
        except JobLookupError:
            logger.debug(f"Poll job {session.job_id} already gone")

    def stop_all_polling(self):
        """Stop every active session"""
        for device_id in self.sessions.ids():
            self.stop_polling(device_id)

    def is_polling(self, device_id: int) -> bool:
        return self.sessions.get(device_id) is not None

    def get_latest_snapshot(self, device_id: int) -> Optional[DeviceSnapshot]:
        """Most recent successful snapshot of an active session"""
        session = self.sessions.get(device_id)
        return session.latest if session else None

    def get_all_latest_snapshots(self) -> Dict[int, DeviceSnapshot]:
        snapshots = {}
        for device_id in self.sessions.ids():
            session = self.sessions.get(device_id)
            if session and session.latest is not None:
                snapshots[device_id] = session.latest
        return snapshots

    async def poll_device(self, device_id: int):
        """Run one poll tick for a device"""
        session = self.sessions.get(device_id)
        if session is None:
            logger.debug(f"No poll session for device {device_id}")
            return

        if session.auth_blocked:
            logger.debug(f"Skipping tick for device {device_id}: waiting for new credentials")
            return

        if session.in_flight:
            logger.debug(f"Skipping tick for device {device_id}: previous poll still running")
            return

        session.in_flight = True
        try:
            await self._poll(session)
        except Exception:
            logger.exception(f"❌ Poll tick failed for device {device_id}")
        finally:
            session.in_flight = False

    def _is_active(self, session: PollSession) -> bool:
        # False once the session was stopped or replaced while a tick awaited
        return self.sessions.get(session.device_id) is session

    async def _poll(self, session: PollSession):
        device = await self.registry.get_device(session.device_id)
        if not self._is_active(session):
            return
        if device is None:
            logger.warning(f"⚠️ Device {session.device_id} no longer exists, stopping its poller")
            self.stop_polling(session.device_id)
            return

        adapter = self.adapter_factory(device.device_type)
        if adapter is None:
            result = FetchResult(reason=f"unknown device type {device.device_type}")
        else:
            result = await adapter.fetch_result(device.ip_address, device.credentials)

        if not self._is_active(session):
            logger.debug(f"Dropping poll result for {device.name}: polling was stopped")
            return

        if result.ok:
            await self._handle_success(session, device, result.snapshot)
        elif result.auth_required:
            await self._block_on_auth(session, device, result)
        else:
            await self._handle_failure(session, device, result)

    async def _handle_success(self, session: PollSession, device: Device, snapshot: DeviceSnapshot):
        session.failure_count = 0

        await self.registry.set_online(device.id, True)
        if not device.is_online:
            logger.info(f"✅ {device.name} is online")
            await self.events.publish(StatusChangeEvent(device.id, True, snapshot))
        device.is_online = True

        best = max(snapshot.best_diff, snapshot.best_session_diff)
        if best > 0 and await self.registry.record_best_difficulty(device.id, best):
            logger.info(f"🏆 New best difficulty for {device.name}: {format_difficulty(best)}")
            await self.events.publish(NewRecordEvent(device.id, best, device.name))

        if not self._is_active(session):
            return

        await self.sink.store(device.id, snapshot)
        session.latest = snapshot
        session.latest_at = snapshot.timestamp
        await self.events.publish(SnapshotEvent(device.id, snapshot))

    async def _block_on_auth(self, session: PollSession, device: Device, result: FetchResult):
        """
        Park a session whose device rejected (or was never given) credentials.

        Retrying cannot succeed until the credentials change, so the job is
        paused and a single status event carrying auth_required is emitted.
        start_polling() with updated credentials resumes the device.
        """
        session.auth_blocked = True
        try:
            self.scheduler.pause_job(session.job_id)
        except JobLookupError:
            logger.debug(f"Poll job {session.job_id} already gone")

        await self.registry.set_online(device.id, False)
        device.is_online = False
        logger.warning(f"🔒 {device.name} requires credentials, polling paused: {result.reason}")
        await self.events.publish(StatusChangeEvent(device.id, False, auth_required=True))

    async def _handle_failure(self, session: PollSession, device: Device, result: FetchResult):
        session.failure_count += 1
        logger.debug(
            f"Poll of {device.name} failed ({session.failure_count}/{self.offline_threshold}): {result.reason}"
        )

        if not session.redetect_attempted:
            session.redetect_attempted = True
            if await self._redetect(session, device):
                return

        if session.failure_count < self.offline_threshold:
            return

        if session.failure_count == self.offline_threshold or device.is_online:
            await self.registry.set_online(device.id, False)
            device.is_online = False
            logger.warning(f"🔴 {device.name} is offline after {session.failure_count} failed polls")
            await self.events.publish(StatusChangeEvent(device.id, False))

    async def _redetect(self, session: PollSession, device: Device) -> bool:
        """
        Re-classify a device after its first failure.

        Returns True when the tick needs no further handling: either the
        session was stopped during detection, or the device turned out to
        be a different family. In the latter case the session is restarted
        with the corrected type and the detection snapshot counts as this
        tick's result.
        """
        detection = await self.detector.detect(device.ip_address, device.credentials)
        if not self._is_active(session):
            return True
        if detection.snapshot is None or detection.device_type == device.device_type:
            return False

        logger.info(f"🔄 {device.name} re-detected as {detection.device_type} (was {device.device_type})")
        await self.registry.set_device_type(device.id, detection.device_type, device.credentials)
        if not self._is_active(session):
            return True
        device.device_type = detection.device_type

        new_session = self.start_polling(device, immediate=False)
        await self._handle_success(new_session, device, detection.snapshot)
        return True

    async def test_connection(
        self,
        address: str,
        device_type: Optional[str] = None,
        credentials: Optional[Credentials] = None
    ) -> Dict[str, Any]:
        """
        Try to read one snapshot from an address.

        With no device_type the address is auto-detected.

        Returns:
            Dict with success, device_type, snapshot, auth_required, error
        """
        if device_type is None:
            detection = await self.detector.detect(address, credentials)
            snapshot = detection.snapshot
            device_type = detection.device_type
            auth_required = detection.auth_required
            error = detection.reason
        else:
            adapter = self.adapter_factory(device_type)
            if adapter is None:
                return {
                    "success": False,
                    "device_type": device_type,
                    "snapshot": None,
                    "auth_required": False,
                    "error": f"Unknown device type: {device_type}"
                }
            result = await adapter.fetch_result(address, credentials)
            snapshot = result.snapshot
            auth_required = result.auth_required
            error = result.reason

        return {
            "success": snapshot is not None,
            "device_type": device_type,
            "snapshot": snapshot.to_dict() if snapshot else None,
            "auth_required": auth_required,
            "error": None if snapshot is not None else error
        }
