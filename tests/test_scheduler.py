import asyncio

import pytest

from rigwatch.adapters.base import AuthenticationRequired, Credentials
from rigwatch.core.detector import DetectionResult
from rigwatch.core.events import NewRecordEvent, SnapshotEvent, StatusChangeEvent
from rigwatch.core.registry import Device
from rigwatch.core.scheduler import PollScheduler

from tests.conftest import make_snapshot


class StubDetector:
    def __init__(self, result=None):
        self.result = result or DetectionResult(reason="no compatible device")
        self.calls = []

    async def detect(self, address, credentials=None):
        self.calls.append(address)
        return self.result


@pytest.fixture
def detector():
    return StubDetector()


@pytest.fixture
def poller(registry, sink, events, adapters, detector):
    return PollScheduler(registry, sink, events, adapter_factory=adapters, detector=detector, offline_threshold=3)


def status_events(received):
    return [e for e in received if isinstance(e, StatusChangeEvent)]


async def poll(poller, device_id=1, times=1):
    for _ in range(times):
        await poller.poll_device(device_id)


async def test_two_failures_keep_device_online(poller, registry, adapters, received):
    adapters.add("bitaxe")
    poller.start_polling(registry.devices[1])

    await poll(poller, times=2)

    assert registry.devices[1].is_online is True
    assert status_events(received) == []


async def test_third_failure_goes_offline_with_empty_snapshot(poller, registry, adapters, received):
    adapters.add("bitaxe")
    poller.start_polling(registry.devices[1])

    await poll(poller, times=3)

    assert registry.devices[1].is_online is False
    [event] = status_events(received)
    assert event.online is False
    assert event.snapshot.hashrate == 0
    assert event.snapshot.model == ""


async def test_offline_event_is_not_repeated(poller, registry, adapters, received):
    adapters.add("bitaxe")
    poller.start_polling(registry.devices[1])

    await poll(poller, times=6)

    assert len(status_events(received)) == 1


async def test_success_resets_failure_streak(poller, registry, adapters, received):
    adapters.add("bitaxe", outcomes=[None, None, make_snapshot(), None, None])
    poller.start_polling(registry.devices[1])

    await poll(poller, times=5)

    assert registry.devices[1].is_online is True
    assert poller.sessions.get(1).failure_count == 2
    assert status_events(received) == []


async def test_success_after_offline_emits_online(poller, registry, adapters, received, sink):
    registry.devices[1].is_online = False
    adapters.add("bitaxe", outcomes=[make_snapshot(hashrate=480.0)])
    poller.start_polling(registry.devices[1])

    await poll(poller)

    assert registry.devices[1].is_online is True
    [event] = status_events(received)
    assert event.online is True
    assert event.snapshot.hashrate == 480.0
    assert [device_id for device_id, _ in sink.stored] == [1]
    assert isinstance(received[-1], SnapshotEvent)
    assert poller.get_latest_snapshot(1).hashrate == 480.0
    assert poller.get_all_latest_snapshots().keys() == {1}


async def test_new_record_only_when_strictly_greater(poller, registry, adapters, received):
    adapters.add("bitaxe", outcomes=[make_snapshot(best_diff=d) for d in (10, 5, 20, 20)])
    poller.start_polling(registry.devices[1])

    await poll(poller, times=4)

    records = [e for e in received if isinstance(e, NewRecordEvent)]
    assert [e.difficulty for e in records] == [10, 20]
    assert records[0].device_name == "bitaxe-1"
    assert registry.devices[1].best_diff == 20


async def test_redetection_attempted_once_per_streak(poller, registry, adapters, detector):
    adapters.add("bitaxe")
    poller.start_polling(registry.devices[1])

    await poll(poller, times=3)

    assert detector.calls == ["10.0.0.5"]


async def test_redetection_switches_type_and_restarts_session(registry, sink, events, received, adapters):
    adapters.add("bitaxe")
    bitmain = adapters.add("bitmain", default=make_snapshot(model="Antminer S9"))
    detected = make_snapshot(model="Antminer S9", hashrate=13500.0, device_type="bitmain")
    detector = StubDetector(DetectionResult(device_type="bitmain", snapshot=detected))
    poller = PollScheduler(registry, sink, events, adapter_factory=adapters, detector=detector, offline_threshold=3)
    first_session = poller.start_polling(registry.devices[1])

    await poll(poller)

    assert registry.type_changes == [(1, "bitmain", None)]
    assert registry.devices[1].device_type == "bitmain"
    restarted = poller.sessions.get(1)
    assert restarted is not first_session
    assert restarted.failure_count == 0
    assert poller.scheduler.get_job(restarted.job_id) is not None
    assert poller.get_latest_snapshot(1).hashrate == 13500.0
    assert isinstance(received[-1], SnapshotEvent)
    assert sink.stored[-1][1].model == "Antminer S9"

    # The next tick uses the corrected adapter
    await poll(poller)
    assert len(bitmain.calls) == 1


async def test_redetection_same_type_counts_as_failure(registry, sink, events, adapters):
    adapters.add("bitaxe")
    detector = StubDetector(DetectionResult(device_type="bitaxe", snapshot=make_snapshot()))
    poller = PollScheduler(registry, sink, events, adapter_factory=adapters, detector=detector, offline_threshold=3)
    poller.start_polling(registry.devices[1])

    await poll(poller)

    assert registry.type_changes == []
    assert poller.sessions.get(1).failure_count == 1
    assert sink.stored == []


async def test_tick_skipped_while_previous_poll_in_flight(poller, registry, adapters):
    release = asyncio.Event()
    adapter = adapters.add("bitaxe", default=make_snapshot())
    original = adapter._fetch

    async def slow_fetch(address, credentials):
        await release.wait()
        return await original(address, credentials)

    adapter._fetch = slow_fetch
    poller.start_polling(registry.devices[1])

    first = asyncio.create_task(poller.poll_device(1))
    await asyncio.sleep(0)
    assert poller.sessions.get(1).in_flight is True

    await poller.poll_device(1)
    release.set()
    await first

    assert len(adapter.calls) == 1
    assert poller.sessions.get(1).in_flight is False


async def test_stop_polling_discards_session_state(poller, registry, adapters):
    adapters.add("bitaxe", default=make_snapshot())
    session = poller.start_polling(registry.devices[1])
    await poll(poller)

    poller.stop_polling(1)

    assert poller.get_latest_snapshot(1) is None
    assert poller.scheduler.get_job(session.job_id) is None
    assert registry.devices[1].is_online is True
    # Unknown ids are ignored
    poller.stop_polling(1)
    poller.stop_polling(42)


async def test_start_polling_replaces_existing_session(poller, registry, adapters):
    adapters.add("bitaxe")
    poller.start_polling(registry.devices[1])
    await poll(poller)

    poller.start_polling(registry.devices[1])

    assert poller.sessions.get(1).failure_count == 0
    assert len(poller.scheduler.get_jobs()) == 1


async def test_start_polling_all_devices(poller, registry):
    registry.devices[2] = Device(id=2, name="s9", ip_address="10.0.0.6", device_type="bitmain", poll_interval=10000)

    count = await poller.start_polling_all_devices()

    assert count == 2
    assert sorted(poller.sessions.ids()) == [1, 2]
    assert poller.sessions.get(2).interval_ms == 10000

    poller.stop_all_polling()
    assert len(poller.sessions) == 0
    assert poller.scheduler.get_jobs() == []


async def test_removed_device_stops_its_poller(poller, registry, adapters):
    adapters.add("bitaxe")
    poller.start_polling(registry.devices[1])
    del registry.devices[1]

    await poll(poller)

    assert not poller.is_polling(1)


async def test_failing_subscriber_does_not_break_polling(poller, registry, adapters, events, sink):
    def explode(event):
        raise RuntimeError("subscriber bug")

    events.subscribe(explode)
    adapters.add("bitaxe", default=make_snapshot())
    poller.start_polling(registry.devices[1])

    await poll(poller)

    assert len(sink.stored) == 1


async def test_connection_with_explicit_type(poller, adapters):
    adapters.add("bitaxe", default=make_snapshot(hashrate=512.0))

    result = await poller.test_connection("10.0.0.7", "bitaxe")

    assert result["success"] is True
    assert result["device_type"] == "bitaxe"
    assert result["snapshot"]["hashrate"] == 512.0
    assert result["error"] is None


async def test_connection_auto_detects(poller, detector):
    detector.result = DetectionResult(device_type="bitmain", auth_required=True, reason="authentication required")

    result = await poller.test_connection("10.0.0.7")

    assert result == {
        "success": False,
        "device_type": "bitmain",
        "snapshot": None,
        "auth_required": True,
        "error": "authentication required",
    }


async def test_connection_unknown_type(poller):
    result = await poller.test_connection("10.0.0.7", "whatsminer")

    assert result["success"] is False
    assert "Unknown device type" in result["error"]


class BlockingDetector(StubDetector):
    def __init__(self, result):
        super().__init__(result)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def detect(self, address, credentials=None):
        self.calls.append(address)
        self.started.set()
        await self.release.wait()
        return self.result


async def test_stop_during_redetection_keeps_session_stopped(registry, sink, events, received, adapters):
    adapters.add("bitaxe")
    adapters.add("canaan", default=make_snapshot(device_type="canaan"))
    detector = BlockingDetector(DetectionResult(device_type="canaan", snapshot=make_snapshot(device_type="canaan")))
    poller = PollScheduler(registry, sink, events, adapter_factory=adapters, detector=detector, offline_threshold=3)
    poller.start_polling(registry.devices[1])

    tick = asyncio.create_task(poller.poll_device(1))
    await detector.started.wait()
    poller.stop_polling(1)
    detector.release.set()
    await tick

    assert not poller.is_polling(1)
    assert poller.scheduler.get_jobs() == []
    assert registry.type_changes == []
    assert registry.devices[1].device_type == "bitaxe"
    assert sink.stored == []
    assert received == []


async def test_stop_during_fetch_drops_result(poller, registry, adapters, sink, received):
    release = asyncio.Event()
    adapter = adapters.add("bitaxe", default=make_snapshot(best_diff=50))
    original = adapter._fetch

    async def slow_fetch(address, credentials):
        await release.wait()
        return await original(address, credentials)

    adapter._fetch = slow_fetch
    poller.start_polling(registry.devices[1])

    tick = asyncio.create_task(poller.poll_device(1))
    await asyncio.sleep(0)
    poller.stop_polling(1)
    release.set()
    await tick

    assert sink.stored == []
    assert received == []
    assert registry.devices[1].best_diff == 0


async def test_auth_required_pauses_session_with_flagged_event(poller, registry, adapters, received, detector):
    registry.devices[1].device_type = "bitmain"
    adapter = adapters.add("bitmain", default=AuthenticationRequired("credentials rejected"))
    session = poller.start_polling(registry.devices[1])

    await poll(poller, times=6)

    assert len(adapter.calls) == 1
    [event] = status_events(received)
    assert event.online is False
    assert event.auth_required is True
    assert event.to_dict()["auth_required"] is True
    assert registry.devices[1].is_online is False
    assert detector.calls == []
    assert poller.is_polling(1)
    assert poller.scheduler.get_job(session.job_id).next_run_time is None

    # New credentials restart the session
    adapter.default = make_snapshot()
    registry.devices[1].auth_user, registry.devices[1].auth_pass = "root", "root"
    poller.start_polling(registry.devices[1])
    await poll(poller)

    assert adapter.calls[-1] == ("10.0.0.5", Credentials("root", "root"))
    assert registry.devices[1].is_online is True
    assert status_events(received)[-1].online is True


async def test_interval_job_ticks_until_stopped(poller, registry, adapters):
    adapter = adapters.add("bitaxe", default=make_snapshot())
    registry.devices[1].poll_interval = 50
    poller.start()
    try:
        poller.start_polling(registry.devices[1])
        await asyncio.sleep(0.3)
        ticks = len(adapter.calls)
        assert ticks >= 3

        poller.stop_polling(1)
        await asyncio.sleep(0.2)
        assert len(adapter.calls) == ticks
    finally:
        poller.shutdown()


async def test_first_tick_runs_immediately_unless_deferred(poller, registry, adapters):
    adapter = adapters.add("bitaxe", default=make_snapshot())
    registry.devices[1].poll_interval = 60000
    registry.devices[2] = Device(id=2, name="gamma", ip_address="10.0.0.6", device_type="bitaxe", poll_interval=60000)
    poller.start()
    try:
        poller.start_polling(registry.devices[1])
        poller.start_polling(registry.devices[2], immediate=False)
        await asyncio.sleep(0.2)

        assert [address for address, _ in adapter.calls] == ["10.0.0.5"]
        assert poller.scheduler.get_job("poll_1").trigger.interval.total_seconds() == 60
    finally:
        poller.shutdown()
