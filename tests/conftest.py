"""
Shared fixtures: in-memory registry and sink, scripted adapters, local HTTP servers
"""
import dataclasses
from typing import Dict, List, Optional

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from rigwatch.adapters.base import Credentials, DeviceAdapter, DeviceSnapshot, ProtocolMismatch
from rigwatch.core.events import EventBus
from rigwatch.core.registry import Device, DeviceRegistry, TelemetrySink


class FakeRegistry(DeviceRegistry):
    """Device registry kept in a dict; returns copies like a database would"""

    def __init__(self, devices: Optional[List[Device]] = None):
        self.devices: Dict[int, Device] = {d.id: d for d in devices or []}
        self.type_changes = []

    async def get_device(self, device_id):
        device = self.devices.get(device_id)
        return dataclasses.replace(device) if device else None

    async def list_devices(self):
        return [dataclasses.replace(d) for d in self.devices.values()]

    async def find_by_address(self, ip_address):
        for device in self.devices.values():
            if device.ip_address == ip_address:
                return dataclasses.replace(device)
        return None

    async def add_device(self, name, ip_address, device_type, credentials=None, poll_interval=None):
        device_id = max(self.devices, default=0) + 1
        device = Device(
            id=device_id,
            name=name,
            ip_address=ip_address,
            device_type=device_type,
            auth_user=credentials.username if credentials else None,
            auth_pass=credentials.password if credentials else None,
            poll_interval=poll_interval or 5000
        )
        self.devices[device_id] = device
        return dataclasses.replace(device)

    async def remove_device(self, device_id):
        return self.devices.pop(device_id, None) is not None

    async def set_device_type(self, device_id, device_type, credentials):
        self.type_changes.append((device_id, device_type, credentials))
        device = self.devices[device_id]
        device.device_type = device_type
        if credentials is not None:
            device.auth_user, device.auth_pass = credentials

    async def set_online(self, device_id, online):
        self.devices[device_id].is_online = online

    async def record_best_difficulty(self, device_id, value):
        device = self.devices[device_id]
        if value > device.best_diff:
            device.best_diff = value
            return True
        return False


class FakeSink(TelemetrySink):
    def __init__(self):
        self.stored = []

    async def store(self, device_id, snapshot):
        self.stored.append((device_id, snapshot))

    async def recent(self, device_id, limit=100):
        history = [s.to_dict() for d, s in reversed(self.stored) if d == device_id]
        return history[:limit]


class ScriptedAdapter(DeviceAdapter):
    """
    Adapter whose answers are scripted.

    Outcomes are a snapshot (success), None (no answer) or an exception
    to raise. They are taken from `by_address` when given, otherwise
    consumed in order from `outcomes`, falling back to `default`.
    """

    def __init__(self, device_type, outcomes=(), default=None, by_address=None):
        super().__init__(timeout=1.0)
        self.device_type = device_type
        self.outcomes = list(outcomes)
        self.default = default
        self.by_address = by_address
        self.calls = []

    async def _fetch(self, address: str, credentials: Optional[Credentials]) -> DeviceSnapshot:
        self.calls.append((address, credentials))
        if self.by_address is not None:
            outcome = self.by_address.get(address, self.default)
        elif self.outcomes:
            outcome = self.outcomes.pop(0)
        else:
            outcome = self.default

        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            raise ProtocolMismatch("no answer")
        return dataclasses.replace(outcome)


class AdapterFactory:
    """Stands in for create_adapter, handing out scripted adapters"""

    def __init__(self):
        self.adapters: Dict[str, ScriptedAdapter] = {}

    def add(self, device_type, **kwargs) -> ScriptedAdapter:
        adapter = ScriptedAdapter(device_type, **kwargs)
        self.adapters[device_type] = adapter
        return adapter

    def __call__(self, device_type, timeout=None):
        return self.adapters.get(device_type)


def make_snapshot(**kwargs) -> DeviceSnapshot:
    defaults = {"hostname": "miner", "model": "BM1366", "hashrate": 500.0}
    defaults.update(kwargs)
    return DeviceSnapshot(**defaults)


@pytest.fixture
def registry():
    return FakeRegistry([
        Device(id=1, name="bitaxe-1", ip_address="10.0.0.5", device_type="bitaxe", is_online=True),
    ])


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def received(events):
    collected = []
    events.subscribe(collected.append)
    return collected


@pytest.fixture
def adapters():
    return AdapterFactory()


@pytest.fixture
async def http_device():
    """Start a local aiohttp app from {path: handler}; returns its "host:port" address"""
    servers = []

    async def start(routes):
        app = web.Application()
        for path, handler in routes.items():
            app.router.add_get(path, handler)
        server = TestServer(app, host="127.0.0.1")
        await server.start_server()
        servers.append(server)
        return f"127.0.0.1:{server.port}"

    yield start

    for server in servers:
        await server.close()
