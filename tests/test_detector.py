from aiohttp import web

from rigwatch.adapters import create_adapter
from rigwatch.adapters.base import AuthenticationRequired, Credentials, ProtocolMismatch
from rigwatch.adapters.bitmain import BitmainAdapter
from rigwatch.core.detector import DeviceTypeDetector

from tests.conftest import make_snapshot


async def test_first_successful_adapter_wins(adapters):
    bitaxe = adapters.add("bitaxe")
    adapters.add("bitmain", default=make_snapshot(model="Antminer S9"))
    canaan = adapters.add("canaan", default=make_snapshot(model="Avalon"))

    result = await DeviceTypeDetector(adapters).detect("10.0.0.9")

    assert result.found
    assert result.device_type == "bitmain"
    assert result.snapshot.model == "Antminer S9"
    assert result.auth_required is False
    assert len(bitaxe.calls) == 1
    assert canaan.calls == []


async def test_detection_order_prefers_http_json(adapters):
    adapters.add("bitaxe", default=make_snapshot())
    bitmain = adapters.add("bitmain", default=make_snapshot())

    result = await DeviceTypeDetector(adapters).detect("10.0.0.9")

    assert result.device_type == "bitaxe"
    assert bitmain.calls == []


async def test_credentials_are_passed_to_adapters(adapters):
    bitmain = adapters.add("bitmain", default=make_snapshot())
    creds = Credentials("root", "root")

    await DeviceTypeDetector(adapters).detect("10.0.0.9", creds)

    assert bitmain.calls == [("10.0.0.9", creds)]


async def test_digest_challenge_without_credentials_is_classified(adapters):
    adapters.add("bitaxe")
    adapters.add("bitmain", default=AuthenticationRequired("authentication required"))
    adapters.add("canaan")

    result = await DeviceTypeDetector(adapters).detect("10.0.0.9")

    assert result.device_type == "bitmain"
    assert result.auth_required is True
    assert result.snapshot is None


async def test_nothing_answers(adapters):
    for device_type in ("bitaxe", "bitmain", "canaan"):
        adapters.add(device_type)

    result = await DeviceTypeDetector(adapters).detect("10.0.0.9")

    assert not result.found
    assert result.auth_required is False
    assert result.reason.startswith("no compatible device")


class LockedAntminer(BitmainAdapter):
    """Status page unreadable, but the CGI still sends a Digest challenge"""

    async def _fetch(self, address, credentials):
        raise ProtocolMismatch("garbled status page")

    async def requires_auth(self, address):
        return True


async def test_separate_digest_probe_classifies_locked_antminer(adapters):
    adapters.add("bitaxe")
    adapters.add("canaan")

    def factory(device_type):
        if device_type == "bitmain":
            return LockedAntminer(timeout=1.0)
        return adapters(device_type)

    result = await DeviceTypeDetector(factory).detect("10.0.0.9")

    assert result.device_type == "bitmain"
    assert result.auth_required is True


async def test_with_real_adapters_against_locked_antminer(http_device):
    async def status(request):
        return web.Response(status=401, headers={"WWW-Authenticate": 'Digest realm="x", nonce="y"'})

    address = await http_device({BitmainAdapter.STATUS_PATH: status})

    result = await DeviceTypeDetector(lambda t: create_adapter(t, timeout=1.0)).detect(address)

    assert result.device_type == "bitmain"
    assert result.auth_required is True
