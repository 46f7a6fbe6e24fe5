"""
Shared service instances used by the API and the application lifecycle
"""
from rigwatch.core.database import SqlDeviceRegistry, SqlTelemetrySink
from rigwatch.core.discovery import DiscoveryScanner
from rigwatch.core.events import EventBus
from rigwatch.core.scheduler import PollScheduler

events = EventBus()
registry = SqlDeviceRegistry()
telemetry_sink = SqlTelemetrySink()
poll_scheduler = PollScheduler(registry, telemetry_sink, events)
discovery_scanner = DiscoveryScanner()


def get_registry() -> SqlDeviceRegistry:
    return registry


def get_telemetry_sink() -> SqlTelemetrySink:
    return telemetry_sink


def get_poll_scheduler() -> PollScheduler:
    return poll_scheduler


def get_discovery_scanner() -> DiscoveryScanner:
    return discovery_scanner
