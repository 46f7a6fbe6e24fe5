"""
Network Discovery Service for Miners
Scans local subnets for supported mining hardware using the poll adapters
"""
import asyncio
import inspect
import ipaddress
import logging
import socket
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import psutil

from rigwatch.adapters import DETECTION_ORDER, create_adapter
from rigwatch.adapters.base import DeviceAdapter, DeviceSnapshot
from rigwatch.core.config import settings

logger = logging.getLogger(__name__)

SINGLE_IP_TIMEOUT = 5.0

LINK_LOCAL = ipaddress.ip_network("169.254.0.0/16")


@dataclass
class DiscoveredDevice:
    """Device answering one of the adapters during a scan"""
    ip: str
    device_type: str
    model: str = ""
    hostname: str = ""
    version: str = ""
    hashrate: float = 0.0
    requires_auth: bool = False
    already_added: bool = False

    @property
    def name(self) -> str:
        return f"{self.hostname or self.model or self.device_type} ({self.ip})"

    @classmethod
    def from_snapshot(cls, ip: str, device_type: str, snapshot: DeviceSnapshot) -> "DiscoveredDevice":
        return cls(
            ip=ip,
            device_type=device_type,
            model=snapshot.model,
            hostname=snapshot.hostname,
            version=snapshot.version,
            hashrate=snapshot.hashrate
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["name"] = self.name
        return data


@dataclass
class DiscoveryProgress:
    """Scan progress, reported after every batch"""
    scanned: int = 0
    total: int = 0
    found: List[DiscoveredDevice] = field(default_factory=list)
    current_ip: str = ""
    is_complete: bool = False
    is_cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "total": self.total,
            "found": [device.to_dict() for device in self.found],
            "current_ip": self.current_ip,
            "is_complete": self.is_complete,
            "is_cancelled": self.is_cancelled,
        }


ProgressCallback = Callable[[DiscoveryProgress], Union[None, Awaitable[None]]]
ExistingCheck = Callable[[str], Union[bool, Awaitable[bool]]]


def get_local_subnets() -> List[str]:
    """
    Base addresses of the local IPv4 interfaces.

    Loopback and link-local interfaces are skipped.
    """
    bases = []
    for name, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family != socket.AF_INET:
                continue
            try:
                ip = ipaddress.IPv4Address(addr.address)
            except ValueError:
                continue
            if ip.is_loopback or ip in LINK_LOCAL:
                continue
            logger.debug(f"Interface {name}: {ip}")
            bases.append(str(ip))
    return bases


def generate_ip_range(base_ip: str) -> List[str]:
    """All host addresses (.1 to .254) of the /24 containing base_ip"""
    prefix = base_ip.rsplit(".", 1)[0]
    return [f"{prefix}.{host}" for host in range(1, 255)]


def build_candidates(networks: Optional[List[str]] = None) -> List[str]:
    """
    Ordered, de-duplicated list of addresses to scan.

    Args:
        networks: CIDRs to scan; the local interfaces' /24 subnets are
            used when omitted
    """
    candidates: List[str] = []
    seen = set()

    if networks:
        ranges = [
            [str(host) for host in ipaddress.ip_network(cidr, strict=False).hosts()]
            for cidr in networks
        ]
    else:
        ranges = [generate_ip_range(base) for base in get_local_subnets()]

    for hosts in ranges:
        for ip in hosts:
            if ip not in seen:
                seen.add(ip)
                candidates.append(ip)
    return candidates


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class DiscoveryScanner:
    """Finds miners by probing every candidate address in fixed-size batches"""

    def __init__(
        self,
        adapter_factory: Callable[..., Optional[DeviceAdapter]] = create_adapter,
        timeout: Optional[float] = None,
        concurrency: Optional[int] = None
    ):
        self.adapter_factory = adapter_factory
        self.timeout = timeout or settings.DISCOVERY_TIMEOUT
        self.concurrency = concurrency or settings.DISCOVERY_CONCURRENCY
        self.progress = DiscoveryProgress()
        self._running = False
        self._cancel_requested = False

    @property
    def is_running(self) -> bool:
        return self._running

    def cancel(self):
        """Stop the scan before its next batch"""
        if self._running:
            logger.info("🛑 Discovery cancel requested")
            self._cancel_requested = True

    async def discover_devices(
        self,
        on_progress: Optional[ProgressCallback] = None,
        check_existing: Optional[ExistingCheck] = None,
        concurrency: Optional[int] = None,
        networks: Optional[List[str]] = None
    ) -> List[DiscoveredDevice]:
        """
        Scan the local network for miners.

        Args:
            on_progress: Called with the progress after every batch
            check_existing: Returns True for addresses already registered
            concurrency: Batch size override
            networks: CIDRs to scan instead of the local interfaces

        Returns:
            Devices found, in address order within each batch
        """
        if self._running:
            logger.warning("⚠️ Discovery already running")
            return []

        self._running = True
        self._cancel_requested = False
        batch_size = concurrency or self.concurrency

        try:
            try:
                candidates = build_candidates(networks)
            except ValueError as e:
                logger.error(f"❌ Invalid network to scan: {e}")
                candidates = []
            self.progress = DiscoveryProgress(total=len(candidates))

            if not candidates:
                logger.error("❌ No local IPv4 networks to scan")
            else:
                logger.info(f"🔍 Scanning {len(candidates)} addresses in batches of {batch_size}")

            for i in range(0, len(candidates), batch_size):
                if self._cancel_requested:
                    break

                batch = candidates[i:i + batch_size]
                self.progress.current_ip = batch[-1]
                results = await asyncio.gather(*(self._probe_address(ip) for ip in batch))

                for device in results:
                    if device is None:
                        continue
                    if check_existing is not None:
                        device.already_added = bool(await _maybe_await(check_existing(device.ip)))
                    logger.info(f"⛏️ Found {device.device_type} at {device.ip}")
                    self.progress.found.append(device)

                self.progress.scanned += len(batch)
                self.progress.is_cancelled = self._cancel_requested
                await self._report(on_progress)

            self.progress.is_cancelled = self._cancel_requested
            self.progress.is_complete = True
            await self._report(on_progress)

            status = "cancelled" if self._cancel_requested else "complete"
            logger.info(
                f"✅ Discovery {status}: {len(self.progress.found)} devices "
                f"in {self.progress.scanned}/{self.progress.total} addresses"
            )
            return list(self.progress.found)
        finally:
            self._running = False

    async def scan_single_ip(self, ip: str) -> Optional[DiscoveredDevice]:
        """Probe one address with a longer timeout"""
        return await self._probe_address(ip, timeout=SINGLE_IP_TIMEOUT)

    async def _probe_address(self, ip: str, timeout: Optional[float] = None) -> Optional[DiscoveredDevice]:
        """Try each family in detection order; first positive match wins"""
        for device_type in DETECTION_ORDER:
            adapter = self.adapter_factory(device_type, timeout=timeout or self.timeout)
            if adapter is None:
                continue

            result = await adapter.probe(ip)
            if result.ok:
                return DiscoveredDevice.from_snapshot(ip, device_type, result.snapshot)
            if result.auth_required:
                return DiscoveredDevice(ip=ip, device_type=device_type, requires_auth=True)

        return None

    async def _report(self, on_progress: Optional[ProgressCallback]):
        if on_progress is None:
            return
        try:
            await _maybe_await(on_progress(self.progress))
        except Exception:
            logger.exception("⚠️ Discovery progress callback failed")
