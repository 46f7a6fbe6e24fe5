"""
Base DeviceAdapter interface and the normalized snapshot shape
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional

import aiohttp

from rigwatch.core.cgminer import CGMinerError

logger = logging.getLogger(__name__)


class Credentials(NamedTuple):
    """Device web interface login"""
    username: str
    password: str


class AdapterError(Exception):
    """Adapter could not produce a snapshot"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class AuthenticationRequired(AdapterError):
    """Device demands credentials that are missing or were rejected"""


class ProtocolMismatch(AdapterError):
    """Device answered, but not in this adapter's format"""


@dataclass
class BoardStatus:
    """Per hash board (chain) breakdown"""
    index: int
    hashrate: float = 0.0
    temperature: float = 0.0
    frequency: float = 0.0
    voltage: float = 0.0
    power: float = 0.0
    chips: int = 0
    hardware_errors: int = 0


@dataclass
class DeviceSnapshot:
    """
    One normalized telemetry reading.

    Units: hashrate GH/s, temperatures C, power W, voltage mV,
    current A, efficiency J/TH, frequency MHz. Difficulties are plain
    numbers; vendor strings such as "56.4M" are parsed by the adapter.
    """
    device_type: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    hostname: str = ""
    model: str = ""
    version: str = ""
    algorithm: str = "sha256d"
    hashrate: float = 0.0
    expected_hashrate: float = 0.0
    temperature: float = 0.0
    vr_temperature: float = 0.0
    power: float = 0.0
    voltage: float = 0.0
    current: float = 0.0
    efficiency: float = 0.0
    frequency: float = 0.0
    core_voltage: float = 0.0
    fan_speed: float = 0.0
    fan_rpm: float = 0.0
    shares_accepted: int = 0
    shares_rejected: int = 0
    best_diff: float = 0.0
    best_session_diff: float = 0.0
    pool_difficulty: float = 0.0
    pool_url: str = ""
    pool_port: Optional[int] = None
    pool_user: str = ""
    uptime_seconds: int = 0
    is_cluster: bool = False
    boards: List[BoardStatus] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self, include_raw: bool = False) -> Dict[str, Any]:
        """Convert to dictionary"""
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["hashrate_unit"] = "GH/s"
        if not include_raw:
            data.pop("raw")
        return data


@dataclass
class FetchResult:
    """Outcome of one adapter call, with the failure reason for logging"""
    snapshot: Optional[DeviceSnapshot] = None
    auth_required: bool = False
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.snapshot is not None


# Failures that are expected from flaky embedded network stacks
TRANSIENT_ERRORS = (
    AdapterError,
    CGMinerError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
    OSError,
    ValueError,
)


class DeviceAdapter(ABC):
    """Base adapter interface for all firmware families"""

    device_type: str = ""

    def __init__(self, timeout: float):
        self.timeout = timeout

    @abstractmethod
    async def _fetch(self, address: str, credentials: Optional[Credentials]) -> DeviceSnapshot:
        """Fetch and normalize telemetry; raises on any failure"""

    async def fetch_result(self, address: str, credentials: Optional[Credentials] = None) -> FetchResult:
        """Fetch telemetry, converting every failure into a FetchResult"""
        return await self._guarded(self._fetch, address, credentials)

    async def fetch(self, address: str, credentials: Optional[Credentials] = None) -> Optional[DeviceSnapshot]:
        """Fetch telemetry; None on any failure"""
        result = await self.fetch_result(address, credentials)
        return result.snapshot

    async def probe(self, address: str, credentials: Optional[Credentials] = None) -> FetchResult:
        """Identify a device at address (used by discovery)"""
        return await self.fetch_result(address, credentials)

    async def _guarded(self, call, address: str, credentials: Optional[Credentials]) -> FetchResult:
        try:
            snapshot = await call(address, credentials)
        except AuthenticationRequired as e:
            logger.warning(f"🔒 {self.device_type} at {address}: {e.reason}")
            return FetchResult(auth_required=True, reason=e.reason)
        except TRANSIENT_ERRORS as e:
            reason = str(e) or type(e).__name__
            logger.debug(f"{self.device_type} at {address} failed: {reason}")
            return FetchResult(reason=reason)
        except Exception as e:
            logger.exception(f"❌ Unexpected error fetching {self.device_type} at {address}")
            return FetchResult(reason=f"unexpected error: {e}")

        snapshot.device_type = self.device_type
        return FetchResult(snapshot=snapshot)


def http_timeout(seconds: float) -> aiohttp.ClientTimeout:
    """Total request timeout for a device call"""
    return aiohttp.ClientTimeout(total=seconds)
