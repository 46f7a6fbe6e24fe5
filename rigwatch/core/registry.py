"""
Interfaces to the device registry and telemetry sink

Polling only needs a narrow slice of persistence: read device records,
correct a device's type, flip its online flag, and keep its best
difficulty monotonic. Anything that implements these can back the poller;
rigwatch.core.database provides the SQLite implementation.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from rigwatch.adapters.base import Credentials, DeviceSnapshot


@dataclass
class Device:
    """Registered device as seen by the poller"""
    id: int
    name: str
    ip_address: str
    device_type: str = "bitaxe"
    auth_user: Optional[str] = None
    auth_pass: Optional[str] = None
    poll_interval: int = 5000  # ms
    is_online: bool = False
    last_seen: Optional[datetime] = None
    best_diff: float = 0.0

    @property
    def credentials(self) -> Optional[Credentials]:
        if not self.auth_user:
            return None
        return Credentials(self.auth_user, self.auth_pass or "")


class DeviceRegistry(ABC):
    """Persisted device records"""

    @abstractmethod
    async def get_device(self, device_id: int) -> Optional[Device]:
        """Device by id, or None if it no longer exists"""

    @abstractmethod
    async def list_devices(self) -> List[Device]:
        """All registered devices"""

    @abstractmethod
    async def set_device_type(self, device_id: int, device_type: str, credentials: Optional[Credentials]) -> None:
        """Correct the declared type of a device; credentials=None keeps the stored ones"""

    @abstractmethod
    async def set_online(self, device_id: int, online: bool) -> None:
        """Record online/offline status and last-seen time"""

    @abstractmethod
    async def record_best_difficulty(self, device_id: int, value: float) -> bool:
        """Store value if strictly greater than the best known; True if it was a new record"""


class TelemetrySink(ABC):
    """Destination for normalized snapshots"""

    @abstractmethod
    async def store(self, device_id: int, snapshot: DeviceSnapshot) -> None:
        """Persist one snapshot"""

    @abstractmethod
    async def recent(self, device_id: int, limit: int = 100) -> List[Dict[str, Any]]:
        """Stored snapshots of a device as dicts, newest first"""
