"""
Canaan Avalon adapter using cgminer TCP API
"""
import logging
import math
import re
from typing import Any, Dict, List, Optional

from rigwatch.adapters.base import Credentials, DeviceAdapter, DeviceSnapshot, FetchResult, ProtocolMismatch
from rigwatch.core.cgminer import (
    CGMinerClient,
    merge_cgminer_objects,
    parse_cgminer_response,
    section_all,
    section_first,
)
from rigwatch.core.utils import parse_difficulty, pick, split_host_port, to_float, to_int

logger = logging.getLogger(__name__)


class CanaanAdapter(DeviceAdapter):
    """Adapter for Avalon miners (and other cgminer-API firmware)"""

    device_type = "canaan"

    STATUS_COMMAND = "summary+pools+stats"
    PROBE_COMMAND = "summary+version"
    VERSION_COMMAND = "version"

    DEFAULT_TIMEOUT = 5.0
    DEFAULT_MODEL = "Avalon"

    # The API does not report power, so it is estimated from hashrate
    EFFICIENCY_J_PER_TH = 25.0

    HASHRATE_KEYS = ("MHS 5s", "MHS 1m", "MHS av")
    BEST_SHARE_KEYS = ("Best Share", "Best Share Diff")
    POOL_DIFFICULTY_KEYS = ("Diff", "Stratum Difficulty", "Last Share Difficulty")
    VERSION_KEYS = ("PROD", "MODEL", "CGMiner", "BMMiner")

    # Stats field names vary by firmware, so sensors are found by name pattern
    TEMP_PATTERN = re.compile(r"temp|tmp|tavg|tmax", re.IGNORECASE)
    FAN_PATTERN = re.compile(r"fan", re.IGNORECASE)
    # Avalon packs sensors into strings such as "MM ID0": "... TAvg[62] Fan1[3120] ..."
    BRACKET_VALUE = re.compile(r"([A-Za-z_]\w*)\[(-?\d+(?:\.\d+)?)\]")

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        port: int = CGMinerClient.DEFAULT_PORT,
        idle_timeout: float = 0.5,
        client: Optional[CGMinerClient] = None
    ):
        super().__init__(timeout)
        self.client = client or CGMinerClient(port=port, timeout=timeout, idle_timeout=idle_timeout)

    async def _query(self, address: str, command: str) -> Dict[str, Any]:
        text = await self.client.send_command(address, command)
        objects = parse_cgminer_response(text)
        if not objects:
            raise ProtocolMismatch(f"no JSON in reply to '{command}'")
        return merge_cgminer_objects(objects)

    async def _fetch(self, address: str, credentials: Optional[Credentials]) -> DeviceSnapshot:
        """Get telemetry from cgminer API"""
        data = await self._query(address, self.STATUS_COMMAND)
        return self.parse_status(data)

    async def probe(self, address: str, credentials: Optional[Credentials] = None) -> FetchResult:
        """Identify via summary+version, falling back to plain version"""
        return await self._guarded(self._identify, address, credentials)

    async def _identify(self, address: str, credentials: Optional[Credentials]) -> DeviceSnapshot:
        data = await self._query(address, self.PROBE_COMMAND)
        if "SUMMARY" not in data and "VERSION" not in data:
            # Some builds reject combined commands
            data = await self._query(address, self.VERSION_COMMAND)
        return self.parse_status(data)

    @staticmethod
    def _number(value: Any) -> Optional[float]:
        number = to_float(value, math.nan)
        return None if math.isnan(number) else number

    @classmethod
    def max_matching(cls, entries: List[Dict[str, Any]], pattern: re.Pattern) -> float:
        """Largest numeric value among fields whose name matches pattern"""
        values = []
        for entry in entries:
            for key, value in entry.items():
                if isinstance(value, str):
                    for name, number in cls.BRACKET_VALUE.findall(value):
                        if pattern.search(name):
                            values.append(float(number))
                if pattern.search(key):
                    number = cls._number(value)
                    if number is not None:
                        values.append(number)
        return max(values, default=0.0)

    @staticmethod
    def _active_pool(pools: List[Dict[str, Any]]) -> Dict[str, Any]:
        for pool in pools:
            if pool.get("Stratum Active") is True:
                return pool
        alive = [p for p in pools if p.get("Status") == "Alive"]
        if alive:
            return min(alive, key=lambda p: to_int(p.get("Priority")))
        return pools[0] if pools else {}

    @classmethod
    def parse_status(cls, data: Dict[str, Any]) -> DeviceSnapshot:
        """Map merged SUMMARY / POOLS / STATS / VERSION sections to a snapshot"""
        summary = section_first(data, "SUMMARY")
        version = section_first(data, "VERSION")
        stats = section_all(data, "STATS")
        pools = section_all(data, "POOLS")

        if not summary and not version:
            raise ProtocolMismatch("no SUMMARY or VERSION section in cgminer reply")

        # MH/s -> GH/s
        hashrate = to_float(pick(summary, cls.HASHRATE_KEYS)) / 1000.0
        power = hashrate / 1000.0 * cls.EFFICIENCY_J_PER_TH

        model = next((s["Type"] for s in stats if s.get("Type")), None)
        if not model:
            model = version.get("MODEL") or version.get("PROD") or cls.DEFAULT_MODEL

        pool = cls._active_pool(pools)
        pool_host, pool_port = split_host_port(pool.get("URL"))

        return DeviceSnapshot(
            model=str(model),
            version=str(pick(version, cls.VERSION_KEYS, "")),
            hashrate=hashrate,
            temperature=cls.max_matching(stats, cls.TEMP_PATTERN),
            power=power,
            efficiency=cls.EFFICIENCY_J_PER_TH if hashrate > 0 else 0.0,
            fan_rpm=cls.max_matching(stats, cls.FAN_PATTERN),
            shares_accepted=to_int(summary.get("Accepted")),
            shares_rejected=to_int(summary.get("Rejected")),
            best_diff=parse_difficulty(pick(summary, cls.BEST_SHARE_KEYS, 0)),
            pool_difficulty=parse_difficulty(pick(pool, cls.POOL_DIFFICULTY_KEYS, 0)),
            pool_url=pool_host,
            pool_port=pool_port,
            pool_user=pool.get("User") or "",
            uptime_seconds=to_int(summary.get("Elapsed")),
            raw=data
        )
