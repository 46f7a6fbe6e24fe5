"""
Bitaxe / AxeOS adapter using REST API
"""
import logging
from typing import Any, Dict, Optional

import aiohttp

from rigwatch.adapters.base import (
    TRANSIENT_ERRORS,
    Credentials,
    DeviceAdapter,
    DeviceSnapshot,
    ProtocolMismatch,
    http_timeout,
)
from rigwatch.core.utils import parse_difficulty, pick, split_host_port, to_float, to_int

logger = logging.getLogger(__name__)


class BitaxeAdapter(DeviceAdapter):
    """Adapter for AxeOS firmware (Bitaxe, NerdQaxe and forks)"""

    device_type = "bitaxe"

    INFO_PATH = "/api/system/info"
    CLUSTER_PATH = "/api/cluster/status"

    # Some ESP32 builds answer slowly while hashing
    DEFAULT_TIMEOUT = 8.0

    # Field spellings differ between AxeOS releases and forks
    POOL_DIFFICULTY_KEYS = ("poolDifficulty", "pool_difficulty", "stratumDifficulty", "difficulty")
    BEST_DIFF_KEYS = ("bestDiff", "best_diff", "bestDifficulty", "bestShare")
    BEST_SESSION_DIFF_KEYS = ("bestSessionDiff", "best_session_diff", "bestSessionDifficulty")
    FAN_SPEED_KEYS = ("fanspeed", "fanSpeed")
    FAN_RPM_KEYS = ("fanrpm", "fanRpm")
    CORE_VOLTAGE_KEYS = ("coreVoltageActual", "coreVoltage")
    CLUSTER_MODE_KEYS = ("clusterMode", "cluster_mode")

    CLUSTER_HASHRATE_KEYS = ("totalHashrate", "total_hashrate", "hashrate")
    CLUSTER_POWER_KEYS = ("totalPower", "total_power", "power")
    CLUSTER_ACCEPTED_KEYS = ("totalSharesAccepted", "total_shares_accepted", "sharesAccepted")
    CLUSTER_REJECTED_KEYS = ("totalSharesRejected", "total_shares_rejected", "sharesRejected")

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(timeout)

    async def _fetch(self, address: str, credentials: Optional[Credentials]) -> DeviceSnapshot:
        """Get telemetry from REST API"""
        async with aiohttp.ClientSession(timeout=http_timeout(self.timeout)) as session:
            data = await self._get_json(session, f"http://{address}{self.INFO_PATH}")
            snapshot = self.parse_system_info(data)

            if snapshot.is_cluster:
                cluster = await self._get_cluster_status(session, address)
                if cluster:
                    self.apply_cluster_totals(snapshot, cluster)

        return snapshot

    async def _get_json(self, session: aiohttp.ClientSession, url: str) -> Dict[str, Any]:
        async with session.get(url) as response:
            if response.status != 200:
                raise ProtocolMismatch(f"HTTP {response.status} from {url}")
            data = await response.json(content_type=None)

        if not isinstance(data, dict):
            raise ProtocolMismatch(f"unexpected payload from {url}")
        return data

    async def _get_cluster_status(self, session: aiohttp.ClientSession, address: str) -> Optional[Dict[str, Any]]:
        """Cluster totals are best effort; the master's own numbers stand if this fails"""
        try:
            return await self._get_json(session, f"http://{address}{self.CLUSTER_PATH}")
        except TRANSIENT_ERRORS as e:
            logger.warning(f"⚠️ Cluster status unavailable from {address}: {e}")
            return None

    @classmethod
    def parse_system_info(cls, data: Dict[str, Any]) -> DeviceSnapshot:
        """Map an /api/system/info payload to a snapshot"""
        if "hashRate" not in data and "ASICModel" not in data:
            raise ProtocolMismatch("not an AxeOS system info payload")

        hashrate = to_float(data.get("hashRate"))
        power = to_float(data.get("power"))

        efficiency = to_float(data.get("efficiency"))
        if efficiency <= 0:
            efficiency = cls._efficiency(power, hashrate)

        pool_host, pool_port = split_host_port(
            data.get("stratumURL"),
            to_int(data.get("stratumPort")) or None
        )

        return DeviceSnapshot(
            hostname=data.get("hostname") or "",
            model=data.get("ASICModel") or "",
            version=data.get("version") or "",
            hashrate=hashrate,
            expected_hashrate=to_float(data.get("expectedHashrate")),
            temperature=to_float(data.get("temp")),
            vr_temperature=to_float(data.get("vrTemp")),
            power=power,
            voltage=to_float(data.get("voltage")),
            # AxeOS reports input current in mA
            current=to_float(data.get("current")) / 1000.0,
            efficiency=efficiency,
            frequency=to_float(data.get("frequency")),
            core_voltage=to_float(pick(data, cls.CORE_VOLTAGE_KEYS)),
            fan_speed=to_float(pick(data, cls.FAN_SPEED_KEYS)),
            fan_rpm=to_float(pick(data, cls.FAN_RPM_KEYS)),
            shares_accepted=to_int(data.get("sharesAccepted")),
            shares_rejected=to_int(data.get("sharesRejected")),
            best_diff=parse_difficulty(pick(data, cls.BEST_DIFF_KEYS, 0)),
            best_session_diff=parse_difficulty(pick(data, cls.BEST_SESSION_DIFF_KEYS, 0)),
            pool_difficulty=parse_difficulty(pick(data, cls.POOL_DIFFICULTY_KEYS, 0)),
            pool_url=pool_host,
            pool_port=pool_port,
            pool_user=data.get("stratumUser") or "",
            uptime_seconds=to_int(data.get("uptimeSeconds")),
            is_cluster=cls._is_cluster_master(data),
            raw=dict(data)
        )

    @classmethod
    def apply_cluster_totals(cls, snapshot: DeviceSnapshot, cluster: Dict[str, Any]) -> None:
        """Replace the master's own totals with the whole cluster's; missing totals keep the master's"""
        hashrate = pick(cluster, cls.CLUSTER_HASHRATE_KEYS)
        if hashrate is not None:
            # Cluster hashrate is reported in units of 10 MH/s
            snapshot.hashrate = to_float(hashrate, snapshot.hashrate * 100.0) / 100.0
        snapshot.power = to_float(pick(cluster, cls.CLUSTER_POWER_KEYS), snapshot.power)
        snapshot.efficiency = cls._efficiency(snapshot.power, snapshot.hashrate)
        snapshot.shares_accepted = to_int(pick(cluster, cls.CLUSTER_ACCEPTED_KEYS), snapshot.shares_accepted)
        snapshot.shares_rejected = to_int(pick(cluster, cls.CLUSTER_REJECTED_KEYS), snapshot.shares_rejected)
        snapshot.raw["cluster"] = cluster

    @classmethod
    def _is_cluster_master(cls, data: Dict[str, Any]) -> bool:
        version = str(data.get("version") or "").lower()
        if "cluster" not in version:
            return False

        mode = pick(data, cls.CLUSTER_MODE_KEYS)
        if mode is None and isinstance(data.get("cluster"), dict):
            mode = data["cluster"].get("mode")
        return str(mode or "").lower() == "master"

    @staticmethod
    def _efficiency(power: float, hashrate_ghs: float) -> float:
        """J/TH from watts and GH/s"""
        if hashrate_ghs <= 0:
            return 0.0
        return power / (hashrate_ghs / 1000.0)
