"""
Legacy Antminer adapter (CGI endpoints behind HTTP Digest auth)
"""
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from rigwatch.adapters.base import (
    TRANSIENT_ERRORS,
    AuthenticationRequired,
    BoardStatus,
    Credentials,
    DeviceAdapter,
    DeviceSnapshot,
    ProtocolMismatch,
    http_timeout,
)
from rigwatch.core.digest_auth import build_digest_header, parse_digest_challenge
from rigwatch.core.utils import parse_difficulty, pick, split_host_port, to_float, to_int

logger = logging.getLogger(__name__)

_FAN_KEY = re.compile(r"^fan_?\d+$", re.IGNORECASE)
_TEMP_KEY = re.compile(r"^temp", re.IGNORECASE)


class BitmainAdapter(DeviceAdapter):
    """Adapter for legacy Antminer web interfaces (S9, L3+ and similar)"""

    device_type = "bitmain"

    STATUS_PATH = "/cgi-bin/get_miner_status.cgi"
    SYSTEM_INFO_PATH = "/cgi-bin/get_system_info.cgi"

    DEFAULT_TIMEOUT = 8.0

    # Used when no chain reports its voltage (S9 nominal)
    FALLBACK_CHAIN_VOLTAGE_MV = 8500.0

    HASHRATE_KEYS = ("ghs5s", "GHS 5s", "ghsav", "GHS av")
    BEST_SHARE_KEYS = ("bestshare", "best_share", "Best Share")
    MODEL_KEYS = ("minertype", "miner_type", "Type")
    VERSION_KEYS = ("system_filesystem_version", "bmminer_version", "cgminer_version")
    CHAIN_HASHRATE_KEYS = ("rate", "chain_rate", "ghs5s")
    CHAIN_FREQUENCY_KEYS = ("freq", "frequency", "freq_avg")
    CHAIN_VOLTAGE_KEYS = ("chain_vol", "chain_voltage", "voltage")
    CHAIN_POWER_KEYS = ("chain_power", "power")

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, cnonce_factory: Optional[Callable[[], str]] = None):
        super().__init__(timeout)
        self.cnonce_factory = cnonce_factory

    async def _fetch(self, address: str, credentials: Optional[Credentials]) -> DeviceSnapshot:
        """Get telemetry from the miner status CGI"""
        async with aiohttp.ClientSession(timeout=http_timeout(self.timeout)) as session:
            status = await self._authorized_get(session, address, self.STATUS_PATH, credentials)
            system_info = await self._get_system_info(session, address, credentials)

        return self.parse_miner_status(status, system_info)

    async def requires_auth(self, address: str) -> bool:
        """Unauthenticated probe: does the status CGI answer with a Digest challenge?"""
        try:
            async with aiohttp.ClientSession(timeout=http_timeout(self.timeout)) as session:
                async with session.get(f"http://{address}{self.STATUS_PATH}") as response:
                    challenge = response.headers.get("WWW-Authenticate", "")
                    return response.status == 401 and challenge.lower().startswith("digest")
        except TRANSIENT_ERRORS as e:
            logger.debug(f"Digest probe of {address} failed: {e}")
            return False

    async def _authorized_get(
        self,
        session: aiohttp.ClientSession,
        address: str,
        path: str,
        credentials: Optional[Credentials]
    ) -> Dict[str, Any]:
        """GET without auth, answering one Digest challenge if the device sends it"""
        url = f"http://{address}{path}"

        async with session.get(url) as response:
            if response.status == 200:
                return await self._read_json(response)
            if response.status != 401:
                raise ProtocolMismatch(f"HTTP {response.status} from {url}")
            challenge_header = response.headers.get("WWW-Authenticate", "")

        if credentials is None:
            raise AuthenticationRequired("authentication required")

        challenge = parse_digest_challenge(challenge_header)
        cnonce = self.cnonce_factory() if self.cnonce_factory else None
        authorization = build_digest_header(
            "GET", path, credentials.username, credentials.password, challenge, cnonce=cnonce
        )
        if authorization is None:
            raise AuthenticationRequired("cannot authenticate: unusable digest challenge")

        async with session.get(url, headers={"Authorization": authorization}) as response:
            if response.status == 401:
                raise AuthenticationRequired("credentials rejected")
            if response.status != 200:
                raise ProtocolMismatch(f"HTTP {response.status} from {url}")
            return await self._read_json(response)

    async def _get_system_info(
        self,
        session: aiohttp.ClientSession,
        address: str,
        credentials: Optional[Credentials]
    ) -> Optional[Dict[str, Any]]:
        """Model string for display; best effort"""
        try:
            return await self._authorized_get(session, address, self.SYSTEM_INFO_PATH, credentials)
        except TRANSIENT_ERRORS as e:
            logger.debug(f"System info unavailable from {address}: {e}")
            return None

    @staticmethod
    async def _read_json(response: aiohttp.ClientResponse) -> Dict[str, Any]:
        # CGI scripts usually label JSON as text/html
        data = json.loads(await response.text())
        if not isinstance(data, dict):
            raise ProtocolMismatch("unexpected CGI payload")
        return data

    @staticmethod
    def infer_model(chain_count: int, hashrate_ghs: float) -> Tuple[str, str]:
        """
        Guess model and algorithm from chain topology.

        Four chains hashing below 10 GH/s is the scrypt L3 family;
        three chains is the SHA-256 S9 family.
        """
        if chain_count == 4 and hashrate_ghs < 10:
            return "Antminer L3+", "scrypt"
        if chain_count == 3:
            return "Antminer S9", "sha256d"
        return "Unknown", "sha256d"

    @staticmethod
    def _normalize_millivolts(value: float) -> float:
        """Values below 100 are volts"""
        if 0 < value < 100:
            return value * 1000.0
        return value

    @classmethod
    def _parse_chain(cls, index: int, chain: Dict[str, Any]) -> BoardStatus:
        temps = [to_float(v) for k, v in chain.items() if _TEMP_KEY.match(k)]
        return BoardStatus(
            index=to_int(chain.get("index"), index),
            hashrate=to_float(pick(chain, cls.CHAIN_HASHRATE_KEYS)),
            temperature=max(temps, default=0.0),
            frequency=to_float(pick(chain, cls.CHAIN_FREQUENCY_KEYS)),
            voltage=cls._normalize_millivolts(to_float(pick(chain, cls.CHAIN_VOLTAGE_KEYS))),
            power=to_float(pick(chain, cls.CHAIN_POWER_KEYS)),
            chips=to_int(chain.get("chain_acn")),
            hardware_errors=to_int(chain.get("hw"))
        )

    @staticmethod
    def _max_fan(sources: List[Dict[str, Any]]) -> float:
        speeds = [
            to_float(value)
            for source in sources
            for key, value in source.items()
            if _FAN_KEY.match(key)
        ]
        return max(speeds, default=0.0)

    @staticmethod
    def _active_pool(pools: List[Dict[str, Any]]) -> Dict[str, Any]:
        alive = [p for p in pools if str(p.get("status", "")).lower() == "alive"]
        if alive:
            return min(alive, key=lambda p: to_int(p.get("priority")))
        return pools[0] if pools else {}

    @classmethod
    def parse_miner_status(
        cls,
        status: Dict[str, Any],
        system_info: Optional[Dict[str, Any]] = None
    ) -> DeviceSnapshot:
        """Map get_miner_status.cgi (and optional get_system_info.cgi) to a snapshot"""
        summary = status.get("summary")
        if not isinstance(summary, dict):
            raise ProtocolMismatch("no summary in miner status")

        chains = [c for c in (status.get("devs") or []) if isinstance(c, dict)]
        pools = [p for p in (status.get("pools") or []) if isinstance(p, dict)]
        system_info = system_info or {}

        hashrate = to_float(pick(summary, cls.HASHRATE_KEYS))
        boards = [cls._parse_chain(i, chain) for i, chain in enumerate(chains)]

        power = sum(b.power for b in boards)
        frequencies = [b.frequency for b in boards if b.frequency > 0]
        frequency = sum(frequencies) / len(frequencies) if frequencies else 0.0

        voltages = [b.voltage for b in boards if b.voltage > 0]
        if voltages:
            voltage = sum(voltages) / len(voltages)
        else:
            voltage = cls.FALLBACK_CHAIN_VOLTAGE_MV
            logger.info(f"No chain voltage reported, using fallback {voltage:.0f} mV")
        current = power / (voltage / 1000.0) if voltage > 0 else 0.0

        inferred_model, algorithm = cls.infer_model(len(chains), hashrate)
        model = pick(system_info, cls.MODEL_KEYS) or inferred_model

        fans = status.get("fans")
        fan_sources = [summary, *chains] + ([fans] if isinstance(fans, dict) else [])

        pool = cls._active_pool(pools)
        pool_host, pool_port = split_host_port(pool.get("url"))

        return DeviceSnapshot(
            hostname=system_info.get("hostname") or "",
            model=str(model),
            version=str(pick(system_info, cls.VERSION_KEYS, "")),
            algorithm=algorithm,
            hashrate=hashrate,
            temperature=max((b.temperature for b in boards), default=0.0),
            power=power,
            voltage=voltage,
            current=current,
            efficiency=power / (hashrate / 1000.0) if hashrate > 0 else 0.0,
            frequency=frequency,
            fan_rpm=cls._max_fan(fan_sources),
            shares_accepted=to_int(summary.get("accepted")),
            shares_rejected=to_int(summary.get("rejected")),
            best_diff=parse_difficulty(pick(summary, cls.BEST_SHARE_KEYS, 0)),
            pool_difficulty=parse_difficulty(pool.get("diff")),
            pool_url=pool_host,
            pool_port=pool_port,
            pool_user=pool.get("user") or "",
            uptime_seconds=to_int(summary.get("elapsed")),
            boards=boards,
            raw={"status": status, "system_info": system_info}
        )
