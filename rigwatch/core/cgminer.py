"""
cgminer API client (JSON over TCP, port 4028)

The API has no message framing: the device writes its reply and may or
may not close the socket. Replies to multi-command requests can be several
JSON objects glued together ("{...}{...}") with stray null bytes.
"""
import asyncio
import contextlib
import json
import logging
from typing import Any, Dict, List

from rigwatch.core.utils import split_host_port

logger = logging.getLogger(__name__)


class CGMinerError(Exception):
    """cgminer command failed"""


class CGMinerTimeout(CGMinerError):
    """No complete reply before the hard timeout"""


class CGMinerConnectionError(CGMinerError):
    """Connection refused, reset or otherwise broken"""


class CGMinerClient:
    """Sends single commands to a cgminer API and returns the raw reply text"""

    DEFAULT_PORT = 4028
    CHUNK_SIZE = 4096

    def __init__(self, port: int = DEFAULT_PORT, timeout: float = 5.0, idle_timeout: float = 0.5):
        self.port = port
        self.timeout = timeout
        self.idle_timeout = idle_timeout

    async def send_command(self, address: str, command: str) -> str:
        """
        Send one command and accumulate the reply.

        The reply is considered complete when the device closes the
        connection or stays silent for idle_timeout after sending data.
        The whole exchange is bounded by timeout.

        Args:
            address: Device IP address, optionally with ":port"
            command: cgminer command, e.g. "summary+pools+stats"

        Returns:
            Raw reply text (may contain null bytes and concatenated objects)

        Raises:
            CGMinerTimeout: connect or reply exceeded the hard timeout
            CGMinerConnectionError: socket error
        """
        host, port = split_host_port(address, self.port)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise CGMinerTimeout(f"connect to {host}:{port} timed out") from e
        except OSError as e:
            raise CGMinerConnectionError(f"connect to {host}:{port} failed: {e}") from e

        chunks: List[bytes] = []
        try:
            writer.write((json.dumps({"command": command}) + "\n").encode())
            await writer.drain()

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise CGMinerTimeout(f"'{command}' to {host}:{port} exceeded {self.timeout}s")

                # Idle timer only runs once the device has started answering
                idle = bool(chunks) and self.idle_timeout < remaining
                wait = self.idle_timeout if idle else remaining

                try:
                    chunk = await asyncio.wait_for(reader.read(self.CHUNK_SIZE), timeout=wait)
                except asyncio.TimeoutError:
                    if idle:
                        break
                    raise CGMinerTimeout(f"'{command}' to {host}:{port} exceeded {self.timeout}s")

                if not chunk:
                    break
                chunks.append(chunk)
        except OSError as e:
            raise CGMinerConnectionError(f"'{command}' to {host}:{port} failed: {e}") from e
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()

        return b"".join(chunks).decode("utf-8", errors="ignore")


def parse_cgminer_response(text: str) -> List[Dict[str, Any]]:
    """
    Recover the JSON objects contained in a raw cgminer reply.

    Null bytes are stripped and the whole text is parsed first; if that
    fails it is split at "}{" boundaries and each piece is parsed on its
    own. Pieces that still do not parse are dropped.
    """
    cleaned = text.replace("\x00", "").strip()
    if not cleaned:
        return []

    try:
        parsed = json.loads(cleaned)
    except ValueError:
        pass
    else:
        if isinstance(parsed, dict):
            return [parsed]
        if isinstance(parsed, list):
            return [item for item in parsed if isinstance(item, dict)]
        return []

    pieces = cleaned.split("}{")
    objects = []
    for index, piece in enumerate(pieces):
        if index > 0:
            piece = "{" + piece
        if index < len(pieces) - 1:
            piece = piece + "}"
        try:
            parsed = json.loads(piece)
        except ValueError:
            logger.debug(f"Discarding unparseable cgminer fragment: {piece[:80]!r}")
            continue
        if isinstance(parsed, dict):
            objects.append(parsed)

    return objects


def merge_cgminer_objects(objects: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Merge reply objects into one mapping of top-level sections.

    Combined commands ("summary+pools") wrap each reply under a lowercase
    key ({"summary": [{"SUMMARY": [...]}]}); those wrappers are flattened
    so callers always see SUMMARY / POOLS / STATS / VERSION at the top.
    The first occurrence of a section wins.
    """
    merged: Dict[str, Any] = {}
    for obj in objects:
        for key, value in obj.items():
            if (
                key.islower()
                and isinstance(value, list)
                and value
                and isinstance(value[0], dict)
                and key.upper() in value[0]
            ):
                nested = merge_cgminer_objects([item for item in value if isinstance(item, dict)])
                for nested_key, nested_value in nested.items():
                    merged.setdefault(nested_key, nested_value)
            else:
                merged.setdefault(key, value)
    return merged


def section_first(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    """First element of a section that may be an object or an array"""
    section = data.get(name)
    if isinstance(section, list):
        return section[0] if section and isinstance(section[0], dict) else {}
    if isinstance(section, dict):
        return section
    return {}


def section_all(data: Dict[str, Any], name: str) -> List[Dict[str, Any]]:
    """All elements of a section that may be an object or an array"""
    section = data.get(name)
    if isinstance(section, list):
        return [item for item in section if isinstance(item, dict)]
    if isinstance(section, dict):
        return [section]
    return []
