"""
Device type auto-detection
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from rigwatch.adapters import DETECTION_ORDER, create_adapter
from rigwatch.adapters.base import Credentials, DeviceAdapter, DeviceSnapshot
from rigwatch.adapters.bitmain import BitmainAdapter

logger = logging.getLogger(__name__)


@dataclass
class DetectionResult:
    """Outcome of classifying an address"""
    device_type: Optional[str] = None
    snapshot: Optional[DeviceSnapshot] = None
    auth_required: bool = False
    reason: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.device_type is not None


class DeviceTypeDetector:
    """Classifies an address by trying each adapter in priority order"""

    def __init__(self, adapter_factory: Callable[[str], Optional[DeviceAdapter]] = create_adapter):
        self.adapter_factory = adapter_factory

    async def detect(self, address: str, credentials: Optional[Credentials] = None) -> DetectionResult:
        """
        Find the firmware family at address.

        Returns the first family whose adapter produces a snapshot. If none
        does but the Digest family's endpoint asks for authentication, the
        address is reported as that family with auth_required set.
        """
        reasons = []
        auth_family = None

        for device_type in DETECTION_ORDER:
            adapter = self.adapter_factory(device_type)
            if adapter is None:
                continue

            result = await adapter.fetch_result(address, credentials)
            if result.ok:
                logger.info(f"🔍 {address} detected as {device_type}")
                return DetectionResult(device_type=device_type, snapshot=result.snapshot)

            if result.auth_required:
                auth_family = device_type
            reasons.append(f"{device_type}: {result.reason}")

        if auth_family is None:
            adapter = self.adapter_factory(BitmainAdapter.device_type)
            if isinstance(adapter, BitmainAdapter) and await adapter.requires_auth(address):
                auth_family = BitmainAdapter.device_type

        if auth_family is not None:
            logger.warning(f"🔒 {address} looks like {auth_family} but needs credentials")
            return DetectionResult(
                device_type=auth_family,
                auth_required=True,
                reason="authentication required"
            )

        reason = "no compatible device (" + "; ".join(reasons) + ")"
        logger.info(f"🔍 {address}: {reason}")
        return DetectionResult(reason=reason)
