"""
Adapter factory and registry
"""
import logging
from typing import Dict, List, Optional, Type

from rigwatch.adapters.base import DeviceAdapter
from rigwatch.adapters.bitaxe import BitaxeAdapter
from rigwatch.adapters.bitmain import BitmainAdapter
from rigwatch.adapters.canaan import CanaanAdapter
from rigwatch.core.config import settings

logger = logging.getLogger(__name__)


ADAPTER_REGISTRY: Dict[str, Type[DeviceAdapter]] = {
    "bitaxe": BitaxeAdapter,
    "bitmain": BitmainAdapter,
    "canaan": CanaanAdapter,
}

# Order in which an unclassified address is tried: most common first
DETECTION_ORDER = ("bitaxe", "bitmain", "canaan")


def create_adapter(device_type: str, timeout: Optional[float] = None) -> Optional[DeviceAdapter]:
    """
    Factory function to create the adapter for a device type.

    Args:
        device_type: Type tag (bitaxe, bitmain, canaan)
        timeout: Optional timeout override in seconds; the configured
            per-family timeout is used when omitted

    Returns:
        DeviceAdapter instance or None if type not found
    """
    adapter_class = ADAPTER_REGISTRY.get(device_type)

    if not adapter_class:
        logger.error(f"❌ Unknown device type: {device_type}")
        return None

    if adapter_class is BitaxeAdapter:
        return BitaxeAdapter(timeout=timeout or settings.BITAXE_TIMEOUT)
    if adapter_class is BitmainAdapter:
        return BitmainAdapter(timeout=timeout or settings.BITMAIN_TIMEOUT)
    return CanaanAdapter(
        timeout=timeout or settings.CGMINER_TIMEOUT,
        port=settings.CGMINER_PORT,
        idle_timeout=settings.CGMINER_IDLE_TIMEOUT
    )


def get_supported_types() -> List[str]:
    """Get list of supported device types"""
    return list(ADAPTER_REGISTRY.keys())
