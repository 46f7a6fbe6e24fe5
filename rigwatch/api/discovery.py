"""
Network Discovery API Endpoints
"""
import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from rigwatch.core.config import app_config
from rigwatch.core.discovery import DiscoveryScanner
from rigwatch.core.services import get_discovery_scanner, get_registry

logger = logging.getLogger(__name__)

router = APIRouter()

# Background scan; kept referenced so it is not garbage collected
_scan_task: Optional[asyncio.Task] = None


class DiscoveryRequest(BaseModel):
    """Request model for discovery scan"""
    networks: List[str] | None = None  # CIDRs; configured or local networks when omitted
    concurrency: int | None = None


class SingleScanRequest(BaseModel):
    ip: str


def configured_networks() -> List[str]:
    """CIDRs from network_discovery.networks (plain strings or {cidr: ...})"""
    networks = app_config.get("network_discovery.networks", []) or []
    return [n["cidr"] if isinstance(n, dict) else str(n) for n in networks]


def _scan_active(scanner: DiscoveryScanner) -> bool:
    return scanner.is_running or (_scan_task is not None and not _scan_task.done())


@router.post("/scan")
async def scan_network(
    request: DiscoveryRequest,
    scanner: DiscoveryScanner = Depends(get_discovery_scanner),
    registry=Depends(get_registry)
):
    """Start a background scan; progress is polled from /progress"""
    global _scan_task

    if _scan_active(scanner):
        raise HTTPException(status_code=409, detail="A discovery scan is already running")

    async def check_existing(ip: str) -> bool:
        return await registry.find_by_address(ip) is not None

    networks = request.networks or configured_networks() or None
    _scan_task = asyncio.create_task(scanner.discover_devices(
        check_existing=check_existing,
        concurrency=request.concurrency,
        networks=networks
    ))
    logger.info(f"🔍 Discovery scan started ({', '.join(networks) if networks else 'local networks'})")
    return {"status": "started", "networks": networks}


@router.get("/progress")
async def get_progress(scanner: DiscoveryScanner = Depends(get_discovery_scanner)):
    """Current or last scan progress"""
    progress = scanner.progress.to_dict()
    progress["is_running"] = _scan_active(scanner)
    return progress


@router.post("/cancel")
async def cancel_scan(scanner: DiscoveryScanner = Depends(get_discovery_scanner)):
    """Cancel the running scan before its next batch"""
    running = scanner.is_running
    scanner.cancel()
    return {"cancelled": running}


@router.post("/scan-ip")
async def scan_single_ip(
    request: SingleScanRequest,
    scanner: DiscoveryScanner = Depends(get_discovery_scanner),
    registry=Depends(get_registry)
):
    """Probe one address"""
    device = await scanner.scan_single_ip(request.ip)
    if device is None:
        return {"found": False, "device": None}

    device.already_added = await registry.find_by_address(device.ip) is not None
    return {"found": True, "device": device.to_dict()}
