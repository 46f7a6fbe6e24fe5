"""
Device management API endpoints
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from rigwatch.adapters import get_supported_types
from rigwatch.adapters.base import Credentials, DeviceSnapshot
from rigwatch.core.registry import Device
from rigwatch.core.scheduler import PollScheduler
from rigwatch.core.services import get_poll_scheduler, get_registry, get_telemetry_sink

logger = logging.getLogger(__name__)

router = APIRouter()


class DeviceCreate(BaseModel):
    ip_address: str
    name: str | None = None
    device_type: str | None = None  # auto-detected when omitted
    username: str | None = None
    password: str | None = None
    poll_interval: int | None = None  # ms

    @property
    def credentials(self) -> Optional[Credentials]:
        if not self.username:
            return None
        return Credentials(self.username, self.password or "")


class CredentialsUpdate(BaseModel):
    username: str
    password: str = ""


class ConnectionTest(BaseModel):
    ip_address: str
    device_type: str | None = None
    username: str | None = None
    password: str | None = None


def device_to_dict(device: Device, snapshot: Optional[DeviceSnapshot] = None) -> Dict[str, Any]:
    """Public view of a device; the stored password is never returned"""
    return {
        "id": device.id,
        "name": device.name,
        "ip_address": device.ip_address,
        "device_type": device.device_type,
        "auth_user": device.auth_user,
        "poll_interval": device.poll_interval,
        "is_online": device.is_online,
        "last_seen": device.last_seen.isoformat() if device.last_seen else None,
        "best_diff": device.best_diff,
        "snapshot": snapshot.to_dict() if snapshot else None,
    }


@router.get("/types")
async def get_device_types():
    """Get supported device types"""
    return {"types": get_supported_types()}


@router.get("/")
async def list_devices(
    registry=Depends(get_registry),
    poller: PollScheduler = Depends(get_poll_scheduler)
) -> List[Dict[str, Any]]:
    """List devices with their online flag and latest snapshot"""
    devices = await registry.list_devices()
    snapshots = poller.get_all_latest_snapshots()
    return [device_to_dict(device, snapshots.get(device.id)) for device in devices]


@router.post("/")
async def create_device(
    body: DeviceCreate,
    registry=Depends(get_registry),
    poller: PollScheduler = Depends(get_poll_scheduler)
):
    """Register a device and start polling it"""
    device_type = body.device_type
    if device_type is not None and device_type not in get_supported_types():
        raise HTTPException(status_code=400, detail=f"Invalid device type: {device_type}")

    if device_type is None:
        detection = await poller.detector.detect(body.ip_address, body.credentials)
        if detection.auth_required and detection.snapshot is None:
            raise HTTPException(
                status_code=401,
                detail={"auth_required": True, "device_type": detection.device_type, "error": detection.reason}
            )
        if not detection.found:
            raise HTTPException(status_code=404, detail=f"No compatible device at {body.ip_address}")
        device_type = detection.device_type

    device = await registry.add_device(
        name=body.name or body.ip_address,
        ip_address=body.ip_address,
        device_type=device_type,
        credentials=body.credentials,
        poll_interval=body.poll_interval
    )
    poller.start_polling(device)
    logger.info(f"➕ Added {device.device_type} device {device.name} at {device.ip_address}")
    return device_to_dict(device)


@router.delete("/{device_id}")
async def delete_device(
    device_id: int,
    registry=Depends(get_registry),
    poller: PollScheduler = Depends(get_poll_scheduler)
):
    """Stop polling and remove a device"""
    poller.stop_polling(device_id)
    if not await registry.remove_device(device_id):
        raise HTTPException(status_code=404, detail="Device not found")
    return {"status": "deleted", "id": device_id}


@router.get("/{device_id}/snapshot")
async def get_device_snapshot(
    device_id: int,
    registry=Depends(get_registry),
    poller: PollScheduler = Depends(get_poll_scheduler)
):
    """Latest snapshot of a device"""
    device = await registry.get_device(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")

    snapshot = poller.get_latest_snapshot(device_id)
    return {
        "device_id": device_id,
        "is_online": device.is_online,
        "snapshot": snapshot.to_dict() if snapshot else None,
    }


@router.get("/{device_id}/history")
async def get_device_history(
    device_id: int,
    limit: int = Query(100, ge=1, le=1000),
    registry=Depends(get_registry),
    sink=Depends(get_telemetry_sink)
):
    """Stored snapshots of a device, newest first"""
    if await registry.get_device(device_id) is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return {"device_id": device_id, "history": await sink.recent(device_id, limit)}


@router.put("/{device_id}/credentials")
async def update_device_credentials(
    device_id: int,
    body: CredentialsUpdate,
    registry=Depends(get_registry),
    poller: PollScheduler = Depends(get_poll_scheduler)
):
    """Store new credentials and restart polling, clearing an auth block"""
    device = await registry.get_device(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")

    credentials = Credentials(body.username, body.password)
    await registry.set_device_type(device_id, device.device_type, credentials)
    device.auth_user, device.auth_pass = credentials
    poller.start_polling(device)
    logger.info(f"🔑 Updated credentials for {device.name}")
    return device_to_dict(device)


@router.post("/test")
async def test_connection(
    body: ConnectionTest,
    poller: PollScheduler = Depends(get_poll_scheduler)
):
    """Try to read one snapshot without registering the device"""
    if body.device_type is not None and body.device_type not in get_supported_types():
        raise HTTPException(status_code=400, detail=f"Invalid device type: {body.device_type}")

    credentials = Credentials(body.username, body.password or "") if body.username else None
    return await poller.test_connection(body.ip_address, body.device_type, credentials)
