"""
Device registry API routes.
"""

from fastapi import APIRouter, HTTPException, status

from ..deps import ApiKey, CallerId, Devices
from ...db.models import DeviceCreate, DeviceInfo, DevicePriorityUpdate

router = APIRouter(prefix="/devices", tags=["devices"])


@router.post("", response_model=DeviceInfo)
async def register_device(
    data: DeviceCreate,
    devices: Devices,
    caller_id: CallerId,
    api_key: ApiKey,
) -> DeviceInfo:
    """Register the calling device, or refresh it if already known."""
    return await devices.register_device(data, caller_id)


@router.get("", response_model=list[DeviceInfo])
async def list_devices(
    devices: Devices,
    caller_id: CallerId,
    api_key: ApiKey,
) -> list[DeviceInfo]:
    """The caller's devices, highest priority first."""
    return await devices.get_devices_for_user(caller_id)


@router.patch("/{device_id}/priority", response_model=DeviceInfo)
async def update_device_priority(
    device_id: str,
    data: DevicePriorityUpdate,
    devices: Devices,
    caller_id: CallerId,
    api_key: ApiKey,
) -> DeviceInfo:
    """Change a device's priority weight."""
    device = await devices.update_device_priority(device_id, data.priority, caller_id)
    if not device:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Device not found",
        )
    return device
