"""
Device registry: known client devices per user and their priority weights.
"""

import logging
from typing import Optional

from ..db.models import DeviceCreate, DeviceInfo
from ..db.repository import DeviceRegistryRepository

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Registers devices and answers priority lookups for conflict resolution."""

    def __init__(self, repo: DeviceRegistryRepository):
        self.repo = repo

    async def get_device(self, device_id: str, user_id: Optional[str] = None) -> Optional[DeviceInfo]:
        return await self.repo.get(device_id, user_id)

    async def get_priority(self, device_id: str, user_id: Optional[str] = None) -> int:
        """Priority of a device; unknown devices weigh 0."""
        device = await self.get_device(device_id, user_id)
        return device.priority if device else 0

    async def register_device(self, info: DeviceCreate, user_id: str) -> DeviceInfo:
        """Upsert by (device id, user id); re-registration refreshes last_seen, type and priority."""
        device_id = info.device_id or info.name
        device = await self.repo.upsert(
            device_id=device_id,
            name=info.name,
            device_type=info.type,
            priority=info.priority,
            user_id=user_id,
        )
        logger.info(f"Registered device '{device_id}' ({device.type.value}, priority {device.priority}) for user {user_id}")
        return device

    async def update_device_priority(
        self,
        device_id: str,
        priority: int,
        user_id: Optional[str] = None,
    ) -> Optional[DeviceInfo]:
        device = await self.repo.update_priority(device_id, priority, user_id)
        if device is None:
            logger.warning(f"Cannot update priority of unknown device '{device_id}'")
        return device

    async def get_devices_for_user(self, user_id: str) -> list[DeviceInfo]:
        """Devices ordered by priority desc, then last_seen desc."""
        return await self.repo.list_for_user(user_id)
