"""
File system service: cached directory listings and folder management
on a device storage.
"""

import asyncio
import logging

from pydantic import TypeAdapter, ValidationError

from bridge.transport import Transport
from config import ROOT_DIRECTORY_ID
from devices.models import Device
from filesystem.cache import DirectoryCache
from filesystem.models import FileEntry, RawFileRecord

logger = logging.getLogger(__name__)

_RECORDS = TypeAdapter(list[RawFileRecord])


def validate_folder_name(name: str) -> None:
    """Raise ValueError when ``name`` cannot be used as a folder name."""
    if not name or not name.strip():
        raise ValueError("Folder name must not be empty")
    if name in (".", ".."):
        raise ValueError(f"Invalid folder name '{name}'")
    if "/" in name or "\\" in name:
        raise ValueError(f"Invalid folder name '{name}': contains a path separator")
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in name):
        raise ValueError(f"Invalid folder name '{name}': contains control characters")
    try:
        name.encode("utf-8")
    except UnicodeEncodeError:
        raise ValueError(f"Invalid folder name {name!r}: not valid Unicode") from None


class FileSystemService:
    """Lists and mutates folders on a device through the transport."""

    def __init__(self, transport: Transport, cache: DirectoryCache) -> None:
        self._transport = transport
        self._cache = cache

    @property
    def cache(self) -> DirectoryCache:
        return self._cache

    async def list_files(
        self, device: Device, storage_id: int, parent_id: int = ROOT_DIRECTORY_ID
    ) -> list[FileEntry]:
        """Return the children of ``parent_id``, from cache when possible.

        An unreachable transport or an undecodable payload yields an empty
        list that is not cached.
        """
        cached = self._cache.get(device.id, storage_id, parent_id)
        if cached is not None:
            return cached

        try:
            payload = await asyncio.to_thread(self._transport.list_files, storage_id, parent_id)
        except Exception as e:
            logger.error(f"ListFiles raised for storage {storage_id:#x}: {e}")
            payload = None
        if payload is None:
            logger.warning(f"ListFiles returned nothing for storage {storage_id:#x}, parent {parent_id:#x}")
            return []

        try:
            records = _RECORDS.validate_json(payload)
        except ValidationError as e:
            logger.warning(f"Failed to decode file listing: {e}")
            return []

        entries = []
        for index, record in enumerate(records):
            if not record.name:
                logger.warning(f"Skipping file record {index} with an empty name")
                continue
            entries.append(record.to_entry())

        logger.debug(f"Listed {len(entries)} entries under {parent_id:#x} on {device.display_name}")
        self._cache.put(device.id, storage_id, parent_id, entries)
        return entries

    async def root_files(self, device: Device) -> list[FileEntry]:
        if not device.storage:
            logger.info(f"No storage found for device {device.id}")
            return []
        return await self.list_files(device, device.storage[0].storage_id, ROOT_DIRECTORY_ID)

    async def children(self, device: Device, parent: FileEntry) -> list[FileEntry]:
        return await self.list_files(device, parent.storage_id, parent.object_id)

    async def find_folder(
        self, device: Device, storage_id: int, parent_id: int, name: str
    ) -> int | None:
        entries = await self.list_files(device, storage_id, parent_id)
        folder = next((e for e in entries if e.is_directory and e.name == name), None)
        return folder.object_id if folder else None

    async def create_folder(
        self, device: Device, storage_id: int, parent_id: int, name: str
    ) -> int:
        """Create ``name`` under ``parent_id``. Returns its object id, 0 on failure."""
        validate_folder_name(name)

        try:
            result = await asyncio.to_thread(
                self._transport.create_folder, storage_id, parent_id, name
            )
        except Exception as e:
            logger.error(f"CreateFolder raised for '{name}': {e}")
            result = 0
        if result <= 0:
            logger.warning(f"CreateFolder failed for '{name}' under {parent_id:#x}")
            return 0

        self._cache.invalidate(device.id)
        folder_id = await self.find_folder(device, storage_id, parent_id, name)
        if folder_id is None:
            # Listing has not caught up yet; trust the bridge's id.
            folder_id = result
        logger.info(f"Created folder '{name}' ({folder_id:#x}) under {parent_id:#x}")
        return folder_id

    async def get_or_create_folder(
        self, device: Device, storage_id: int, parent_id: int, name: str
    ) -> int:
        existing = await self.find_folder(device, storage_id, parent_id, name)
        if existing is not None:
            return existing
        return await self.create_folder(device, storage_id, parent_id, name)

    def invalidate(self, device: Device) -> None:
        self._cache.invalidate(device.id)

    def clear_cache(self) -> None:
        self._cache.clear()
