"""Shared fixtures: a scriptable in-memory bridge and wired services."""

from __future__ import annotations

import json
import sys
import threading
from collections import deque
from pathlib import Path

import pytest

_BACKEND = Path(__file__).resolve().parents[1] / "backend"
if str(_BACKEND) not in sys.path:
    sys.path.insert(0, str(_BACKEND))

from config import ROOT_DIRECTORY_ID  # noqa: E402
from devices.models import Device, Storage  # noqa: E402
from filesystem.cache import DirectoryCache  # noqa: E402
from filesystem.service import FileSystemService  # noqa: E402
from transfer.manager import TransferManager  # noqa: E402

STORAGE_ID = 0x10001
GIB = 1024 * 1024 * 1024


def device_record(index: int, serial: str = "", name: str = "Pixel",
                  free_space: int = 8 * GIB, capacity: int = 16 * GIB) -> dict:
    """A device record shaped like the bridge's Scan output."""
    return {
        "id": index,
        "name": name,
        "manufacturer": "Google",
        "model": "Pixel 8",
        "serialNumber": serial,
        "storage": [{
            "id": STORAGE_ID,
            "description": "Internal shared storage",
            "freeSpace": free_space,
            "maxCapacity": capacity,
        }],
        "mtpSupport": {
            "mtpVersion": "1.0",
            "deviceVersion": "14",
            "vendorExtension": "android.com: 1.0;",
        },
    }


def devices_json(*records: dict) -> str:
    return json.dumps(list(records))


def file_record(object_id: int, name: str, parent_id: int = ROOT_DIRECTORY_ID,
                size: int = 0, is_folder: bool = False, mod_time: int = 0) -> dict:
    return {
        "id": object_id,
        "parentId": parent_id,
        "storageId": STORAGE_ID,
        "name": name,
        "size": size,
        "isFolder": is_folder,
        "modTime": mod_time,
    }


class FakeTransport:
    """In-memory stand-in for the native bridge."""

    def __init__(self) -> None:
        self.scan_payload: str | None = devices_json(device_record(0, serial="SER1"))
        self.scan_queue: deque = deque()
        self.scan_calls = 0
        self.scan_gate: threading.Event | None = None

        self.listings: dict[tuple[int, int], list[dict]] = {}
        self.list_payload_override: str | None = None
        self.list_calls: list[tuple[int, int]] = []

        self.uploads: list[tuple[int, int, str, str]] = []
        self.failing_uploads: set[str] = set()
        self.raising_uploads: set[str] = set()
        self.upload_gate: threading.Event | None = None
        self.on_upload = None

        self.downloads: list[tuple[int, str, str]] = []
        self.download_result = 1
        self.download_content = b"payload"
        self.download_error: Exception | None = None

        self.created_folders: list[tuple[int, int, str]] = []
        self.failing_folders: set[str] = set()
        self.folder_ids_visible = True
        self._next_object_id = 1000

        self.deleted: list[int] = []
        self.failing_deletes: set[int] = set()
        self.raising_deletes: set[int] = set()

        self.cancelled: list[str] = []
        self.storage_refreshes: list[int] = []
        self.cache_resets = 0

    def scan(self) -> str | None:
        self.scan_calls += 1
        if self.scan_gate is not None:
            self.scan_gate.wait(timeout=5)
        if self.scan_queue:
            return self.scan_queue.popleft()
        return self.scan_payload

    def list_files(self, storage_id: int, parent_id: int) -> str | None:
        self.list_calls.append((storage_id, parent_id))
        if self.list_payload_override is not None:
            return self.list_payload_override
        return json.dumps(self.listings.get((storage_id, parent_id), []))

    def upload_file(self, storage_id: int, parent_id: int, source_path: str, task_id: str) -> int:
        self.uploads.append((storage_id, parent_id, source_path, task_id))
        if self.on_upload is not None:
            self.on_upload(source_path)
        if self.upload_gate is not None:
            self.upload_gate.wait(timeout=5)
        if Path(source_path).name in self.raising_uploads:
            raise OSError(f"bridge crashed uploading {source_path}")
        return 0 if Path(source_path).name in self.failing_uploads else 1

    def download_file(self, object_id: int, dest_path: str, task_id: str) -> int:
        self.downloads.append((object_id, dest_path, task_id))
        if self.download_error is not None:
            raise self.download_error
        if self.download_result > 0:
            Path(dest_path).write_bytes(self.download_content)
        return self.download_result

    def create_folder(self, storage_id: int, parent_id: int, name: str) -> int:
        self.created_folders.append((storage_id, parent_id, name))
        if name in self.failing_folders:
            return 0
        self._next_object_id += 1
        object_id = self._next_object_id
        if self.folder_ids_visible:
            self.listings.setdefault((storage_id, parent_id), []).append(
                file_record(object_id, name, parent_id=parent_id, is_folder=True)
            )
        return object_id

    def delete_object(self, object_id: int) -> int:
        self.deleted.append(object_id)
        if object_id in self.raising_deletes:
            raise OSError(f"bridge crashed deleting {object_id}")
        return 0 if object_id in self.failing_deletes else 1

    def cancel_task(self, task_id: str) -> None:
        self.cancelled.append(task_id)

    def refresh_storage(self, storage_id: int) -> int:
        self.storage_refreshes.append(storage_id)
        return 1

    def reset_device_cache(self) -> int:
        self.cache_resets += 1
        return 1


class EventRecorder:
    """Async event sink collecting (event_type, data) pairs."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    async def __call__(self, event_type: str, data: dict) -> None:
        self.events.append((event_type, data))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def cache() -> DirectoryCache:
    return DirectoryCache(ttl=None)


@pytest.fixture
def filesystem(transport, cache) -> FileSystemService:
    return FileSystemService(transport, cache)


@pytest.fixture
def upload_root(tmp_path: Path) -> Path:
    root = tmp_path.resolve() / "Documents"
    root.mkdir()
    return root


@pytest.fixture
def manager(transport, filesystem, upload_root) -> TransferManager:
    return TransferManager(
        transport,
        filesystem,
        allowed_roots=[upload_root],
        upload_settle_delay=0,
        directory_settle_delay=0,
        download_settle_delay=0,
    )


@pytest.fixture
def device() -> Device:
    return Device(
        id="device-1",
        device_index=0,
        name="Pixel",
        manufacturer="Google",
        model="Pixel 8",
        serial_number="SER1",
        storage=[Storage(storage_id=STORAGE_ID, max_capacity=16 * GIB,
                         free_space=GIB, description="Internal shared storage")],
    )
