"""The blocking device bridge consumed by every service."""

from typing import Protocol


class Transport(Protocol):
    """Synchronous MTP bridge.

    Every call blocks the calling thread; services run them through
    ``asyncio.to_thread``. String results are JSON payloads, or ``None`` when
    the bridge has nothing to report or failed. Integer results are > 0 on
    success.
    """

    def scan(self) -> str | None: ...

    def list_files(self, storage_id: int, parent_id: int) -> str | None: ...

    def upload_file(
        self, storage_id: int, parent_id: int, source_path: str, task_id: str
    ) -> int: ...

    def download_file(self, object_id: int, dest_path: str, task_id: str) -> int: ...

    def create_folder(self, storage_id: int, parent_id: int, name: str) -> int: ...

    def delete_object(self, object_id: int) -> int: ...

    def cancel_task(self, task_id: str) -> None: ...

    def refresh_storage(self, storage_id: int) -> int: ...

    def reset_device_cache(self) -> int: ...
