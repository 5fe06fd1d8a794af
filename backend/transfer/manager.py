"""
Transfer Manager — orchestrates uploads, downloads and deletes.

Admits transfer intents, tracks every task from admission to its terminal
state, expands directory uploads into per-file bridge calls and keeps the
directory cache honest after every mutation.
"""

import asyncio
import logging
import os
from pathlib import Path

from bridge.transport import Transport
from config import (
    ALLOWED_UPLOAD_ROOTS,
    DIRECTORY_UPLOAD_SETTLE_DELAY,
    DOWNLOAD_SETTLE_DELAY,
    MAX_FILE_SIZE,
    ROOT_DIRECTORY_ID,
    UPLOAD_SETTLE_DELAY,
)
from devices.models import Device, Storage
from filesystem.models import FileEntry, format_size
from filesystem.service import FileSystemService
from security.paths import PathSecurityError, validate_path
from transfer.errors import AdmissionError
from transfer.models import (
    DeleteResult,
    DirectoryUploadResult,
    FailureReason,
    TransferDirection,
    TransferStatus,
    TransferTask,
)
from transfer.service import (
    SpeedTracker,
    collect_files,
    download_file,
    file_size,
    relative_path,
    upload_file,
    upload_without_task,
)

logger = logging.getLogger(__name__)


def _device_locator(storage_id: int, object_id: int) -> str:
    return f"device:{storage_id:#x}/{object_id:#x}"


class TransferManager:
    """Manages all active and completed transfer tasks."""

    def __init__(
        self,
        transport: Transport,
        filesystem: FileSystemService,
        allowed_roots=ALLOWED_UPLOAD_ROOTS,
        max_file_size: int = MAX_FILE_SIZE,
        upload_settle_delay: float = UPLOAD_SETTLE_DELAY,
        directory_settle_delay: float = DIRECTORY_UPLOAD_SETTLE_DELAY,
        download_settle_delay: float = DOWNLOAD_SETTLE_DELAY,
    ) -> None:
        self._transport = transport
        self._filesystem = filesystem
        self._allowed_roots = list(allowed_roots)
        self._max_file_size = max_file_size
        self._upload_settle_delay = upload_settle_delay
        self._directory_settle_delay = directory_settle_delay
        self._download_settle_delay = download_settle_delay

        self._active: list[TransferTask] = []
        self._completed: list[TransferTask] = []  # newest first
        self._workers: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._event_callbacks: list = []  # async fn(event_type, data)

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    # --- Task collections ---

    @property
    def active_tasks(self) -> list[TransferTask]:
        return list(self._active)

    @property
    def completed_tasks(self) -> list[TransferTask]:
        return list(self._completed)

    def get_task(self, task_id: str) -> TransferTask | None:
        for task in self._active + self._completed:
            if task.id == task_id:
                return task
        return None

    def get_transfers(self) -> dict[str, list[TransferTask]]:
        """Return active and completed tasks."""
        return {"active": self.active_tasks, "completed": self.completed_tasks}

    async def _add_active(self, task: TransferTask) -> None:
        async with self._lock:
            self._active.append(task)
        await self._emit("transfer_state", task.model_dump(mode="json"))

    async def _move_to_completed(self, task: TransferTask) -> None:
        """Move ``task`` out of the active collection. Only the first call counts."""
        async with self._lock:
            if any(t.id == task.id for t in self._completed):
                return
            self._active = [t for t in self._active if t.id != task.id]
            self._completed.insert(0, task)

    async def clear_completed(self) -> None:
        async with self._lock:
            self._completed.clear()
        await self._emit("tasks_cleared", {})

    # --- Lifecycle ---

    def _spawn(self, task: TransferTask, coro) -> asyncio.Task:
        worker = asyncio.create_task(coro)
        self._workers[task.id] = worker
        worker.add_done_callback(lambda _: self._workers.pop(task.id, None))
        return worker

    async def drain(self) -> None:
        """Wait until every running transfer worker has finished."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel all transfers and their workers."""
        await self.cancel_all()
        for worker in list(self._workers.values()):
            worker.cancel()
        self._workers.clear()
        logger.info("Transfer manager stopped")

    # --- Admission ---

    def admit_upload(self, device: Device, source: str | os.PathLike, storage_id: int) -> Path:
        """Validate an upload intent and return the canonical source path.

        Raises AdmissionError; a rejected intent never becomes a task.
        """
        raw = os.fspath(source)

        if not os.path.exists(raw):
            raise AdmissionError(raw, "File does not exist")
        if not os.path.isfile(raw):
            raise AdmissionError(raw, "Not a regular file")

        size = file_size(raw)
        if size is None:
            raise AdmissionError(raw, FailureReason.CANNOT_READ_FILE.value)
        if size > self._max_file_size:
            raise AdmissionError(
                raw, f"File exceeds the {format_size(self._max_file_size)} limit"
            )

        storage = device.storage_for(storage_id)
        if storage is None:
            raise AdmissionError(raw, f"Storage {storage_id:#x} not found")
        if size > storage.free_space:
            raise AdmissionError(
                raw,
                f"Insufficient storage space: needed {format_size(size)}, "
                f"available {format_size(storage.free_space)}",
            )

        try:
            return validate_path(raw, self._allowed_roots)
        except PathSecurityError as e:
            raise AdmissionError(raw, str(e)) from e

    # --- Uploads ---

    async def upload_file(
        self,
        device: Device,
        source: str | os.PathLike,
        storage_id: int,
        parent_id: int = ROOT_DIRECTORY_ID,
    ) -> TransferTask:
        """Admit and start a single-file upload."""
        path = self.admit_upload(device, source, storage_id)

        task = TransferTask(
            direction=TransferDirection.UPLOAD,
            file_name=path.name,
            source=str(path),
            destination=_device_locator(storage_id, parent_id),
            total_size=path.stat().st_size,
        )
        await self._add_active(task)
        logger.info(f"Queued upload of '{task.file_name}' to {task.destination}")

        self._spawn(task, self._upload_task(task, device, storage_id, parent_id))
        return task

    async def upload_files(
        self,
        device: Device,
        sources: list[str],
        storage_id: int,
        parent_id: int = ROOT_DIRECTORY_ID,
    ) -> tuple[list[TransferTask], list[str]]:
        """Start an upload per admitted file; rejected files are reported, not raised."""
        tasks = []
        rejections = []
        for source in sources:
            try:
                tasks.append(await self.upload_file(device, source, storage_id, parent_id))
            except AdmissionError as e:
                logger.warning(f"Upload rejected: {e}")
                rejections.append(str(e))
        return tasks, rejections

    async def _upload_task(
        self, task: TransferTask, device: Device, storage_id: int, parent_id: int
    ) -> None:
        """Task wrapper for uploading a single file."""
        await upload_file(
            self._transport,
            task,
            storage_id,
            parent_id,
            state_callback=self._on_state_change,
        )
        await self._refresh_after_mutation(device, storage_id, self._upload_settle_delay)

    async def upload_directory(
        self,
        device: Device,
        source_dir: str | os.PathLike,
        storage_id: int,
        parent_id: int = ROOT_DIRECTORY_ID,
        progress_handler=None,
    ) -> DirectoryUploadResult:
        """
        Upload a whole directory tree below ``parent_id``.

        The tree is validated once up front; files are then uploaded one by
        one in walk order, recreating the folder structure on the device.
        Per-file failures are collected and do not stop the run.

        Args:
            progress_handler: optional fn(files_done, files_total).
        """
        try:
            root = validate_path(source_dir, self._allowed_roots)
        except PathSecurityError as e:
            return DirectoryUploadResult(
                total_files=0, uploaded_files=0, failed_files=0, skipped_files=0,
                errors=[f"{os.fspath(source_dir)}: {e}"],
            )
        if not root.is_dir():
            return DirectoryUploadResult(
                total_files=0, uploaded_files=0, failed_files=0, skipped_files=0,
                errors=[f"{root}: Not a directory"],
            )

        files = await asyncio.to_thread(collect_files, root)
        if not files:
            return DirectoryUploadResult(
                total_files=0, uploaded_files=0, failed_files=0, skipped_files=0,
                errors=["No files found in directory"],
            )

        sizes = [await asyncio.to_thread(file_size, f) or 0 for f in files]
        total_size = sum(sizes)

        storage = device.storage_for(storage_id)
        if storage is None:
            return DirectoryUploadResult(
                total_files=len(files), uploaded_files=0, failed_files=len(files),
                skipped_files=0, errors=[f"Storage {storage_id:#x} not found"],
            )
        if total_size > storage.free_space:
            return DirectoryUploadResult(
                total_files=len(files), uploaded_files=0, failed_files=len(files),
                skipped_files=0,
                errors=[
                    f"Insufficient storage space: needed {format_size(total_size)}, "
                    f"available {format_size(storage.free_space)}"
                ],
            )

        task = TransferTask(
            direction=TransferDirection.UPLOAD,
            file_name=root.name,
            source=str(root),
            destination=_device_locator(storage_id, parent_id),
            total_size=total_size,
            is_directory=True,
        )
        await self._add_active(task)
        task.update_status(TransferStatus.TRANSFERRING)
        await self._on_state_change(task)
        logger.info(f"Uploading directory '{root.name}': {len(files)} files, {total_size} bytes")

        worker = self._spawn(task, self._directory_task(
            task, device, root, files, sizes, storage, parent_id, progress_handler
        ))
        # The run belongs to the manager; a caller going away does not stop it.
        return await asyncio.shield(worker)

    async def _directory_task(
        self,
        task: TransferTask,
        device: Device,
        root: Path,
        files: list[Path],
        sizes: list[int],
        storage: Storage,
        parent_id: int,
        progress_handler,
    ) -> DirectoryUploadResult:
        """Worker uploading the files of an admitted directory tree."""
        storage_id = storage.storage_id
        target_id = await self._resolve_folder(device, storage_id, parent_id, root.name)
        if not target_id:
            reason = f"{FailureReason.TARGET_FOLDER_FAILED.value}: {root.name}"
            if task.update_status(TransferStatus.FAILED, reason):
                await self._on_state_change(task)
            return DirectoryUploadResult(
                total_files=len(files), uploaded_files=0, failed_files=len(files),
                skipped_files=0, errors=[reason], task_id=task.id,
            )

        uploaded = failed = skipped = 0
        errors: list[str] = []
        transferred = 0
        folder_cache: dict[str, int] = {}
        tracker = SpeedTracker()

        for index, (path, size) in enumerate(zip(files, sizes)):
            if task.is_cancelled:
                skipped = len(files) - index
                errors.append("Upload cancelled by user")
                break

            # Earlier files of this run already used part of the free space.
            remaining = max(storage.free_space - transferred, 0)
            if size > remaining:
                failed += 1
                errors.append(
                    f"Insufficient storage for {path.name}: needed {format_size(size)}, "
                    f"available {format_size(remaining)}"
                )
                continue

            rel = relative_path(root, path)
            if rel is None:
                failed += 1
                errors.append(f"Failed to get relative path: {path.name}")
                continue

            folder_id = await self._ensure_subfolders(
                device, storage_id, target_id, rel, folder_cache
            )
            if not folder_id:
                failed += 1
                errors.append(f"Failed to create subdirectory: {rel}")
                continue

            if await upload_without_task(self._transport, storage_id, folder_id, path):
                uploaded += 1
                transferred += size
                tracker.record(size)
            else:
                failed += 1
                errors.append(f"Failed to upload: {path.name}")

            task.update_progress(transferred, tracker.get_speed())
            await self._on_progress(task)
            if progress_handler is not None:
                progress_handler(index + 1, len(files))

        if task.is_cancelled:
            final, reason = TransferStatus.CANCELLED, None
        elif uploaded == 0 and failed > 0:
            final, reason = TransferStatus.FAILED, FailureReason.ALL_FILES_FAILED.value
        else:
            final, reason = TransferStatus.COMPLETED, None

        if task.update_status(final, reason):
            await self._on_state_change(task)
        else:
            await self._move_to_completed(task)

        logger.info(
            f"Directory upload '{root.name}' finished: {uploaded} uploaded, "
            f"{failed} failed, {skipped} skipped"
        )
        await self._refresh_after_mutation(device, storage_id, self._directory_settle_delay)

        return DirectoryUploadResult(
            total_files=len(files),
            uploaded_files=uploaded,
            failed_files=failed,
            skipped_files=skipped,
            errors=errors,
            task_id=task.id,
        )

    async def _resolve_folder(
        self, device: Device, storage_id: int, parent_id: int, name: str
    ) -> int:
        try:
            return await self._filesystem.get_or_create_folder(device, storage_id, parent_id, name)
        except ValueError as e:
            logger.warning(f"Cannot create folder '{name}': {e}")
            return 0

    async def _ensure_subfolders(
        self,
        device: Device,
        storage_id: int,
        base_folder_id: int,
        rel: str,
        folder_cache: dict[str, int],
    ) -> int:
        """Folder id for the parent directory of ``rel``, creating missing levels."""
        current_id = base_folder_id
        prefix = ""
        for component in rel.split("/")[:-1]:
            prefix = f"{prefix}/{component}" if prefix else component
            cached = folder_cache.get(prefix)
            if cached is not None:
                current_id = cached
                continue

            folder_id = await self._resolve_folder(device, storage_id, current_id, component)
            if not folder_id:
                return 0
            folder_cache[prefix] = folder_id
            current_id = folder_id
        return current_id

    # --- Downloads ---

    async def download_file(
        self,
        device: Device,
        entry: FileEntry,
        destination: str | os.PathLike,
        replace: bool = False,
    ) -> TransferTask:
        """Start downloading ``entry`` to the local ``destination`` path."""
        if entry.is_directory:
            raise AdmissionError(entry.name, "Folders cannot be downloaded")

        task = TransferTask(
            direction=TransferDirection.DOWNLOAD,
            file_name=entry.name,
            source=_device_locator(entry.storage_id, entry.object_id),
            destination=os.fspath(destination),
            total_size=entry.size,
        )
        await self._add_active(task)
        logger.info(f"Queued download of '{entry.name}' to {task.destination}")

        self._spawn(task, self._download_task(task, device, entry, replace))
        return task

    async def download_files(
        self,
        device: Device,
        entries: list[FileEntry],
        directory: str | os.PathLike,
        replace: bool = False,
    ) -> list[TransferTask]:
        """Download every file of ``entries`` into ``directory``.

        Folders are skipped, and so are files already present unless
        ``replace`` is set.
        """
        tasks = []
        for entry in entries:
            if entry.is_directory:
                continue
            name = Path(entry.name).name
            if name in ("", ".", ".."):
                logger.warning(f"Skipping download of unsafe name {entry.name!r}")
                continue
            destination = Path(directory) / name
            if destination.exists() and not replace:
                logger.info(f"Skipping existing file {destination}")
                continue
            tasks.append(await self.download_file(device, entry, destination, replace=replace))
        return tasks

    async def _download_task(
        self, task: TransferTask, device: Device, entry: FileEntry, replace: bool
    ) -> None:
        """Task wrapper for downloading a single file."""
        await download_file(
            self._transport,
            task,
            entry.object_id,
            replace,
            state_callback=self._on_state_change,
            settle_delay=self._download_settle_delay,
        )

    # --- Cancellation ---

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel an active task. Returns False when it is not active."""
        async with self._lock:
            task = next((t for t in self._active if t.id == task_id), None)
        if task is None:
            return False

        task.is_cancelled = True
        await self._bridge_call(self._transport.cancel_task, task_id)
        if task.update_status(TransferStatus.CANCELLED):
            await self._on_state_change(task)
        else:
            await self._move_to_completed(task)
        logger.info(f"Cancelled '{task.file_name}'")
        return True

    async def cancel_all(self) -> None:
        """Cancel every active task, e.g. when the device disconnects."""
        async with self._lock:
            task_ids = [t.id for t in self._active]
        for task_id in task_ids:
            await self.cancel_task(task_id)

    # --- Deletes ---

    async def delete_objects(self, device: Device, entries: list[FileEntry]) -> DeleteResult:
        """Delete each entry independently, then refresh the affected listings."""
        result = DeleteResult()
        for entry in entries:
            code = await self._bridge_call(self._transport.delete_object, entry.object_id)
            if code > 0:
                result.deleted += 1
            else:
                logger.warning(f"Failed to delete '{entry.name}' ({entry.object_id:#x})")
                result.failed.append(entry.name)

        self._filesystem.invalidate(device)
        for storage_id, parent_id in {(e.storage_id, e.parent_id) for e in entries}:
            await self._filesystem.list_files(device, storage_id, parent_id)
        await self._emit("file_list_refresh", {"device_id": device.id})
        return result

    # --- Post-mutation housekeeping ---

    async def _bridge_call(self, fn, *args) -> int:
        """Run a status-returning bridge call; a raising bridge reads as failure."""
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as e:
            logger.error(f"Bridge call {getattr(fn, '__name__', fn)} raised: {e}")
            return 0

    async def _refresh_after_mutation(
        self, device: Device, storage_id: int, settle_delay: float
    ) -> None:
        if await self._bridge_call(self._transport.refresh_storage, storage_id) <= 0:
            logger.debug(f"RefreshStorage failed for storage {storage_id:#x}")
        if await self._bridge_call(self._transport.reset_device_cache) <= 0:
            logger.debug("ResetDeviceCache failed")
        self._filesystem.invalidate(device)

        # Let the bridge's own counters catch up before the UI re-lists.
        if settle_delay > 0:
            await asyncio.sleep(settle_delay)
        await self._emit("file_list_refresh", {"device_id": device.id})

    # --- Callbacks ---

    async def _on_progress(self, task: TransferTask) -> None:
        await self._emit("transfer_progress", task.model_dump(mode="json"))

    async def _on_state_change(self, task: TransferTask) -> None:
        """Publish a state change; terminal tasks move to the completed list."""
        if task.is_terminal:
            await self._move_to_completed(task)
        await self._emit("transfer_state", task.model_dump(mode="json"))

        notification = None
        if task.status == TransferStatus.COMPLETED:
            verb = "uploaded" if task.direction == TransferDirection.UPLOAD else "downloaded"
            notification = {
                "type": "success",
                "message": f"'{task.file_name}' {verb} successfully!",
            }
        elif task.status == TransferStatus.FAILED:
            notification = {
                "type": "error",
                "message": f"Transfer of '{task.file_name}' failed: {task.error_message}",
            }
        elif task.status == TransferStatus.CANCELLED:
            notification = {
                "type": "info",
                "message": f"Transfer of '{task.file_name}' cancelled.",
            }

        if notification:
            await self._emit("notification", notification)
