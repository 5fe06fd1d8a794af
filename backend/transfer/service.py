"""
Per-file transfer routines run against the bridge.

Every bridge call blocks, so each one runs on a worker thread through
``asyncio.to_thread``; the event loop, the device scanner and other
transfers keep running meanwhile.
"""

import asyncio
import logging
import os
import time
import uuid
from pathlib import Path

from transfer.models import FailureReason, TransferStatus, TransferTask

logger = logging.getLogger(__name__)


class SpeedTracker:
    """Rolling average speed calculator."""

    def __init__(self, window: float = 2.0, clock=time.monotonic):
        self._window = window
        self._clock = clock
        self._samples: list[tuple[float, int]] = []

    def record(self, byte_count: int) -> None:
        now = self._clock()
        self._samples.append((now, byte_count))
        cutoff = now - self._window
        self._samples = [(t, b) for t, b in self._samples if t >= cutoff]

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        if len(self._samples) < 2:
            return 0.0
        total_bytes = sum(b for _, b in self._samples[1:])
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        return total_bytes / elapsed


# --- Local tree helpers ---

def collect_files(directory: Path) -> list[Path]:
    """Regular, non-hidden files under ``directory`` in a stable walk order.

    Hidden directories are not descended and symbolic links are ignored.
    """
    files: list[Path] = []
    for root, dirnames, filenames in os.walk(directory):
        dirnames[:] = sorted(
            d for d in dirnames
            if not d.startswith(".") and not os.path.islink(os.path.join(root, d))
        )
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            path = Path(root) / name
            if path.is_symlink() or not path.is_file():
                continue
            files.append(path)
    return files


def relative_path(base: Path, target: Path) -> str | None:
    """POSIX-style path of ``target`` relative to ``base``, None when outside."""
    try:
        return target.relative_to(base).as_posix()
    except ValueError:
        return None


def file_size(path: str | Path) -> int | None:
    try:
        return os.path.getsize(path)
    except OSError:
        return None


async def device_reachable(transport) -> bool:
    """Probe the bridge; an empty or missing scan means the device is gone."""
    try:
        payload = await asyncio.to_thread(transport.scan)
    except Exception as e:
        logger.warning(f"Reachability probe failed: {e}")
        return False
    return bool(payload)


# --- Transfers ---

async def _finish(task: TransferTask, state_callback, status: TransferStatus,
                  reason: str | None = None) -> None:
    if task.update_status(status, reason):
        await state_callback(task)


async def upload_file(
    transport,
    task: TransferTask,
    storage_id: int,
    parent_id: int,
    state_callback,
) -> None:
    """
    Upload ``task.source`` into ``parent_id`` on ``storage_id``.

    Args:
        transport: The bridge.
        task: Admitted TransferTask (mutated in place).
        storage_id: Target storage.
        parent_id: Target folder object id.
        state_callback: async fn(task) called on every state change.
    """
    if task.update_status(TransferStatus.TRANSFERRING):
        await state_callback(task)

    size = await asyncio.to_thread(file_size, task.source)
    if size is None:
        await _finish(task, state_callback, TransferStatus.FAILED, FailureReason.CANNOT_READ_FILE.value)
        return

    if task.is_cancelled:
        await _finish(task, state_callback, TransferStatus.CANCELLED)
        return

    try:
        result = await asyncio.to_thread(
            transport.upload_file, storage_id, parent_id, task.source, task.id
        )
    except Exception as e:
        logger.error(f"Bridge raised while uploading '{task.file_name}': {e}")
        result = 0

    if task.is_cancelled:
        await _finish(task, state_callback, TransferStatus.CANCELLED)
    elif result > 0:
        task.update_progress(size)
        await _finish(task, state_callback, TransferStatus.COMPLETED)
        logger.info(f"Uploaded '{task.file_name}' ({size} bytes)")
    else:
        logger.warning(f"Upload of '{task.file_name}' failed with code {result}")
        await _finish(task, state_callback, TransferStatus.FAILED, FailureReason.UPLOAD_FAILED.value)


async def upload_without_task(
    transport, storage_id: int, parent_id: int, source: Path
) -> bool:
    """Upload one file of a pre-validated batch. No task is tracked."""
    if not await asyncio.to_thread(source.is_file):
        return False
    try:
        result = await asyncio.to_thread(
            transport.upload_file, storage_id, parent_id, str(source), str(uuid.uuid4())
        )
    except Exception as e:
        logger.error(f"Bridge raised while uploading {source}: {e}")
        return False
    return result > 0


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")


async def download_file(
    transport,
    task: TransferTask,
    object_id: int,
    replace: bool,
    state_callback,
    settle_delay: float = 0.0,
) -> None:
    """
    Download ``object_id`` to ``task.destination``.

    A successful bridge call is only trusted once the destination exists
    with a non-zero size.
    """
    destination = Path(task.destination)

    if task.update_status(TransferStatus.TRANSFERRING):
        await state_callback(task)

    try:
        await asyncio.to_thread(destination.parent.mkdir, parents=True, exist_ok=True)
    except OSError as e:
        await _finish(task, state_callback, TransferStatus.FAILED,
                      f"{FailureReason.CANNOT_CREATE_DIRECTORY.value}: {e}")
        return

    if await asyncio.to_thread(destination.exists):
        if not replace:
            await _finish(task, state_callback, TransferStatus.FAILED, FailureReason.FILE_EXISTS.value)
            return
        try:
            await asyncio.to_thread(destination.unlink)
        except OSError as e:
            await _finish(task, state_callback, TransferStatus.FAILED,
                          f"{FailureReason.CANNOT_REPLACE_FILE.value}: {e}")
            return

    if not await device_reachable(transport):
        await _finish(task, state_callback, TransferStatus.FAILED, FailureReason.DEVICE_DISCONNECTED.value)
        return

    if task.is_cancelled:
        await _finish(task, state_callback, TransferStatus.CANCELLED)
        return

    try:
        result = await asyncio.to_thread(
            transport.download_file, object_id, str(destination), task.id
        )
    except Exception as e:
        logger.error(f"Bridge raised while downloading '{task.file_name}': {e}")
        result = 0

    if settle_delay > 0:
        await asyncio.sleep(settle_delay)

    if task.is_cancelled:
        await _finish(task, state_callback, TransferStatus.CANCELLED)
        return

    if result > 0:
        size = await asyncio.to_thread(file_size, destination)
        if size:
            task.update_progress(size)
            await _finish(task, state_callback, TransferStatus.COMPLETED)
            logger.info(f"Downloaded '{task.file_name}' ({size} bytes)")
        else:
            await asyncio.to_thread(_remove_quietly, destination)
            logger.warning(f"Download of '{task.file_name}' produced no data")
            await _finish(task, state_callback, TransferStatus.FAILED, FailureReason.CORRUPTED_DOWNLOAD.value)
        return

    if await device_reachable(transport):
        reason = FailureReason.DOWNLOAD_FAILED
    else:
        reason = FailureReason.DEVICE_DISCONNECTED_CHECK_USB
    logger.warning(f"Download of '{task.file_name}' failed with code {result}")
    await _finish(task, state_callback, TransferStatus.FAILED, reason.value)
