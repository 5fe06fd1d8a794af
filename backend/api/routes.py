"""REST API routes for MTP Booth."""

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from config import DEFAULT_DOWNLOAD_DIR, MAX_REPORTED_ERRORS, ROOT_DIRECTORY_ID
from devices.models import Device

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_device_registry = None
_filesystem = None
_transfer_manager = None


def init_routes(device_registry, filesystem, transfer_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _device_registry, _filesystem, _transfer_manager
    _device_registry = device_registry
    _filesystem = filesystem
    _transfer_manager = transfer_manager


async def _require_device(device_id: str) -> Device:
    device = await _device_registry.get_device(device_id)
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


# --- Devices ---

def _device_payload(device: Device) -> dict:
    data = device.model_dump()
    data["display_name"] = device.display_name
    data["storage"] = [
        {**s.model_dump(), "used_space": s.used_space, "usage_percentage": s.usage_percentage}
        for s in device.storage
    ]
    return data


@router.get("/devices")
async def list_devices():
    """Return connected devices, the selection and the scanner state."""
    devices = await _device_registry.get_devices()
    selected = _device_registry.selected_device
    return {
        "devices": [_device_payload(d) for d in devices],
        "selected_device_id": selected.id if selected else None,
        "connection_error": _device_registry.connection_error,
        "scan_state": _device_registry.state.model_dump(mode="json"),
    }


@router.post("/devices/refresh")
async def manual_refresh():
    await _device_registry.manual_refresh()
    return {"status": "refreshing"}


@router.post("/devices/{device_id}/select")
async def select_device(device_id: str):
    try:
        device = await _device_registry.select_device(device_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Device not found")
    return {"selected_device_id": device.id}


# --- Files ---

@router.get("/devices/{device_id}/files")
async def list_files(device_id: str, storage_id: int | None = None,
                     parent_id: int = ROOT_DIRECTORY_ID):
    device = await _require_device(device_id)
    if storage_id is None:
        if not device.storage:
            return {"files": []}
        storage_id = device.storage[0].storage_id
    entries = await _filesystem.list_files(device, storage_id, parent_id)
    return {
        "files": [
            {**e.model_dump(mode="json"), "formatted_size": e.formatted_size}
            for e in entries
        ]
    }


class CreateFolderBody(BaseModel):
    storage_id: int
    parent_id: int = ROOT_DIRECTORY_ID
    name: str


@router.post("/devices/{device_id}/folders")
async def create_folder(device_id: str, body: CreateFolderBody):
    device = await _require_device(device_id)
    try:
        folder_id = await _filesystem.create_folder(
            device, body.storage_id, body.parent_id, body.name
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not folder_id:
        raise HTTPException(status_code=502, detail=f"Failed to create folder '{body.name}'")
    return {"object_id": folder_id}


class DeleteBody(BaseModel):
    storage_id: int
    parent_id: int = ROOT_DIRECTORY_ID
    object_ids: list[int]


@router.post("/devices/{device_id}/files/delete")
async def delete_files(device_id: str, body: DeleteBody):
    device = await _require_device(device_id)
    entries = await _filesystem.list_files(device, body.storage_id, body.parent_id)
    wanted = set(body.object_ids)
    targets = [e for e in entries if e.object_id in wanted]
    if not targets:
        raise HTTPException(status_code=404, detail="No matching files")
    result = await _transfer_manager.delete_objects(device, targets)
    return result.model_dump()


# --- Transfers ---

@router.get("/transfers")
async def list_transfers():
    """Return all transfers (active + completed)."""
    transfers = _transfer_manager.get_transfers()
    return {
        key: [t.model_dump(mode="json") for t in tasks]
        for key, tasks in transfers.items()
    }


class UploadBody(BaseModel):
    device_id: str
    storage_id: int
    parent_id: int = ROOT_DIRECTORY_ID
    file_paths: list[str]


@router.post("/transfers/upload")
async def upload_files(body: UploadBody):
    """Start uploading local files; the backend reads them directly from disk."""
    device = await _require_device(body.device_id)
    tasks, rejections = await _transfer_manager.upload_files(
        device, body.file_paths, body.storage_id, body.parent_id
    )
    if not tasks and rejections:
        raise HTTPException(status_code=400, detail=rejections[:MAX_REPORTED_ERRORS])
    return {
        "transfers": [t.model_dump(mode="json") for t in tasks],
        "rejected": rejections[:MAX_REPORTED_ERRORS],
        "message": f"Queued {len(tasks)} file(s) for upload",
    }


class UploadDirectoryBody(BaseModel):
    device_id: str
    storage_id: int
    parent_id: int = ROOT_DIRECTORY_ID
    directory: str


@router.post("/transfers/upload-directory")
async def upload_directory(body: UploadDirectoryBody):
    device = await _require_device(body.device_id)
    result = await _transfer_manager.upload_directory(
        device, body.directory, body.storage_id, body.parent_id
    )
    data = result.model_dump()
    data["errors"] = result.errors[:MAX_REPORTED_ERRORS]
    return data


class DownloadBody(BaseModel):
    device_id: str
    storage_id: int
    parent_id: int = ROOT_DIRECTORY_ID
    object_ids: list[int]
    directory: str = DEFAULT_DOWNLOAD_DIR
    replace: bool = False


@router.post("/transfers/download")
async def download_files(body: DownloadBody):
    device = await _require_device(body.device_id)
    entries = await _filesystem.list_files(device, body.storage_id, body.parent_id)
    wanted = set(body.object_ids)
    targets = [e for e in entries if e.object_id in wanted]
    if not targets:
        raise HTTPException(status_code=404, detail="No matching files")
    tasks = await _transfer_manager.download_files(
        device, targets, body.directory, replace=body.replace
    )
    return {
        "transfers": [t.model_dump(mode="json") for t in tasks],
        "message": f"Queued {len(tasks)} file(s) for download",
    }


@router.post("/transfers/cancel-all")
async def cancel_all_transfers():
    await _transfer_manager.cancel_all()
    return {"status": "cancelled"}


@router.post("/transfers/{task_id}/cancel")
async def cancel_transfer(task_id: str):
    if not await _transfer_manager.cancel_task(task_id):
        raise HTTPException(status_code=404, detail="No active transfer with that id")
    return {"status": "cancelled"}


@router.delete("/transfers/completed")
async def clear_completed():
    await _transfer_manager.clear_completed()
    return {"status": "cleared"}
