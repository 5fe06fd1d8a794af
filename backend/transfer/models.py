"""Pydantic models for file transfers."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class TransferStatus(str, Enum):
    """All possible states for a transfer task."""
    PENDING = "pending"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TransferStatus.COMPLETED,
            TransferStatus.FAILED,
            TransferStatus.CANCELLED,
        )


class TransferDirection(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


class FailureReason(str, Enum):
    """User-facing reasons attached to failed tasks."""
    UPLOAD_FAILED = "Upload failed"
    CANNOT_READ_FILE = "Cannot read file information"
    DOWNLOAD_FAILED = "Download failed, check the connection and available storage"
    DEVICE_DISCONNECTED = "Device disconnected, please reconnect"
    DEVICE_DISCONNECTED_CHECK_USB = "Device disconnected, check the USB connection"
    CORRUPTED_DOWNLOAD = "Downloaded file is invalid or corrupted"
    FILE_EXISTS = "File already exists at destination"
    CANNOT_CREATE_DIRECTORY = "Cannot create destination directory"
    CANNOT_REPLACE_FILE = "Cannot replace existing file"
    TARGET_FOLDER_FAILED = "Failed to create target folder"
    ALL_FILES_FAILED = "All files failed to upload"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TransferTask(BaseModel):
    """One tracked transfer, or the aggregate of a directory upload."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    direction: TransferDirection
    file_name: str
    source: str
    destination: str
    total_size: int
    transferred_size: int = 0
    status: TransferStatus = TransferStatus.PENDING
    speed: float = 0.0  # bytes/sec
    error_message: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_cancelled: bool = False
    is_directory: bool = False

    @property
    def progress(self) -> float:
        if self.total_size <= 0:
            return 0.0
        return min(self.transferred_size / self.total_size, 1.0)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def update_status(self, status: TransferStatus, error_message: str | None = None) -> bool:
        """Apply a status transition. Terminal statuses are final.

        Returns False when the task was already terminal and nothing changed.
        """
        if self.status.is_terminal:
            return False

        self.status = status
        if status == TransferStatus.TRANSFERRING and self.start_time is None:
            self.start_time = _now()
        if status.is_terminal:
            self.end_time = _now()
            self.speed = 0.0
        if status == TransferStatus.FAILED:
            self.error_message = error_message
        return True

    def update_progress(self, transferred: int, speed: float = 0.0) -> None:
        if self.status.is_terminal:
            return
        self.transferred_size = max(self.transferred_size, transferred)
        self.speed = speed


class DirectoryUploadResult(BaseModel):
    """Aggregate outcome of a whole-tree upload."""
    total_files: int
    uploaded_files: int
    failed_files: int
    skipped_files: int
    errors: list[str] = []
    task_id: str | None = None


class DeleteResult(BaseModel):
    """Outcome of a (batch) delete."""
    deleted: int = 0
    failed: list[str] = []
