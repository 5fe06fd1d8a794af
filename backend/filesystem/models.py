"""Pydantic models for remote files and folders."""

import posixpath
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class FileEntry(BaseModel):
    """A file or folder on a device storage."""
    object_id: int
    parent_id: int
    storage_id: int
    name: str
    size: int = 0  # 0 for folders
    modified: datetime | None = None
    is_directory: bool = False
    file_type: str = ""

    @property
    def extension(self) -> str:
        if self.is_directory:
            return ""
        return posixpath.splitext(self.name)[1].lstrip(".")

    @property
    def formatted_size(self) -> str:
        if self.is_directory:
            return "--"
        return format_size(self.size)


class RawFileRecord(BaseModel):
    """File record as reported by ``ListFiles``."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    parent_id: int = Field(alias="parentId")
    storage_id: int = Field(alias="storageId")
    name: str = ""
    size: int = 0
    is_folder: bool = Field(False, alias="isFolder")
    mod_time: int = Field(0, alias="modTime")

    def to_entry(self) -> FileEntry:
        modified = None
        if self.mod_time > 0:
            modified = datetime.fromtimestamp(self.mod_time, tz=timezone.utc)

        if self.is_folder:
            file_type = "folder"
        else:
            file_type = posixpath.splitext(self.name)[1].lstrip(".").upper()

        return FileEntry(
            object_id=self.id,
            parent_id=self.parent_id,
            storage_id=self.storage_id,
            name=self.name,
            size=0 if self.is_folder else self.size,
            modified=modified,
            is_directory=self.is_folder,
            file_type=file_type,
        )


def format_size(size: int) -> str:
    size_f = float(size)
    for unit in ["B", "KB", "MB", "GB"]:
        if size_f < 1024:
            return f"{size_f:.1f} {unit}"
        size_f /= 1024
    return f"{size_f:.1f} TB"
