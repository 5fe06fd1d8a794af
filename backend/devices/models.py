"""Pydantic models for attached MTP devices and the scanner state."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from config import DEFAULT_SCAN_INTERVAL


class Storage(BaseModel):
    """One logical volume exposed by a device."""
    storage_id: int
    max_capacity: int
    free_space: int
    description: str = ""

    @property
    def used_space(self) -> int:
        return max(self.max_capacity - self.free_space, 0)

    @property
    def usage_percentage(self) -> float:
        if self.max_capacity <= 0:
            return 0.0
        return self.used_space / self.max_capacity * 100


class MTPSupport(BaseModel):
    mtp_version: str = ""
    device_version: str = ""
    vendor_extension: str = ""


class Device(BaseModel):
    """A connected device with a process-stable identifier."""
    id: str
    device_index: int
    name: str
    manufacturer: str = ""
    model: str = ""
    serial_number: str = ""
    storage: list[Storage] = []
    mtp_support: MTPSupport | None = None
    is_connected: bool = True

    @property
    def display_name(self) -> str:
        if self.name and self.name != "Unknown Device":
            return self.name
        return f"{self.manufacturer} {self.model}".strip()

    @property
    def total_capacity(self) -> int:
        return sum(s.max_capacity for s in self.storage)

    @property
    def total_free_space(self) -> int:
        return sum(s.free_space for s in self.storage)

    def storage_for(self, storage_id: int) -> Storage | None:
        return next((s for s in self.storage if s.storage_id == storage_id), None)


# --- Bridge payload records ---

class RawStorage(BaseModel):
    """Storage record as reported by ``Scan``."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    description: str = ""
    free_space: int = Field(alias="freeSpace")
    max_capacity: int = Field(alias="maxCapacity")


class RawMTPSupport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mtp_version: str = Field("", alias="mtpVersion")
    device_version: str = Field("", alias="deviceVersion")
    vendor_extension: str = Field("", alias="vendorExtension")


class RawDevice(BaseModel):
    """Device record as reported by ``Scan``; ``id`` is a transport-local index."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str = ""
    manufacturer: str = ""
    model: str = ""
    serial_number: str = Field("", alias="serialNumber")
    storage: list[RawStorage] = []
    mtp_support: RawMTPSupport | None = Field(None, alias="mtpSupport")


# --- Scanner state ---

class ScanPhase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    BACKOFF = "backoff"
    MANUAL_REFRESH_REQUIRED = "manual_refresh_required"


class ScanState(BaseModel):
    """Immutable snapshot of the scanner; replaced as a whole on each transition."""
    model_config = ConfigDict(frozen=True)

    phase: ScanPhase = ScanPhase.IDLE
    interval: float = DEFAULT_SCAN_INTERVAL
    consecutive_failures: int = 0
    manual_refresh_required: bool = False
    last_device_ids: frozenset[str] = frozenset()
    has_scanned_once: bool = False
