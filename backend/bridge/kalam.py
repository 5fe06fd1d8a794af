"""
ctypes adapter for the Kalam native MTP bridge.

The only module that touches bridge-owned memory: every string the library
hands back goes through ``_take_string``, which copies it into Python and
returns it to the library with ``Kalam_FreeString``.
"""

import ctypes
import logging
import os
import threading

from config import KALAM_LIBRARY_PATH

logger = logging.getLogger(__name__)


class BridgeUnavailableError(RuntimeError):
    """The native bridge library could not be loaded."""


# name -> (argtypes, restype)
_SIGNATURES = {
    "Kalam_Init": ([], None),
    "Kalam_Scan": ([], ctypes.c_void_p),
    "Kalam_ListFiles": ([ctypes.c_uint32, ctypes.c_uint32], ctypes.c_void_p),
    "Kalam_FreeString": ([ctypes.c_void_p], None),
    "Kalam_CreateFolder": (
        [ctypes.c_uint32, ctypes.c_uint32, ctypes.c_char_p],
        ctypes.c_uint32,
    ),
    "Kalam_DeleteObject": ([ctypes.c_uint32], ctypes.c_int32),
    "Kalam_DownloadFile": (
        [ctypes.c_uint32, ctypes.c_char_p, ctypes.c_char_p],
        ctypes.c_int32,
    ),
    "Kalam_UploadFile": (
        [ctypes.c_uint32, ctypes.c_uint32, ctypes.c_char_p, ctypes.c_char_p],
        ctypes.c_int32,
    ),
    "Kalam_CancelTask": ([ctypes.c_char_p], None),
    "Kalam_RefreshStorage": ([ctypes.c_uint32], ctypes.c_int32),
    "Kalam_ResetDeviceCache": ([], ctypes.c_int32),
}


def _encode(value: str) -> bytes:
    # Local paths go through os.fsencode; this is for identifiers and names.
    return value.encode("utf-8")


class KalamBridge:
    """Typed wrapper implementing ``bridge.transport.Transport``."""

    def __init__(self, lib) -> None:
        self._lib = lib
        self._init_lock = threading.Lock()
        self._initialized = False
        for name, (argtypes, restype) in _SIGNATURES.items():
            func = getattr(lib, name)
            func.argtypes = argtypes
            func.restype = restype

    def init(self) -> None:
        """Initialise the bridge once per process."""
        with self._init_lock:
            if self._initialized:
                return
            self._lib.Kalam_Init()
            self._initialized = True
            logger.info("Kalam bridge initialised")

    def _take_string(self, ptr) -> str | None:
        """Copy a bridge-owned C string and hand it back to the bridge."""
        if not ptr:
            return None
        try:
            return ctypes.string_at(ptr).decode("utf-8")
        except UnicodeDecodeError as e:
            logger.warning(f"Bridge returned non UTF-8 payload: {e}")
            return None
        finally:
            self._lib.Kalam_FreeString(ptr)

    # --- Transport ---

    def scan(self) -> str | None:
        return self._take_string(self._lib.Kalam_Scan())

    def list_files(self, storage_id: int, parent_id: int) -> str | None:
        return self._take_string(self._lib.Kalam_ListFiles(storage_id, parent_id))

    def upload_file(
        self, storage_id: int, parent_id: int, source_path: str, task_id: str
    ) -> int:
        return int(
            self._lib.Kalam_UploadFile(
                storage_id, parent_id, os.fsencode(source_path), _encode(task_id)
            )
        )

    def download_file(self, object_id: int, dest_path: str, task_id: str) -> int:
        return int(
            self._lib.Kalam_DownloadFile(object_id, os.fsencode(dest_path), _encode(task_id))
        )

    def create_folder(self, storage_id: int, parent_id: int, name: str) -> int:
        try:
            encoded = _encode(name)
        except UnicodeEncodeError as e:
            logger.warning(f"Folder name {name!r} cannot be sent to the device: {e}")
            return 0
        return int(self._lib.Kalam_CreateFolder(storage_id, parent_id, encoded))

    def delete_object(self, object_id: int) -> int:
        return int(self._lib.Kalam_DeleteObject(object_id))

    def cancel_task(self, task_id: str) -> None:
        self._lib.Kalam_CancelTask(_encode(task_id))

    def refresh_storage(self, storage_id: int) -> int:
        return int(self._lib.Kalam_RefreshStorage(storage_id))

    def reset_device_cache(self) -> int:
        return int(self._lib.Kalam_ResetDeviceCache())


def load_bridge(path: str = KALAM_LIBRARY_PATH) -> KalamBridge:
    """Load the shared library at ``path`` and return an initialised bridge."""
    try:
        lib = ctypes.CDLL(path)
    except OSError as e:
        raise BridgeUnavailableError(f"Cannot load Kalam bridge from {path}: {e}") from e

    bridge = KalamBridge(lib)
    bridge.init()
    return bridge
