"""Application-wide configuration constants."""

import os
import platform
from pathlib import Path

# --- Identity ---
APP_NAME = "MTP Booth"
PLATFORM = platform.system().lower()  # "windows" | "darwin" | "linux"

# --- Networking ---
API_HOST = "127.0.0.1"
API_PORT = 8765

# --- Native bridge ---
_NATIVE_DIR = Path(__file__).parent / "native"
_LIB_NAMES = {
    "darwin": "libkalam.dylib",
    "windows": "kalam.dll",
}
KALAM_LIBRARY_PATH = os.environ.get(
    "MTP_BOOTH_KALAM_LIB",
    str(_NATIVE_DIR / _LIB_NAMES.get(PLATFORM, "libkalam.so")),
)

# MTP protocol value for "device root"
ROOT_DIRECTORY_ID = 0xFFFFFFFF

# --- Device scanning ---
DEFAULT_SCAN_INTERVAL = 3.0  # seconds, also the backoff base
CONNECTED_SCAN_INTERVAL = 5.0  # seconds, once a device is attached
MAX_SCAN_INTERVAL = 30.0  # seconds
MAX_FAILURES_BEFORE_MANUAL_REFRESH = 3
INTERVAL_CHANGE_THRESHOLD = 0.5  # seconds

# --- Directory cache ---
CACHE_EXPIRATION_INTERVAL = 60.0  # seconds

# --- Transfer ---
MAX_FILE_SIZE = 10 * 1024 * 1024 * 1024  # 10 GiB
UPLOAD_SETTLE_DELAY = 1.0  # seconds before asking the UI to re-list
DIRECTORY_UPLOAD_SETTLE_DELAY = 0.5
DOWNLOAD_SETTLE_DELAY = 0.5
MAX_REPORTED_ERRORS = 20
PROGRESS_BROADCAST_INTERVAL = 0.2  # seconds between progress pushes per task

# --- Security ---
MAX_PATH_LENGTH = 4096  # bytes
ALLOWED_UPLOAD_ROOTS = [
    Path.home() / "Downloads",
    Path.home() / "Desktop",
    Path.home() / "Documents",
]

# --- Storage ---
DEFAULT_DOWNLOAD_DIR = str(Path.home() / "Downloads")
