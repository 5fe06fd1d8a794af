"""
Device registry — polls the bridge for attached MTP devices.

Keeps the current device list and the selected device, gives every
physical device a stable identifier, and backs off exponentially while the
bridge keeps failing until a manual refresh is required.
"""

import asyncio
import logging
import uuid

from pydantic import TypeAdapter, ValidationError

from bridge.transport import Transport
from config import (
    CONNECTED_SCAN_INTERVAL,
    DEFAULT_SCAN_INTERVAL,
    INTERVAL_CHANGE_THRESHOLD,
    MAX_FAILURES_BEFORE_MANUAL_REFRESH,
    MAX_SCAN_INTERVAL,
)
from devices.models import (
    Device,
    MTPSupport,
    RawDevice,
    ScanPhase,
    ScanState,
    Storage,
)
from filesystem.cache import DirectoryCache

logger = logging.getLogger(__name__)

_DEVICES = TypeAdapter(list[RawDevice])


def backoff_interval(failures: int) -> float:
    """Poll interval after ``failures`` consecutive failed scans."""
    return min(DEFAULT_SCAN_INTERVAL * (2 ** failures), MAX_SCAN_INTERVAL)


def _consume_result(future: asyncio.Future) -> None:
    # A scan abandoned by a cancelled caller still completes; read its outcome.
    if not future.cancelled():
        future.exception()


class DeviceRegistry:
    """Tracks connected devices through periodic bridge scans."""

    def __init__(self, transport: Transport, cache: DirectoryCache) -> None:
        self._transport = transport
        self._cache = cache
        self._devices: list[Device] = []
        self._selected: Device | None = None
        self._state = ScanState()
        self._lock = asyncio.Lock()
        self._poll_task: asyncio.Task | None = None
        # Bridge scan still running on its worker thread, if any
        self._scan_future: asyncio.Future | None = None
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._disconnect_callbacks: list = []  # async fn()
        # identity key -> identifier, kept for the process lifetime
        self._device_ids: dict[str, str] = {}
        self.connection_error: str | None = None

    # --- Observers ---

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    def on_disconnect(self, callback) -> None:
        """Register callback: async fn() run when the selected device goes away."""
        self._disconnect_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    # --- Read access ---

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def selected_device(self) -> Device | None:
        return self._selected

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def get_devices(self) -> list[Device]:
        async with self._lock:
            return list(self._devices)

    async def get_device(self, device_id: str) -> Device | None:
        async with self._lock:
            return next((d for d in self._devices if d.id == device_id), None)

    # --- Polling ---

    def start_polling(self) -> None:
        """Start the poll loop; the first scan runs immediately."""
        if self.is_polling:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(f"Device polling started ({self._state.interval}s)")

    def stop_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        logger.info("Device polling stopped")

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.scan_once()
            except Exception as e:
                logger.error(f"Device scan crashed: {e}", exc_info=True)
            if self._state.manual_refresh_required:
                break
            await asyncio.sleep(self._state.interval)

    async def scan_once(self) -> None:
        """Scan the bridge once. A no-op while another scan is in flight."""
        async with self._lock:
            if self._state.phase == ScanPhase.SCANNING or self._scan_running():
                return
            if self._state.consecutive_failures >= MAX_FAILURES_BEFORE_MANUAL_REFRESH:
                logger.info("Max failures reached, automatic scanning stays stopped")
                self.stop_polling()
                return
            before = self._state
            self._set_state(phase=ScanPhase.SCANNING)
            scan = asyncio.ensure_future(asyncio.to_thread(self._transport.scan))
            scan.add_done_callback(_consume_result)
            self._scan_future = scan

        logger.debug(
            f"Starting scan, failures: {before.consecutive_failures}, "
            f"interval: {before.interval}s"
        )

        try:
            # Cancelling the caller does not stop the thread; the scan stays
            # in flight until the bridge answers.
            payload = await asyncio.shield(scan)
        except asyncio.CancelledError:
            if self._state.phase == ScanPhase.SCANNING:
                self._set_state(phase=before.phase)
            raise
        except Exception as e:
            logger.warning(f"Bridge scan raised: {e}")
            payload = None

        raw_devices = self._decode(payload)

        async with self._lock:
            if raw_devices is None:
                disconnected = self._record_failure()
            else:
                disconnected = self._update_devices(
                    [self._map_device(raw) for raw in raw_devices]
                )
            self._set_state(has_scanned_once=True)
            devices = list(self._devices)
            selected = self._selected
            state = self._state

        if disconnected:
            await self._run_disconnect_callbacks()
            await self._emit("device_disconnected", {"message": self.connection_error})
        await self._emit("devices_changed", {
            "devices": [d.model_dump() for d in devices],
            "selected_device_id": selected.id if selected else None,
        })
        if state != before:
            await self._emit("scan_state", state.model_dump(mode="json"))

    def _scan_running(self) -> bool:
        return self._scan_future is not None and not self._scan_future.done()

    def _decode(self, payload: str | None) -> list[RawDevice] | None:
        if payload is None:
            logger.info("Scan returned nothing")
            return None
        try:
            raw_devices = _DEVICES.validate_json(payload)
        except ValidationError as e:
            logger.warning(f"Failed to decode devices JSON: {e}")
            return None
        logger.info(f"Scan found {len(raw_devices)} device(s)")
        return raw_devices

    # --- Transitions (called with the lock held) ---

    def _set_state(self, **changes) -> None:
        self._state = self._state.model_copy(update=changes)

    def _update_devices(self, new_devices: list[Device]) -> bool:
        new_ids = frozenset(d.id for d in new_devices)
        disconnected = self._selected is not None and self._selected.id not in new_ids
        if disconnected:
            self._disconnect()

        self._devices = new_devices

        if disconnected:
            # Losing the selection counts against the backoff like a failed scan.
            self._count_failure()
        elif new_devices:
            self._set_state(
                phase=ScanPhase.IDLE,
                consecutive_failures=0,
                manual_refresh_required=False,
                last_device_ids=new_ids,
            )
            self._reschedule(CONNECTED_SCAN_INTERVAL)
        else:
            # Nothing attached is not a success; the failure count stays.
            self._set_state(phase=ScanPhase.IDLE, last_device_ids=new_ids)
            self._reschedule(DEFAULT_SCAN_INTERVAL)

        if self._selected is not None:
            # Pick up fresh storage figures for the selection.
            self._selected = next(d for d in new_devices if d.id == self._selected.id)
        elif len(new_devices) == 1:
            self._selected = new_devices[0]
            logger.info(f"Auto-selected {self._selected.display_name}")

        return disconnected

    def _record_failure(self) -> bool:
        disconnected = self._selected is not None or bool(self._devices)
        if disconnected:
            self._disconnect()
        self._count_failure()
        return disconnected

    def _disconnect(self) -> None:
        """Reset all device state. Callbacks run once the lock is released."""
        self._devices = []
        self._selected = None
        self.connection_error = "Device disconnected"
        self._cache.clear()
        logger.info("Device disconnected, state reset")

    async def _run_disconnect_callbacks(self) -> None:
        for cb in self._disconnect_callbacks:
            try:
                await cb()
            except Exception as e:
                logger.error(f"Disconnect callback error: {e}")

    def _count_failure(self) -> None:
        failures = self._state.consecutive_failures + 1
        interval = backoff_interval(failures)
        if failures >= MAX_FAILURES_BEFORE_MANUAL_REFRESH:
            self._set_state(
                phase=ScanPhase.MANUAL_REFRESH_REQUIRED,
                consecutive_failures=failures,
                interval=interval,
                manual_refresh_required=True,
                last_device_ids=frozenset(),
            )
            logger.warning(f"Scan failed {failures} times, automatic scanning stopped")
            self.stop_polling()
        else:
            self._set_state(
                phase=ScanPhase.BACKOFF,
                consecutive_failures=failures,
                interval=interval,
                last_device_ids=frozenset(),
            )
            logger.info(f"Scan failed {failures} times, next scan in {interval}s")

    def _reschedule(self, desired: float) -> None:
        if abs(self._state.interval - desired) > INTERVAL_CHANGE_THRESHOLD:
            self._set_state(interval=desired)
            logger.info(f"Scanning interval updated to {desired}s")

    def _map_device(self, raw: RawDevice) -> Device:
        # The serial survives a reissued index; fall back to the index.
        key = f"serial:{raw.serial_number}" if raw.serial_number else f"index:{raw.id}"
        device_id = self._device_ids.get(key)
        if device_id is None:
            device_id = str(uuid.uuid4())
            self._device_ids[key] = device_id

        mtp_support = None
        if raw.mtp_support is not None:
            mtp_support = MTPSupport(**raw.mtp_support.model_dump())

        return Device(
            id=device_id,
            device_index=raw.id,
            name=raw.name,
            manufacturer=raw.manufacturer,
            model=raw.model,
            serial_number=raw.serial_number,
            storage=[
                Storage(
                    storage_id=s.id,
                    max_capacity=s.max_capacity,
                    free_space=s.free_space,
                    description=s.description,
                )
                for s in raw.storage
            ],
            mtp_support=mtp_support,
            is_connected=True,
        )

    # --- User actions ---

    async def select_device(self, device_id: str) -> Device:
        """Select ``device_id`` and clear any stale connection error."""
        async with self._lock:
            device = next((d for d in self._devices if d.id == device_id), None)
            if device is None:
                raise KeyError(device_id)
            self._selected = device
            self.connection_error = None
            devices = list(self._devices)
        await self._emit("devices_changed", {
            "devices": [d.model_dump() for d in devices],
            "selected_device_id": device.id,
        })
        return device

    async def manual_refresh(self) -> None:
        """Reset failure bookkeeping and restart automatic scanning."""
        async with self._lock:
            self._state = ScanState(has_scanned_once=self._state.has_scanned_once)
        logger.info("Manual refresh triggered, counters reset")
        await self._emit("scan_state", self._state.model_dump(mode="json"))
        self.stop_polling()
        self.start_polling()
