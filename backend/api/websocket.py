"""Pushes device and transfer events to the UI over WebSockets."""

import asyncio
import json
import logging
import time

from fastapi import WebSocket

from config import PROGRESS_BROADCAST_INTERVAL

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Fans service events out to every connected UI client.

    ``transfer_progress`` is rate limited per task; every other event is
    forwarded as it comes.
    """

    def __init__(self, progress_interval: float = PROGRESS_BROADCAST_INTERVAL,
                 clock=time.monotonic) -> None:
        self._clients: list[WebSocket] = []
        self._lock = asyncio.Lock()
        self._progress_interval = progress_interval
        self._clock = clock
        self._last_progress: dict[str, float] = {}  # task id -> last push

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket, snapshot: dict[str, dict] | None = None) -> None:
        """Accept ``websocket`` and send it ``snapshot`` (event -> data) first."""
        await websocket.accept()
        for event, data in (snapshot or {}).items():
            await websocket.send_text(_encode(event, data))
        async with self._lock:
            self._clients.append(websocket)
        logger.info(f"UI client connected ({len(self._clients)} total)")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._clients:
                self._clients.remove(websocket)
        logger.info(f"UI client gone ({len(self._clients)} left)")

    async def broadcast(self, event: str, data: dict) -> None:
        message = _encode(event, data)
        async with self._lock:
            clients = list(self._clients)
        if not clients:
            return

        results = await asyncio.gather(
            *(ws.send_text(message) for ws in clients), return_exceptions=True
        )
        stale = [ws for ws, result in zip(clients, results) if isinstance(result, Exception)]
        if stale:
            async with self._lock:
                self._clients = [ws for ws in self._clients if ws not in stale]
            logger.debug(f"Dropped {len(stale)} unreachable UI client(s)")

    def _should_push_progress(self, task_id: str) -> bool:
        now = self._clock()
        last = self._last_progress.get(task_id)
        if last is not None and now - last < self._progress_interval:
            return False
        self._last_progress[task_id] = now
        return True

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Event sink for DeviceRegistry and TransferManager."""
        if event_type == "transfer_progress":
            if not self._should_push_progress(data.get("id", "")):
                return
        elif event_type == "transfer_state" and data.get("status") in ("completed", "failed", "cancelled"):
            self._last_progress.pop(data.get("id", ""), None)
        elif event_type == "tasks_cleared":
            self._last_progress.clear()
        await self.broadcast(event_type, data)


def _encode(event: str, data: dict) -> str:
    return json.dumps({"event": event, "data": data}, default=str)
