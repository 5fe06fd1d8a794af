"""
MTP Booth — FastAPI application entry point.

Builds the services around the native bridge, starts device polling on
startup and serves the REST API and the WebSocket event stream.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from bridge.kalam import BridgeUnavailableError, load_bridge
from bridge.transport import Transport
from config import API_HOST, API_PORT, APP_NAME, KALAM_LIBRARY_PATH
from devices.registry import DeviceRegistry
from filesystem.cache import DirectoryCache
from filesystem.service import FileSystemService
from transfer.manager import TransferManager

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(transport: Transport | None = None) -> FastAPI:
    """Wire the services around ``transport`` (the native bridge by default)."""
    if transport is None:
        transport = load_bridge(KALAM_LIBRARY_PATH)

    cache = DirectoryCache()
    filesystem = FileSystemService(transport, cache)
    transfer_manager = TransferManager(transport, filesystem)
    device_registry = DeviceRegistry(transport, cache)
    ws_manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop background services."""
        logger.info(f"Starting {APP_NAME} services...")

        try:
            # Wire up event broadcasting
            device_registry.on_event(ws_manager.handle_event)
            transfer_manager.on_event(ws_manager.handle_event)

            # A vanished device takes its transfers with it
            device_registry.on_disconnect(transfer_manager.cancel_all)

            device_registry.start_polling()
            logger.info(f"{APP_NAME} ready — API: {API_HOST}:{API_PORT}")

            yield

        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            raise
        finally:
            logger.info(f"Shutting down {APP_NAME} services...")
            device_registry.stop_polling()
            await transfer_manager.stop()

    app = FastAPI(title=APP_NAME, version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Inject services into routes
    init_routes(device_registry, filesystem, transfer_manager)
    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        devices = await device_registry.get_devices()
        selected = device_registry.selected_device
        transfers = transfer_manager.get_transfers()
        # A fresh client starts from the current state, then follows events.
        await ws_manager.connect(websocket, snapshot={
            "devices_changed": {
                "devices": [d.model_dump() for d in devices],
                "selected_device_id": selected.id if selected else None,
            },
            "scan_state": device_registry.state.model_dump(mode="json"),
            "transfer_snapshot": {
                key: [t.model_dump(mode="json") for t in tasks]
                for key, tasks in transfers.items()
            },
        })
        try:
            while True:
                # Keep the connection alive; we don't expect client messages
                await websocket.receive_text()
        except WebSocketDisconnect:
            await ws_manager.disconnect(websocket)

    app.state.device_registry = device_registry
    app.state.filesystem = filesystem
    app.state.transfer_manager = transfer_manager
    return app


if __name__ == "__main__":
    import sys

    import uvicorn

    try:
        app = create_app()
    except BridgeUnavailableError as e:
        logger.error(str(e))
        sys.exit(1)

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
