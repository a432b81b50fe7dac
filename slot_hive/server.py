"""
Slot Hive - Orchestration Server
FastAPI application exposing the Hive over WebSocket plus a thin REST surface
"""

import asyncio
import contextlib
import logging
import sys
import time
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket
from pydantic import BaseModel

from . import __version__
from .config import Config
from .hive import Hive

logger = logging.getLogger("SlotHive.Server")


class CommandRequest(BaseModel):
    """Raw frame forwarded to one or all clients"""

    type: str
    payload: Dict[str, Any] = {}


class NotifyRequest(BaseModel):
    message: str


def create_app(hive: Optional[Hive] = None) -> FastAPI:
    """
    Build the server application around a Hive instance

    Args:
        hive: Registry/dispatcher to expose; a default one is created if omitted

    Returns:
        FastAPI app with the Hive attached as app.state.hive
    """
    hive = hive or Hive()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        monitor = asyncio.create_task(hive.run_monitor())
        logger.info("[HIVE] Server started")
        try:
            yield
        finally:
            monitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await monitor
            await hive.shutdown()
            logger.info("[HIVE] Server stopped")

    app = FastAPI(title="Slot Hive", version=__version__, lifespan=lifespan)
    app.state.hive = hive

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return hive.health()

    @app.get("/timestamp")
    async def timestamp() -> Dict[str, Any]:
        now = time.time()
        return {"time": int(now * 1000), "iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(now))}

    @app.get("/clients")
    async def clients() -> Dict[str, Any]:
        snapshot = hive.snapshot()
        return {"count": len(snapshot), "clients": snapshot}

    @app.post("/command/{client_id}")
    async def command(client_id: str, request: CommandRequest) -> Dict[str, Any]:
        if client_id not in hive.clients:
            raise HTTPException(status_code=404, detail="Client not found")

        logger.info(f"[COMMAND] {request.type} -> {client_id}")
        if not await hive.send_command(client_id, request.type, request.payload):
            raise HTTPException(status_code=503, detail="Client unreachable")
        return {"success": True, "message": f"Command sent to {client_id}"}

    @app.post("/broadcast")
    async def broadcast(request: CommandRequest) -> Dict[str, Any]:
        sent = await hive.broadcast_command(request.type, request.payload)
        logger.info(f"[BROADCAST] {request.type} sent to {sent} client(s)")
        return {"success": True, "sentTo": sent}

    @app.post("/notify")
    async def notify(request: NotifyRequest) -> Dict[str, Any]:
        if not request.message.strip():
            raise HTTPException(status_code=400, detail="Message required")

        try:
            delivered = await asyncio.to_thread(hive.notifier.send_alert, request.message)
        except Exception as exc:
            logger.exception("Notification failed: %s", exc)
            raise HTTPException(status_code=500, detail=str(exc)) from exc

        if hive.notifier.configured and not delivered:
            raise HTTPException(status_code=500, detail="Notification not delivered")
        return {"success": True, "delivered": delivered}

    async def client_socket(websocket: WebSocket):
        await websocket.accept()
        remote = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "?"
        record = await hive.connect(websocket, remote=remote)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                await hive.handle_raw(record.id, raw)
        except RuntimeError as e:
            # receive after the Hive closed the socket (eviction/shutdown)
            logger.debug(f"[WS] {record.id} closed: {e}")
        finally:
            await hive.disconnect(record.id)

    app.add_api_websocket_route("/ws", client_socket)
    app.add_api_websocket_route("/", client_socket)

    return app


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def main():
    """Entry point: python -m slot_hive.server"""
    setup_logging("--verbose" in sys.argv[1:])

    logger.info("=" * 60)
    logger.info(f"[HIVE] Slot Hive v{__version__}")
    logger.info(f"[HIVE] WebSocket: ws://{Config.HIVE_HOST}:{Config.HIVE_PORT}/ws")
    hive = Hive()
    logger.info(f"[HIVE] Telegram: {'enabled' if hive.notifier.configured else 'log-only'}")
    logger.info("=" * 60)

    uvicorn.run(create_app(hive), host=Config.HIVE_HOST, port=Config.HIVE_PORT, log_config=None)


if __name__ == "__main__":
    main()
