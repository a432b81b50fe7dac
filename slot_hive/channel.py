"""
Slot Hive - Coordination Channel
Persistent WebSocket link from one client to the Hive: reconnect loop,
heartbeats and typed message dispatch.

The reader runs in a daemon thread and invokes handlers on that thread;
handlers that do real work (booking) must hand off to their own worker.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

from . import __version__, protocol
from .config import Config
from .models import BookingAttemptResult, SlotDescriptor
from .protocol import DispatchTable, MessageType, ProtocolError

logger = logging.getLogger("SlotHive.Channel")

MessageHandler = Callable[[Dict[str, Any]], None]
HeartbeatProvider = Callable[[], Dict[str, Any]]


def _idle_heartbeat() -> Dict[str, Any]:
    return {"status": "idle", "stats": {}}


class HiveChannel:
    """
    Client end of the coordination channel

    Reconnects on a fixed interval after any drop, indefinitely unless
    max_attempts is set. Sends are best-effort: while disconnected they are
    dropped and send() returns False.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        name: Optional[str] = None,
        version: str = __version__,
        reconnect_interval: float = Config.RECONNECT_INTERVAL,
        max_attempts: int = Config.RECONNECT_MAX_ATTEMPTS,
        heartbeat_interval: float = Config.CLIENT_HEARTBEAT_INTERVAL,
        heartbeat_provider: Optional[HeartbeatProvider] = None,
        connect: Callable[..., Any] = ws_connect,
    ):
        self.url = url or Config.HIVE_URL
        self.name = name or Config.CLIENT_NAME
        self.version = version
        self.reconnect_interval = reconnect_interval
        self.max_attempts = max_attempts
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_provider = heartbeat_provider or _idle_heartbeat
        self._connect = connect

        self.client_id: Optional[str] = None
        self.server_time_offset = 0
        self.reconnect_attempts = 0
        self.reconnecting = False
        self.last_heartbeat: Optional[float] = None
        self.fleet_size: Optional[int] = None

        self._ws = None
        self._send_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._connected = threading.Event()
        self._threads: List[threading.Thread] = []
        self._handlers: DispatchTable[MessageHandler] = DispatchTable()
        self._builtin: DispatchTable[MessageHandler] = DispatchTable({
            MessageType.WELCOME: self._on_welcome,
            MessageType.HEARTBEAT_ACK: self._on_heartbeat_ack,
            MessageType.CLIENT_COUNT: self._on_client_count,
            MessageType.SERVER_SHUTDOWN: self._on_server_shutdown,
        })

    # ==================== Lifecycle ====================

    def on(self, message_type: MessageType, handler: MessageHandler):
        """Register the application handler for one inbound message type"""
        self._handlers.register(message_type, handler)

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def start(self):
        """Connect in the background and keep the link alive until disconnect()"""
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._run, name="Hive-Reader", daemon=True),
            threading.Thread(target=self._heartbeat_loop, name="Hive-Heartbeat", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"[HIVE] Connecting to {self.url} as \"{self.name}\"")

    def wait_connected(self, timeout: Optional[float] = None) -> bool:
        return self._connected.wait(timeout)

    def disconnect(self):
        """Close the link and stop reconnecting"""
        self._stop_event.set()
        with self._send_lock:
            ws, self._ws = self._ws, None
        self._connected.clear()
        if ws is not None:
            try:
                ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"[HIVE] Close failed: {e}")

        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(timeout=2)
        logger.info("[HIVE] Disconnected")

    def status(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "clientId": self.client_id,
            "reconnecting": self.reconnecting,
            "reconnectAttempts": self.reconnect_attempts,
            "serverTimeOffset": self.server_time_offset,
            "lastHeartbeat": self.last_heartbeat,
        }

    # ==================== Reader Loop ====================

    def _run(self):
        while not self._stop_event.is_set():
            try:
                ws = self._connect(self.url)
            except (OSError, WebSocketException) as e:
                logger.warning(f"[HIVE] Connection failed: {e}")
                if not self._schedule_reconnect():
                    break
                continue

            with self._send_lock:
                self._ws = ws
            self.reconnecting = False
            self.reconnect_attempts = 0
            self._connected.set()
            logger.info("[HIVE] Connected")

            try:
                for raw in ws:
                    self.handle_raw(raw)
            except (OSError, WebSocketException) as e:
                logger.warning(f"[HIVE] Connection lost: {e}")
            finally:
                with self._send_lock:
                    if self._ws is ws:
                        self._ws = None
                self._connected.clear()

            if self._stop_event.is_set() or not self._schedule_reconnect():
                break

        logger.info("[HIVE] Reader stopped")

    def _schedule_reconnect(self) -> bool:
        """Wait out the reconnect interval; False once attempts are exhausted or stopped"""
        if self._stop_event.is_set():
            return False

        self.reconnect_attempts += 1
        if self.max_attempts and self.reconnect_attempts > self.max_attempts:
            logger.error(f"[HIVE] Giving up after {self.max_attempts} reconnect attempt(s)")
            self.reconnecting = False
            return False

        self.reconnecting = True
        logger.info(f"[HIVE] Reconnecting in {self.reconnect_interval:.0f}s (attempt {self.reconnect_attempts})")
        return not self._stop_event.wait(self.reconnect_interval)

    def _heartbeat_loop(self):
        while not self._stop_event.wait(self.heartbeat_interval):
            if self.connected:
                self.send_heartbeat()

    # ==================== Inbound ====================

    def handle_raw(self, raw: Any):
        try:
            message = protocol.decode(raw)
        except ProtocolError as e:
            logger.error(f"[HIVE] Dropping malformed frame: {e}")
            return

        builtin = self._builtin.lookup(message)
        if builtin is not None:
            builtin(message.payload)

        handler = self._handlers.lookup(message)
        if handler is None:
            if builtin is None:
                logger.debug(f"[HIVE] Unhandled message type: {message.type}")
            return

        try:
            handler(message.payload)
        except Exception as e:
            logger.error(f"[HIVE] Handler for {message.type} failed: {e}", exc_info=True)
            self.send(MessageType.ERROR, {"error": str(e), "type": message.type})

    def _on_welcome(self, payload: Dict[str, Any]):
        self.client_id = payload.get("clientId")
        server_time = payload.get("serverTime")
        if isinstance(server_time, (int, float)):
            self.server_time_offset = protocol.now_ms() - int(server_time)
        logger.info(f"[HIVE] Welcome, client id {self.client_id} (clock offset {self.server_time_offset}ms)")
        self.send(MessageType.REGISTER, {"name": self.name, "version": self.version})
        self.send_heartbeat()

    def _on_heartbeat_ack(self, payload: Dict[str, Any]):
        self.last_heartbeat = time.time()

    def _on_client_count(self, payload: Dict[str, Any]):
        self.fleet_size = payload.get("count")
        logger.info(f"[HIVE] {self.fleet_size} client(s) connected")

    def _on_server_shutdown(self, payload: Dict[str, Any]):
        logger.warning("[HIVE] Server shutting down")
        self.disconnect()

    # ==================== Outbound ====================

    def send(self, message_type: MessageType, payload: Optional[Dict[str, Any]] = None) -> bool:
        with self._send_lock:
            ws = self._ws
            if ws is None:
                logger.debug(f"[HIVE] Not connected, dropping {message_type.value}")
                return False
            try:
                ws.send(protocol.encode(message_type, payload))
                return True
            except (OSError, WebSocketException) as e:
                logger.warning(f"[HIVE] Send {message_type.value} failed: {e}")
                return False

    def send_heartbeat(self) -> bool:
        report = self.heartbeat_provider()
        return self.send(MessageType.HEARTBEAT, {
            "clientId": self.client_id,
            "timestamp": protocol.now_ms(),
            "status": report.get("status", "idle"),
            "stats": report.get("stats", {}),
        })

    def report_slot_found(self, slots: List[SlotDescriptor], data_param: Optional[str]) -> bool:
        return self.send(MessageType.SLOT_FOUND, {
            "slots": [slot.to_dict() for slot in slots],
            "dataParam": data_param,
            "timestamp": protocol.now_ms(),
        })

    def report_booking(self, result: BookingAttemptResult, slot: SlotDescriptor) -> bool:
        payload = {"result": result.to_dict(), "slotData": slot.to_dict()}
        if result.is_booked:
            return self.send(MessageType.BOOKING_SUCCESS, payload)
        payload["reason"] = result.reason
        return self.send(MessageType.BOOKING_FAILED, payload)

    def report_status(self, status: str, result: Optional[Dict[str, Any]] = None) -> bool:
        return self.send(MessageType.STATUS_UPDATE, {"status": status, "result": result})

    def report_error(self, error: str) -> bool:
        return self.send(MessageType.ERROR, {"error": error})

    def log(self, message: str) -> bool:
        return self.send(MessageType.LOG, {"message": message})
