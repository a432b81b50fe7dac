"""
Slot Hive - Orchestration Server Core
Client registry, message dispatch, broadcast fan-out and liveness sweeps.

Runs on a single asyncio event loop: each inbound message is fully applied to
the registry before the next one is processed, so ClientRecords need no lock.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from . import protocol
from .config import Config
from .notifier import TelegramNotifier
from .protocol import DispatchTable, Message, MessageType, ProtocolError

logger = logging.getLogger("SlotHive.Hive")


class Connection(Protocol):
    """Transport handle for one client (FastAPI's WebSocket satisfies this)"""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ClientStatus(str, Enum):
    IDLE = "idle"
    HUNTING = "hunting"
    ACTIVE = "active"


@dataclass
class ClientStats:
    checks: int = 0
    slots_found: int = 0
    bookings: int = 0

    def merge(self, reported: Dict[str, Any]):
        """Apply a partial stats report; absent or invalid fields keep their totals"""
        for wire_name, attr in (("checks", "checks"), ("slotsFound", "slots_found"), ("bookings", "bookings")):
            value = reported.get(wire_name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            setattr(self, attr, int(value))

    def to_dict(self) -> Dict[str, int]:
        return {"checks": self.checks, "slotsFound": self.slots_found, "bookings": self.bookings}


@dataclass
class ClientRecord:
    id: str
    connection: Connection
    name: str
    connected_at: float
    last_heartbeat: float
    status: ClientStatus = ClientStatus.IDLE
    stats: ClientStats = field(default_factory=ClientStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "connectedAt": int(self.connected_at * 1000),
            "lastHeartbeat": int(self.last_heartbeat * 1000),
            "status": self.status.value,
            "stats": self.stats.to_dict(),
        }


Handler = Callable[[ClientRecord, Dict[str, Any]], Awaitable[None]]


class Hive:
    """
    Rendezvous for racing clients

    SLOT_FOUND fans out as SNIPER_TRIGGER to every other client;
    BOOKING_SUCCESS is broadcast as BOOKING_COMPLETE to all clients,
    the reporter included.
    """

    def __init__(
        self,
        notifier: Optional[TelegramNotifier] = None,
        heartbeat_timeout: float = Config.HEARTBEAT_TIMEOUT,
        sweep_interval: float = Config.HEARTBEAT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        self.notifier = notifier or TelegramNotifier()
        self.heartbeat_timeout = heartbeat_timeout
        self.sweep_interval = sweep_interval
        self.clock = clock
        self.started_at = clock()

        self.clients: Dict[str, ClientRecord] = {}
        self._pending: Set[asyncio.Task] = set()
        self._handlers: DispatchTable[Handler] = DispatchTable({
            MessageType.REGISTER: self._on_register,
            MessageType.HEARTBEAT: self._on_heartbeat,
            MessageType.STATUS_UPDATE: self._on_status_update,
            MessageType.SLOT_FOUND: self._on_slot_found,
            MessageType.BOOKING_SUCCESS: self._on_booking_success,
            MessageType.BOOKING_FAILED: self._on_booking_failed,
            MessageType.ERROR: self._on_error,
            MessageType.LOG: self._on_log,
            MessageType.COMMAND_RESULT: self._on_command_result,
        })

    # ==================== Connection Lifecycle ====================

    async def connect(self, connection: Connection, remote: str = "?") -> ClientRecord:
        """Register a new connection under a server-assigned id and greet it"""
        client_id = str(uuid.uuid4())
        now = self.clock()
        record = ClientRecord(
            id=client_id,
            connection=connection,
            name=f"Client-{client_id[:8]}",
            connected_at=now,
            last_heartbeat=now,
        )
        self.clients[client_id] = record
        logger.info(f"[CONNECT] New client {client_id} from {remote}")

        await self.send_to(client_id, protocol.make(MessageType.WELCOME, {
            "clientId": client_id,
            "serverTime": int(now * 1000),
            "message": "Connected to Slot Hive",
        }))
        await self.broadcast_client_count()
        return record

    async def disconnect(self, client_id: str):
        """Drop a client that closed its connection; no-op if already evicted"""
        record = self.clients.pop(client_id, None)
        if record is None:
            return
        logger.info(f"[DISCONNECT] {record.name} ({client_id})")
        await self.broadcast_client_count()

    async def evict(self, client_id: str, reason: str):
        record = self.clients.pop(client_id, None)
        if record is None:
            return
        logger.warning(f"[EVICT] {record.name}: {reason}")
        try:
            await record.connection.close(code=1001)
        except Exception as e:
            logger.debug(f"[EVICT] Close failed for {client_id}: {e}")
        await self.broadcast_client_count()

    # ==================== Dispatch ====================

    async def handle_raw(self, client_id: str, raw: Any):
        """Decode and dispatch one inbound frame; malformed frames are dropped"""
        try:
            message = protocol.decode(raw)
        except ProtocolError as e:
            logger.error(f"[ERROR] Failed to parse message from {client_id}: {e}")
            return
        await self.dispatch(client_id, message)

    async def dispatch(self, client_id: str, message: Message):
        record = self.clients.get(client_id)
        if record is None:
            return

        handler = self._handlers.lookup(message)
        if handler is None:
            logger.info(f"[{record.name}] Unknown message type: {message.type}")
            return

        try:
            await handler(record, message.payload)
        except Exception as e:
            logger.error(f"[ERROR] Handler for {message.type} from {record.name} failed: {e}", exc_info=True)

    async def _on_register(self, record: ClientRecord, payload: Dict[str, Any]):
        record.name = payload.get("name") or record.name
        logger.info(f"[REGISTER] Client {record.id} registered as \"{record.name}\" (v{payload.get('version', '?')})")

    async def _on_heartbeat(self, record: ClientRecord, payload: Dict[str, Any]):
        now = self.clock()
        record.last_heartbeat = now
        record.status = self._parse_status(payload.get("status"), ClientStatus.ACTIVE)
        stats = payload.get("stats")
        if isinstance(stats, dict):
            record.stats.merge(stats)
        await self.send_to(record.id, protocol.make(MessageType.HEARTBEAT_ACK, {"timestamp": int(now * 1000)}))

    async def _on_status_update(self, record: ClientRecord, payload: Dict[str, Any]):
        record.status = self._parse_status(payload.get("status"), record.status)
        logger.info(f"[STATUS] {record.name}: {payload.get('status')}")

    async def _on_slot_found(self, record: ClientRecord, payload: Dict[str, Any]):
        logger.warning("=" * 60)
        logger.warning(f"[SLOT FOUND] by {record.name}: {payload.get('slots')}")
        logger.warning("=" * 60)

        record.stats.slots_found += 1
        self.notify_in_background(self.notifier.notify_slot_found, record.name, payload)

        sent = await self.broadcast(
            protocol.make(MessageType.SNIPER_TRIGGER, {
                "source": record.name,
                "slots": payload.get("slots") or [],
                "timestamp": protocol.now_ms(),
            }),
            exclude=record.id,
        )
        logger.info(f"[BROADCAST] SNIPER_TRIGGER sent to {sent} other client(s)")

    async def _on_booking_success(self, record: ClientRecord, payload: Dict[str, Any]):
        logger.warning("=" * 60)
        logger.warning(f"[BOOKED] by {record.name}: {payload.get('slotData')}")
        logger.warning("=" * 60)

        record.stats.bookings += 1
        self.notify_in_background(self.notifier.notify_booking_confirmed, record.name, payload)

        sent = await self.broadcast(protocol.make(MessageType.BOOKING_COMPLETE, {
            "bookedBy": record.name,
            "slotData": payload.get("slotData"),
        }))
        logger.info(f"[BROADCAST] BOOKING_COMPLETE sent to {sent} client(s)")

    async def _on_booking_failed(self, record: ClientRecord, payload: Dict[str, Any]):
        result = payload.get("result") or {}
        logger.info(f"[BOOKING FAILED] {record.name}: {payload.get('reason') or result.get('reason')}")

    async def _on_error(self, record: ClientRecord, payload: Dict[str, Any]):
        logger.error(f"[CLIENT ERROR] {record.name}: {payload.get('error')}")

    async def _on_log(self, record: ClientRecord, payload: Dict[str, Any]):
        logger.info(f"[{record.name}] {payload.get('message')}")

    async def _on_command_result(self, record: ClientRecord, payload: Dict[str, Any]):
        logger.info(f"[COMMAND] {record.name} -> {payload.get('command')}: {payload.get('response')}")

    @staticmethod
    def _parse_status(value: Any, default: ClientStatus) -> ClientStatus:
        try:
            return ClientStatus(value)
        except ValueError:
            return default

    # ==================== Broadcasting ====================

    async def send_to(self, client_id: str, message: Message) -> bool:
        record = self.clients.get(client_id)
        if record is None:
            return False
        try:
            await record.connection.send_text(message.encode())
            return True
        except Exception as e:
            logger.warning(f"[SEND] Failed to reach {record.name}: {e}")
            return False

    async def broadcast(self, message: Message, exclude: Optional[str] = None) -> int:
        sent = 0
        for client_id in list(self.clients):
            if client_id == exclude:
                continue
            if await self.send_to(client_id, message):
                sent += 1
        return sent

    async def broadcast_client_count(self):
        await self.broadcast(protocol.make(MessageType.CLIENT_COUNT, {"count": len(self.clients)}))

    # ==================== Notifications ====================

    def notify_in_background(self, send: Callable[..., bool], *args: Any):
        """Fire-and-forget notifier call on a worker thread; failures are logged"""
        task = asyncio.get_running_loop().create_task(asyncio.to_thread(send, *args))
        self._pending.add(task)
        task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[TELEGRAM] Notification failed: {error}")
        elif task.result() is False:
            logger.warning("[TELEGRAM] Notification not delivered")

    async def drain_notifications(self):
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ==================== Liveness ====================

    async def sweep(self) -> List[str]:
        """Evict clients whose last heartbeat is older than the timeout"""
        now = self.clock()
        stale = [
            record for record in list(self.clients.values())
            if now - record.last_heartbeat > self.heartbeat_timeout
        ]
        for record in stale:
            await self.evict(record.id, f"No heartbeat for {now - record.last_heartbeat:.0f}s")
        return [record.id for record in stale]

    async def run_monitor(self):
        """Periodic sweep, independent of message handling"""
        logger.info(f"[MONITOR] Sweeping every {self.sweep_interval:.0f}s (timeout {self.heartbeat_timeout:.0f}s)")
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"[MONITOR] Sweep failed: {e}", exc_info=True)

    # ==================== Commands & Shutdown ====================

    async def send_command(self, client_id: str, command_type: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Forward an arbitrary command frame to one client"""
        return await self.send_to(client_id, Message(type=command_type, payload=dict(payload or {})))

    async def broadcast_command(self, command_type: str, payload: Optional[Dict[str, Any]] = None) -> int:
        return await self.broadcast(Message(type=command_type, payload=dict(payload or {})))

    async def shutdown(self):
        """Tell every client the server is draining, then close all connections"""
        logger.info("[SHUTDOWN] Notifying clients...")
        await self.broadcast(protocol.make(MessageType.SERVER_SHUTDOWN))
        for record in list(self.clients.values()):
            try:
                await record.connection.close(code=1001)
            except Exception as e:
                logger.debug(f"[SHUTDOWN] Close failed for {record.id}: {e}")
        self.clients.clear()
        await self.drain_notifications()

    def snapshot(self) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.clients.values()]

    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "uptime": self.clock() - self.started_at,
            "connectedClients": len(self.clients),
            "timestamp": protocol.now_ms(),
        }
