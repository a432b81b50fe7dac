"""
Slot Hive - Wire Protocol
JSON frames of the form {"type": str, "payload": object}, shared by the Hive
server and the client channel. Handlers are looked up in a dispatch table
keyed by MessageType.
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, Optional, TypeVar


class MessageType(str, Enum):
    # server -> client
    WELCOME = "WELCOME"
    HEARTBEAT_ACK = "HEARTBEAT_ACK"
    SNIPER_TRIGGER = "SNIPER_TRIGGER"
    BOOKING_COMPLETE = "BOOKING_COMPLETE"
    CLIENT_COUNT = "CLIENT_COUNT"
    SERVER_SHUTDOWN = "SERVER_SHUTDOWN"
    START_SCOUT = "START_SCOUT"
    STOP_SCOUT = "STOP_SCOUT"
    ROTATE_PROXY = "ROTATE_PROXY"
    CHANGE_PROXY = "CHANGE_PROXY"
    ROTATE_IDENTITY = "ROTATE_IDENTITY"
    EXECUTE_COMMAND = "EXECUTE_COMMAND"

    # client -> server
    REGISTER = "REGISTER"
    HEARTBEAT = "HEARTBEAT"
    SLOT_FOUND = "SLOT_FOUND"
    BOOKING_SUCCESS = "BOOKING_SUCCESS"
    BOOKING_FAILED = "BOOKING_FAILED"
    STATUS_UPDATE = "STATUS_UPDATE"
    LOG = "LOG"
    ERROR = "ERROR"
    COMMAND_RESULT = "COMMAND_RESULT"


class ProtocolError(ValueError):
    """Raised for frames that are not valid JSON messages"""


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Message:
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> Optional[MessageType]:
        try:
            return MessageType(self.type)
        except ValueError:
            return None

    def encode(self) -> str:
        return json.dumps({"type": self.type, "payload": self.payload})


def make(message_type: MessageType, payload: Optional[Dict[str, Any]] = None) -> Message:
    return Message(type=message_type.value, payload=dict(payload or {}))


def encode(message_type: MessageType, payload: Optional[Dict[str, Any]] = None) -> str:
    return make(message_type, payload).encode()


def decode(raw: Any) -> Message:
    """
    Parse one frame

    Raises:
        ProtocolError: if the frame is not a JSON object with a string "type"
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")

    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ProtocolError("Frame must be an object with a string 'type'")

    payload = data.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ProtocolError("Frame 'payload' must be an object")

    return Message(type=data["type"], payload=payload)


H = TypeVar("H", bound=Callable[..., Any])


class DispatchTable(Generic[H]):
    """Map from MessageType to handler"""

    def __init__(self, handlers: Optional[Dict[MessageType, H]] = None):
        self._handlers: Dict[MessageType, H] = dict(handlers or {})

    def register(self, message_type: MessageType, handler: H):
        self._handlers[message_type] = handler

    def lookup(self, message: Message) -> Optional[H]:
        kind = message.kind
        if kind is None:
            return None
        return self._handlers.get(kind)

    def __contains__(self, message_type: MessageType) -> bool:
        return message_type in self._handlers
