import json
import queue
from unittest.mock import MagicMock

import pytest

from conftest import wait_for
from slot_hive import protocol
from slot_hive.channel import HiveChannel
from slot_hive.models import BookingAttemptResult, SlotDescriptor
from slot_hive.protocol import MessageType

SLOT = SlotDescriptor.from_raw({"date": "2025-06-01", "slotId": "42", "time": "09:00"})


class FakeWebSocket:
    """Sync client double: iterating yields queued frames until closed"""

    def __init__(self):
        self.sent = []
        self.inbox = queue.Queue()
        self.closed = False

    def send(self, data):
        self.sent.append(json.loads(data))

    def close(self):
        self.closed = True
        self.inbox.put(None)

    def push(self, message_type, payload=None):
        self.inbox.put(protocol.encode(message_type, payload))

    def __iter__(self):
        while True:
            item = self.inbox.get(timeout=5)
            if item is None:
                return
            yield item

    def types(self):
        return [frame["type"] for frame in self.sent]


@pytest.fixture
def fake_ws():
    return FakeWebSocket()


@pytest.fixture
def channel(fake_ws):
    channel = HiveChannel(
        url="ws://hive.test/ws",
        name="Alpha",
        version="9.9",
        reconnect_interval=0.01,
        max_attempts=1,
        heartbeat_interval=60.0,
        connect=lambda url: fake_ws,
    )
    channel.start()
    assert channel.wait_connected(timeout=2)
    yield channel
    channel.disconnect()


def test_welcome_registers_and_sends_heartbeat(channel, fake_ws):
    fake_ws.push(MessageType.WELCOME, {"clientId": "abc-123", "serverTime": protocol.now_ms()})

    assert wait_for(lambda: "HEARTBEAT" in fake_ws.types())
    register = fake_ws.sent[0]
    assert register == {"type": "REGISTER", "payload": {"name": "Alpha", "version": "9.9"}}
    assert channel.client_id == "abc-123"
    assert fake_ws.sent[1]["payload"]["clientId"] == "abc-123"

    status = channel.status()
    assert status["connected"]
    assert status["clientId"] == "abc-123"
    assert abs(status["serverTimeOffset"]) < 5000


def test_heartbeat_ack_and_client_count(channel, fake_ws):
    fake_ws.push(MessageType.HEARTBEAT_ACK, {"timestamp": protocol.now_ms()})
    fake_ws.push(MessageType.CLIENT_COUNT, {"count": 3})

    assert wait_for(lambda: channel.fleet_size == 3)
    assert channel.last_heartbeat is not None


def test_registered_handler_receives_payload(channel, fake_ws):
    handler = MagicMock()
    channel.on(MessageType.SNIPER_TRIGGER, handler)

    fake_ws.push(MessageType.SNIPER_TRIGGER, {"source": "Bravo", "slots": []})

    assert wait_for(lambda: handler.called)
    handler.assert_called_once_with({"source": "Bravo", "slots": []})


def test_handler_failure_is_reported_as_error(channel, fake_ws):
    channel.on(MessageType.START_SCOUT, MagicMock(side_effect=RuntimeError("scout unavailable")))

    fake_ws.push(MessageType.START_SCOUT, {"dataParam": "MAR_CAT"})

    assert wait_for(lambda: "ERROR" in fake_ws.types())
    error = fake_ws.sent[-1]
    assert error["payload"]["error"] == "scout unavailable"
    assert channel.connected


def test_malformed_frame_is_dropped(channel, fake_ws):
    handler = MagicMock()
    channel.on(MessageType.BOOKING_COMPLETE, handler)

    fake_ws.inbox.put("{not json")
    fake_ws.push(MessageType.BOOKING_COMPLETE, {"bookedBy": "Bravo"})

    assert wait_for(lambda: handler.called)
    assert channel.connected


def test_report_booking_picks_message_type(channel, fake_ws):
    assert channel.report_booking(BookingAttemptResult.booked(redirect_url="/MAR/Payment"), SLOT)
    assert channel.report_booking(BookingAttemptResult.failed("Rate limited"), SLOT)

    success, failure = fake_ws.sent
    assert success["type"] == "BOOKING_SUCCESS"
    assert success["payload"]["slotData"] == {"date": "2025-06-01", "slotId": "42", "time": "09:00"}
    assert success["payload"]["result"]["status"] == "BOOKED"
    assert failure["type"] == "BOOKING_FAILED"
    assert failure["payload"]["reason"] == "Rate limited"


def test_report_slot_found(channel, fake_ws):
    channel.report_slot_found([SLOT], "MAR_CAT")

    message = fake_ws.sent[0]
    assert message["type"] == "SLOT_FOUND"
    assert message["payload"]["slots"] == [SLOT.to_dict()]
    assert message["payload"]["dataParam"] == "MAR_CAT"


def test_server_shutdown_stops_reconnecting(fake_ws):
    connect = MagicMock(return_value=fake_ws)
    channel = HiveChannel(url="ws://hive.test/ws", reconnect_interval=0.01, heartbeat_interval=60.0, connect=connect)
    channel.start()
    assert channel.wait_connected(timeout=2)

    fake_ws.push(MessageType.SERVER_SHUTDOWN)

    assert wait_for(lambda: not channel._threads[0].is_alive())
    assert fake_ws.closed
    assert connect.call_count == 1
    assert not channel.connected


def test_send_while_disconnected_returns_false():
    channel = HiveChannel(url="ws://hive.test/ws", connect=MagicMock())

    assert channel.send(MessageType.LOG, {"message": "hello"}) is False


def test_reconnect_gives_up_after_max_attempts():
    connect = MagicMock(side_effect=OSError("connection refused"))
    channel = HiveChannel(
        url="ws://hive.test/ws",
        reconnect_interval=0.01,
        max_attempts=2,
        heartbeat_interval=60.0,
        connect=connect,
    )
    channel.start()

    assert wait_for(lambda: not channel._threads[0].is_alive())
    assert connect.call_count == 3
    assert channel.status()["reconnectAttempts"] == 3
    assert not channel.status()["reconnecting"]
    channel.disconnect()


def test_reconnects_after_drop():
    sockets = [FakeWebSocket(), FakeWebSocket()]
    connect = MagicMock(side_effect=sockets)
    channel = HiveChannel(url="ws://hive.test/ws", reconnect_interval=0.01, heartbeat_interval=60.0, connect=connect)
    channel.start()
    assert channel.wait_connected(timeout=2)

    sockets[0].inbox.put(None)

    assert wait_for(lambda: connect.call_count == 2 and channel.connected)
    assert channel.status()["reconnectAttempts"] == 0
    channel.disconnect()
    assert sockets[1].closed
