import json

import pytest

from slot_hive import protocol
from slot_hive.protocol import DispatchTable, Message, MessageType, ProtocolError


def test_encode_produces_type_and_payload():
    frame = json.loads(protocol.encode(MessageType.CLIENT_COUNT, {"count": 3}))

    assert frame == {"type": "CLIENT_COUNT", "payload": {"count": 3}}


def test_decode_known_type():
    message = protocol.decode('{"type": "HEARTBEAT", "payload": {"status": "hunting"}}')

    assert message.kind == MessageType.HEARTBEAT
    assert message.payload == {"status": "hunting"}


def test_decode_bytes_and_missing_payload():
    message = protocol.decode(b'{"type": "SERVER_SHUTDOWN"}')

    assert message.kind == MessageType.SERVER_SHUTDOWN
    assert message.payload == {}


def test_decode_unknown_type_is_not_an_error():
    message = protocol.decode('{"type": "PING", "payload": {}}')

    assert message.type == "PING"
    assert message.kind is None


@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2]",
    '{"payload": {}}',
    '{"type": 5}',
    '{"type": "LOG", "payload": [1]}',
    None,
])
def test_decode_rejects_malformed_frames(raw):
    with pytest.raises(ProtocolError):
        protocol.decode(raw)


def test_dispatch_table_lookup():
    handler = object()
    table = DispatchTable({MessageType.SLOT_FOUND: handler})

    assert table.lookup(Message(type="SLOT_FOUND")) is handler
    assert table.lookup(Message(type="LOG")) is None
    assert table.lookup(Message(type="NOT_A_TYPE")) is None
    assert MessageType.SLOT_FOUND in table

    table.register(MessageType.LOG, handler)
    assert table.lookup(Message(type="LOG")) is handler
