from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from slot_hive.hive import Hive
from slot_hive.server import create_app


@pytest.fixture
def hive():
    notifier = MagicMock()
    notifier.configured = True
    notifier.send_alert.return_value = True
    return Hive(notifier=notifier)


@pytest.fixture
def client(hive):
    return TestClient(create_app(hive))


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["connectedClients"] == 0


def test_timestamp(client):
    body = client.get("/timestamp").json()

    assert isinstance(body["time"], int)
    assert body["iso"].endswith("Z")


def test_clients_empty(client):
    assert client.get("/clients").json() == {"count": 0, "clients": []}


def test_command_unknown_client_is_404(client):
    response = client.post("/command/nope", json={"type": "STOP_SCOUT"})

    assert response.status_code == 404


def test_broadcast_with_no_clients(client):
    response = client.post("/broadcast", json={"type": "STOP_SCOUT", "payload": {}})

    assert response.status_code == 200
    assert response.json()["sentTo"] == 0


def test_notify_requires_message(client):
    response = client.post("/notify", json={"message": "   "})

    assert response.status_code == 400


def test_notify_sends_alert(client, hive):
    response = client.post("/notify", json={"message": "Manual check"})

    assert response.status_code == 200
    assert response.json()["delivered"] is True
    hive.notifier.send_alert.assert_called_once_with("Manual check")


def test_notify_failure_is_500(client, hive):
    hive.notifier.send_alert.return_value = False

    response = client.post("/notify", json={"message": "Manual check"})

    assert response.status_code == 500


def test_websocket_session(client, hive):
    with client.websocket_connect("/ws") as ws:
        welcome = ws.receive_json()
        assert welcome["type"] == "WELCOME"
        client_id = welcome["payload"]["clientId"]

        count = ws.receive_json()
        assert count == {"type": "CLIENT_COUNT", "payload": {"count": 1}}

        ws.send_json({"type": "REGISTER", "payload": {"name": "Alpha", "version": "1.0.0"}})
        ws.send_json({"type": "HEARTBEAT", "payload": {"status": "hunting", "stats": {"checks": 3}}})
        ack = ws.receive_json()
        assert ack["type"] == "HEARTBEAT_ACK"

        record = hive.clients[client_id]
        assert record.name == "Alpha"
        assert record.stats.checks == 3


def test_websocket_root_path_accepted(client):
    with client.websocket_connect("/") as ws:
        assert ws.receive_json()["type"] == "WELCOME"


def test_websocket_binary_frame_keeps_connection(client, hive):
    with client.websocket_connect("/ws") as ws:
        client_id = ws.receive_json()["payload"]["clientId"]
        ws.receive_json()

        ws.send_bytes(b'{"type": "REGISTER", "payload": {"name": "Bravo", "version": "1.0.0"}}')
        ws.send_bytes(b"\xff\xfe not json")
        ws.send_json({"type": "HEARTBEAT", "payload": {"status": "idle"}})

        assert ws.receive_json()["type"] == "HEARTBEAT_ACK"
        assert len(hive.clients) == 1
        assert hive.clients[client_id].name == "Bravo"
