"""Scout finds a slot, Sniper books it, the Hive stops every client"""

import asyncio
from unittest.mock import MagicMock

from conftest import BASE_URL, make_response
from slot_hive import protocol
from slot_hive.channel import HiveChannel
from slot_hive.coordinator import HuntCoordinator
from slot_hive.hive import Hive
from slot_hive.models import AutoSniperConfig, BookingConfig, BookingStatus, ProbeStatus
from slot_hive.scout import Scout
from slot_hive.sniper import Sniper
from test_hive import FakeConnection

SLOT_RECORD = {"date": "2025-06-01", "slotId": "42", "time": "09:00"}


def portal_http():
    http = MagicMock()

    def post(url, **kwargs):
        if url.endswith("/GetAvailableSlotsByDate"):
            return make_response(200, json_body={"slots": [SLOT_RECORD]})
        if url.endswith("/NewAppointment"):
            return make_response(302, headers={"Location": "/MAR/Payment"})
        return make_response(404, reason="Not Found")

    http.post.side_effect = post
    return http


def test_found_slot_is_booked_and_completion_reaches_all_clients(store):
    http = portal_http()
    outbox = []
    channel = HiveChannel(url="ws://hive.test/ws", name="Alpha", connect=MagicMock())
    channel.send = lambda message_type, payload=None: outbox.append(protocol.encode(message_type, payload)) or True

    booked = []
    sniper = Sniper(store, base_url=BASE_URL, booking_config=BookingConfig(visa_type="13"), http=http)
    sniper.add_booked_listener(lambda result, slot: booked.append(result))
    coordinator = HuntCoordinator(
        store,
        scout=Scout(store, base_url=BASE_URL, http=http),
        sniper=sniper,
        channel=channel,
        auto_sniper=AutoSniperConfig(enabled=True, max_auto_attempts=3),
    )

    async def scenario():
        hive = Hive(notifier=MagicMock())
        conns = [FakeConnection() for _ in range(3)]
        records = [await hive.connect(conn) for conn in conns]

        result = coordinator.start_hunt("MAR_CAT")
        assert result.status == ProbeStatus.FOUND

        for raw in outbox:
            await hive.handle_raw(records[0].id, raw)
        await hive.drain_notifications()
        return hive, conns

    hive, conns = asyncio.run(scenario())

    assert booked[0].status == BookingStatus.BOOKED
    assert booked[0].redirect_url == "/MAR/Payment"
    assert coordinator.hunt_complete.is_set()
    assert coordinator.booked_slot.slot_id == "42"

    assert [protocol.decode(raw).type for raw in outbox] == ["SLOT_FOUND", "BOOKING_SUCCESS"]
    assert "SNIPER_TRIGGER" not in conns[0].types()
    assert conns[1].last("SNIPER_TRIGGER")["payload"]["slots"] == [SLOT_RECORD]
    assert conns[2].last("SNIPER_TRIGGER")["payload"]["slots"] == [SLOT_RECORD]
    for conn in conns:
        assert conn.last("BOOKING_COMPLETE")["payload"]["slotData"] == SLOT_RECORD
    assert hive.clients[next(iter(hive.clients))].stats.bookings == 1
