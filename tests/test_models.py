import datetime

import pytest

from slot_hive.models import (
    BookingAttemptResult,
    BookingStatus,
    ProbeResult,
    ProbeStatus,
    SessionContext,
    SlotDescriptor,
)


def test_slot_from_raw_canonical_fields():
    slot = SlotDescriptor.from_raw({"date": "2025-06-01", "slotId": "42", "time": "09:00"})

    assert slot.date == datetime.date(2025, 6, 1)
    assert slot.slot_id == "42"
    assert slot.time == datetime.time(9, 0)


def test_slot_from_raw_provider_variants():
    slot = SlotDescriptor.from_raw({
        "AppointmentDate": "2025-06-01T00:00:00",
        "AppointmentSlotId": 7,
        "AppointmentTime": "09:00-09:15",
    })

    assert slot.to_dict() == {"date": "2025-06-01", "slotId": "7", "time": "09:00"}


def test_slot_from_raw_day_first_date():
    slot = SlotDescriptor.from_raw({"date": "01/06/2025", "id": "x", "Time": "14:30:00"})

    assert slot.date == datetime.date(2025, 6, 1)
    assert slot.time == datetime.time(14, 30)


@pytest.mark.parametrize("raw", [
    {"date": "2025-06-01", "time": "09:00"},
    {"date": "not-a-date", "slotId": "1", "time": "09:00"},
    {"date": "2025-06-01", "slotId": "1", "time": "later"},
    "2025-06-01",
])
def test_slot_from_raw_rejects_malformed(raw):
    with pytest.raises(ValueError):
        SlotDescriptor.from_raw(raw)


def test_session_context_from_dict():
    session = SessionContext.from_dict({
        "cookies": [{"name": "ASP.NET_SessionId", "value": "abc"}, {"value": "nameless"}],
        "headers": {"User-Agent": "UA"},
        "isAuthenticated": True,
        "url": "https://portal.example/MAR/",
        "domData": {"verificationToken": "tok"},
    })

    assert session.cookie_jar() == {"ASP.NET_SessionId": "abc"}
    assert session.is_authenticated
    assert session.dom_data["verificationToken"] == "tok"


def test_probe_result_to_dict_uses_wire_names():
    slot = SlotDescriptor.from_raw({"date": "2025-06-01", "slotId": "42", "time": "09:00"})
    initial = ProbeResult(status=ProbeStatus.EMPTY, message="No slots available")
    data = ProbeResult(
        status=ProbeStatus.FOUND,
        slots=[slot],
        remaining_seconds=2.0,
        initial_result=initial,
    ).to_dict()

    assert data["status"] == "FOUND"
    assert data["count"] == 1
    assert data["slots"][0]["slotId"] == "42"
    assert data["remainingSeconds"] == 2.0
    assert data["initialResult"] == {"status": "EMPTY", "message": "No slots available"}
    assert "error" not in data


def test_booking_result_variants():
    booked = BookingAttemptResult.booked(redirect_url="/MAR/Payment")
    pending = BookingAttemptResult.pending("Response unclear")

    assert booked.is_booked
    assert booked.to_dict() == {"status": "BOOKED", "redirectUrl": "/MAR/Payment"}
    assert pending.status == BookingStatus.PENDING
    assert not pending.is_booked
    assert BookingAttemptResult.token_error("Missing").status == BookingStatus.TOKEN_ERROR
