from unittest.mock import MagicMock, patch

import requests

from slot_hive.notifier import TelegramNotifier, format_booking_confirmed, format_slot_found

SLOT_PAYLOAD = {"slots": [{"date": "2025-06-01", "slotId": "42", "time": "09:00"}], "dataParam": "MAR_CAT"}


def make_notifier(**kwargs):
    options = {"token": "123:abc", "chat_id": "999", "enabled": True, "min_interval": 60.0}
    options.update(kwargs)
    return TelegramNotifier(**options)


def test_format_slot_found():
    text = format_slot_found("Alpha", SLOT_PAYLOAD)

    assert "SLOT FOUND" in text
    assert "Alpha" in text
    assert "2025-06-01" in text
    assert "09:00" in text
    assert "1 slot(s)" in text


def test_format_booking_confirmed():
    text = format_booking_confirmed("Bravo", {"slotData": {"date": "2025-06-01", "time": "09:00"}})

    assert "BOOKING CONFIRMED" in text
    assert "Bravo" in text
    assert "2025-06-01" in text


@patch("slot_hive.notifier.requests.post")
def test_unconfigured_notifier_only_logs(mock_post):
    notifier = TelegramNotifier(token="", chat_id="", enabled=True)

    assert not notifier.configured
    assert notifier.send_alert("hello") is False
    mock_post.assert_not_called()


@patch("slot_hive.notifier.requests.post")
def test_send_alert_posts_to_bot_api(mock_post):
    mock_post.return_value = MagicMock()
    notifier = make_notifier()

    assert notifier.send_alert("hello") is True

    url = mock_post.call_args[0][0]
    payload = mock_post.call_args[1]["json"]
    assert url == "https://api.telegram.org/bot123:abc/sendMessage"
    assert payload["chat_id"] == "999"
    assert payload["text"] == "hello"
    assert payload["parse_mode"] == "Markdown"


@patch("slot_hive.notifier.requests.post")
def test_non_urgent_messages_are_rate_limited(mock_post):
    notifier = make_notifier()

    assert notifier.send_alert("first") is True
    assert notifier.send_alert("second") is False
    assert notifier.send_alert("urgent", urgent=True) is True
    assert mock_post.call_count == 2


@patch("slot_hive.notifier.requests.post")
def test_request_failure_returns_false(mock_post):
    mock_post.side_effect = requests.exceptions.ConnectionError("no route")

    assert make_notifier().send_alert("hello") is False


@patch("slot_hive.notifier.requests.post")
def test_notify_slot_found_is_urgent(mock_post):
    notifier = make_notifier()
    notifier.send_alert("warm up")

    assert notifier.notify_slot_found("Alpha", SLOT_PAYLOAD) is True
    assert mock_post.call_count == 2
