import json
import os

from slot_hive.models import Cookie
from slot_hive.session_store import MAX_HISTORY_SIZE, SessionStore, determine_auth_status


def test_auth_inferred_from_page_state():
    assert determine_auth_status("CALENDAR", [])
    assert determine_auth_status("APPOINTMENT", [])
    assert not determine_auth_status("LOGIN", [])


def test_auth_inferred_from_cookie():
    assert determine_auth_status(None, [Cookie(".AspNetCore.Cookies", "x")])
    assert not determine_auth_status(None, [Cookie("_ga", "x")])


def test_update_replaces_snapshot():
    sessions = SessionStore()
    first = sessions.update(cookies=[Cookie("session", "1")], page_state="LOGIN")
    second = sessions.update(cookies=[Cookie("other", "2")], page_state="LOGIN")

    assert first.is_authenticated
    assert not second.is_authenticated
    assert sessions.get_session() is second


def test_clear_resets_session():
    sessions = SessionStore()
    sessions.update(page_state="CALENDAR")
    sessions.clear()

    assert not sessions.get_session().is_authenticated


def test_history_is_bounded_and_redacted():
    sessions = SessionStore()
    for i in range(MAX_HISTORY_SIZE + 5):
        sessions.update(cookies=[Cookie("session", f"secret-{i}")], url=f"https://portal.example/{i}")

    history = sessions.history()
    assert len(history) == MAX_HISTORY_SIZE
    assert history[0]["url"].endswith(f"/{MAX_HISTORY_SIZE + 4}")
    assert history[0]["cookies"] == 1
    assert "secret" not in json.dumps(history)


def test_token_memory():
    sessions = SessionStore()
    assert sessions.last_token() is None

    sessions.remember_token("tok-1")
    assert sessions.last_token() == "tok-1"


def test_session_file_reloaded_when_modified(tmp_path):
    path = tmp_path / "session.json"
    path.write_text(json.dumps({
        "cookies": [{"name": "ASP.NET_SessionId", "value": "a"}],
        "pageState": "LOGIN",
    }))
    os.utime(path, (1000, 1000))

    sessions = SessionStore(str(path))
    first = sessions.get_session()
    assert first.is_authenticated
    assert first.captured_at == 1000
    assert sessions.get_session() is first

    path.write_text(json.dumps({"cookies": [], "isAuthenticated": False, "url": "https://portal.example/"}))
    os.utime(path, (2000, 2000))

    second = sessions.get_session()
    assert not second.is_authenticated
    assert second.url == "https://portal.example/"


def test_missing_or_broken_session_file_keeps_snapshot(tmp_path):
    sessions = SessionStore(str(tmp_path / "missing.json"))
    assert not sessions.get_session().is_authenticated

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    sessions = SessionStore(str(broken))
    assert not sessions.get_session().is_authenticated
