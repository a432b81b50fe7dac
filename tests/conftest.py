import json
import time

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from slot_hive.models import Cookie
from slot_hive.session_store import SessionStore

BASE_URL = "https://portal.example"
SESSION_URL = f"{BASE_URL}/MAR/appointment/slotselection"


def make_response(status_code=200, json_body=None, text="", headers=None, reason="", url=BASE_URL):
    """Real requests.Response with canned content"""
    response = requests.Response()
    response.status_code = status_code
    response.reason = reason
    response.url = url
    response.encoding = "utf-8"
    response.headers = CaseInsensitiveDict(headers or {})
    if json_body is not None:
        response._content = json.dumps(json_body).encode("utf-8")
    else:
        response._content = text.encode("utf-8")
    return response


def wait_for(predicate, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def store():
    sessions = SessionStore()
    sessions.update(
        cookies=[Cookie("ASP.NET_SessionId", "abc123")],
        headers={"User-Agent": "TestAgent/1.0", "__RequestVerificationToken": "tok-123"},
        url=SESSION_URL,
        page_state="CALENDAR",
    )
    return sessions
