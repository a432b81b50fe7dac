"""
Slot Hive - Session Context Store
Single-writer / multi-reader holder of the latest captured session.
Readers get an immutable snapshot and must re-fetch before every network call.
"""

import json
import logging
import os
import threading
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional

from .models import Cookie, SessionContext

logger = logging.getLogger("SlotHive.Session")

AUTHENTICATED_PAGE_STATES = ("APPOINTMENT", "CALENDAR")
AUTH_COOKIE_NAMES = ("asp.net_sessionid", ".aspnetcore.cookies", "auth_token", "session")
MAX_HISTORY_SIZE = 50


def determine_auth_status(page_state: Optional[str], cookies: List[Cookie]) -> bool:
    """Infer authentication from the page state or an auth cookie"""
    if page_state in AUTHENTICATED_PAGE_STATES:
        return True

    return any(
        marker in cookie.name.lower()
        for cookie in cookies
        for marker in AUTH_COOKIE_NAMES
    )


class SessionStore:
    """
    Holds the latest SessionContext

    The observer (browser hook, file watcher, ...) is the only writer.
    Scout and Sniper call get_session() before each request.
    """

    def __init__(self, session_file: Optional[str] = None):
        self._lock = threading.Lock()
        self._session = SessionContext()
        self._history: List[Dict[str, Any]] = []
        self._last_token: Optional[str] = None
        self._session_file = session_file
        self._file_mtime: Optional[float] = None

    # ==================== Writer side ====================

    def update(
        self,
        cookies: Optional[List[Cookie]] = None,
        headers: Optional[Dict[str, str]] = None,
        url: Optional[str] = None,
        page_state: Optional[str] = None,
        dom_data: Optional[Dict[str, Any]] = None,
        is_authenticated: Optional[bool] = None,
    ) -> SessionContext:
        """
        Replace the active session with freshly captured material

        Args:
            cookies: Cookies captured for the portal domain
            headers: Request headers captured from the page
            url: Page URL the material was captured on
            page_state: Detected page state (e.g. "CALENDAR")
            dom_data: Values scraped from the page (e.g. verificationToken)
            is_authenticated: Explicit flag; inferred when omitted

        Returns:
            The new snapshot
        """
        cookies = list(cookies or [])
        if is_authenticated is None:
            is_authenticated = determine_auth_status(page_state, cookies)

        session = SessionContext(
            cookies=cookies,
            headers=dict(headers or {}),
            is_authenticated=is_authenticated,
            captured_at=time.time(),
            url=url,
            page_state=page_state,
            dom_data=dict(dom_data or {}),
        )
        self._set(session)
        logger.info(
            f"[SESSION] Updated - state={page_state} "
            f"authenticated={is_authenticated} cookies={len(cookies)}"
        )
        return session

    def clear(self):
        with self._lock:
            self._session = SessionContext()
        logger.info("[SESSION] Cleared")

    def _set(self, session: SessionContext):
        with self._lock:
            self._session = session
            self._history.insert(0, {
                "url": session.url,
                "pageState": session.page_state,
                "isAuthenticated": session.is_authenticated,
                "capturedAt": session.captured_at,
                "cookies": len(session.cookies),
            })
            del self._history[MAX_HISTORY_SIZE:]

    # ==================== Reader side ====================

    def get_session(self) -> SessionContext:
        """Return the latest observed snapshot (reloads the session file if it changed)"""
        if self._session_file:
            self._reload_if_changed()
        with self._lock:
            return self._session

    def history(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._history)

    # ==================== Token memory ====================

    def remember_token(self, token: str):
        with self._lock:
            self._last_token = token

    def last_token(self) -> Optional[str]:
        with self._lock:
            return self._last_token

    # ==================== File observer ====================

    def _reload_if_changed(self):
        try:
            mtime = os.path.getmtime(self._session_file)
        except OSError:
            return

        if self._file_mtime is not None and mtime == self._file_mtime:
            return

        try:
            with open(self._session_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"[SESSION] Failed to load {self._session_file}: {e}")
            return

        session = SessionContext.from_dict(data)
        if "isAuthenticated" not in data:
            session = replace(
                session,
                is_authenticated=determine_auth_status(session.page_state, session.cookies),
            )
        if session.captured_at is None:
            session = replace(session, captured_at=mtime)

        self._file_mtime = mtime
        self._set(session)
        logger.info(
            f"[SESSION] Loaded from {self._session_file} - "
            f"authenticated={session.is_authenticated} cookies={len(session.cookies)}"
        )
