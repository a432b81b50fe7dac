"""
Slot Hive - Sniper Module
Single-shot booking executor with response classification.

The portal signals success inconsistently (redirects vs. 200 pages with
human-readable text), so classification checks several signals in order and
returns PENDING rather than guessing.

Every redirect code (301/302/303/307/308) is read like a 302, and any 2xx
body is scanned like a 200 page.
"""

import logging
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import Config
from .models import BookingAttemptResult, BookingConfig, BookingStatus, SessionContext, SlotDescriptor
from .portals import detect_portal
from .session_store import SessionStore

logger = logging.getLogger("SlotHive.Sniper")

BookedListener = Callable[[BookingAttemptResult, SlotDescriptor], None]

TOKEN_FIELD = "__RequestVerificationToken"
TOKEN_INPUT_PATTERNS = [
    re.compile(r'name="__RequestVerificationToken"[^>]*value="([^"]+)"', re.IGNORECASE),
    re.compile(r'value="([^"]+)"[^>]*name="__RequestVerificationToken"', re.IGNORECASE),
]

REDIRECT_CODES = (301, 302, 303, 307, 308)
BOOKED_REDIRECT_MARKERS = ("Payment", "Confirm", "Success")

# Checked before the success phrases: "already booked" contains "booked"
SLOT_GONE_PHRASES = ("not available", "already booked")
SUCCESS_PHRASES = ("successfully", "booked", "appointment has been")
FAILURE_PHRASES = ("error", "failed")

BOOKING_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Content-Type": "application/x-www-form-urlencoded",
    "X-Requested-With": "XMLHttpRequest",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


# ==================== Response Classification ====================

def classify_response(
    status_code: int,
    body: str = "",
    location: Optional[str] = None,
    reason: str = "",
) -> BookingAttemptResult:
    """
    Map a raw booking response onto a BookingAttemptResult

    Args:
        status_code: HTTP status
        body: Response text (only inspected for 2xx)
        location: Location header for redirects
        reason: HTTP reason phrase

    Returns:
        BookingAttemptResult
    """
    if status_code in REDIRECT_CODES:
        if location and any(marker in location for marker in BOOKED_REDIRECT_MARKERS):
            return BookingAttemptResult.booked(redirect_url=location)
        return BookingAttemptResult.pending("Ambiguous redirect", redirect_url=location)

    if 200 <= status_code < 300:
        text = (body or "").lower()
        if any(phrase in text for phrase in SLOT_GONE_PHRASES):
            return BookingAttemptResult.failed("Slot no longer available")
        if any(phrase in text for phrase in SUCCESS_PHRASES):
            return BookingAttemptResult.booked()
        if any(phrase in text for phrase in FAILURE_PHRASES):
            return BookingAttemptResult.failed("Slot no longer available")
        return BookingAttemptResult.pending("Response unclear")

    if status_code == 429:
        return BookingAttemptResult.failed("Rate limited")

    if status_code in (401, 403):
        return BookingAttemptResult.failed("Authentication failed")

    return BookingAttemptResult.failed(f"HTTP {status_code}: {reason}")


def extract_token_from_html(html: str) -> Optional[str]:
    for pattern in TOKEN_INPUT_PATTERNS:
        match = pattern.search(html or "")
        if match:
            return match.group(1)
    return None


def build_booking_payload(
    slot: SlotDescriptor,
    token: str,
    booking: BookingConfig,
) -> Dict[str, str]:
    return {
        "AppointmentDate": slot.date.isoformat(),
        "AppointmentSlotId": slot.slot_id,
        "AppointmentTime": slot.time.strftime("%H:%M"),
        "VisaType": booking.visa_type,
        "VisaSubType": booking.visa_sub_type or booking.visa_type,
        "Center": booking.center,
        "AppointmentCategoryId": booking.appointment_category,
        "ApplicantCount": str(booking.applicant_count),
        TOKEN_FIELD: token,
        "_ts": str(int(time.time() * 1000)),
    }


class Sniper:
    """
    Booking executor

    Allows one outstanding booking request per instance; a second concurrent
    call is rejected with PENDING("Already executing") and has no side effects.
    """

    def __init__(
        self,
        sessions: SessionStore,
        base_url: Optional[str] = None,
        booking_config: Optional[BookingConfig] = None,
        http: Optional[requests.Session] = None,
        max_retries: int = Config.SNIPER_MAX_RETRIES,
        retry_delay: float = Config.SNIPER_RETRY_DELAY,
        timeout: float = Config.REQUEST_TIMEOUT,
    ):
        self.sessions = sessions
        self.base_url = base_url or Config.PORTAL_BASE_URL or ""
        self.booking_config = booking_config
        self.http = http or requests.Session()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout

        self._in_flight = threading.Lock()
        self._stats_lock = threading.Lock()
        self.last_shot: Optional[float] = None
        self.total_shots = 0
        self.successful_shots = 0
        self.failed_shots = 0
        self._booked_listeners: List[BookedListener] = []

    def add_booked_listener(self, listener: BookedListener):
        self._booked_listeners.append(listener)

    @property
    def is_executing(self) -> bool:
        return self._in_flight.locked()

    def status(self) -> Dict[str, Any]:
        with self._stats_lock:
            return {
                "lastShot": self.last_shot,
                "totalShots": self.total_shots,
                "successfulShots": self.successful_shots,
                "failedShots": self.failed_shots,
                "isExecuting": self.is_executing,
            }

    # ==================== Token ====================

    def resolve_token(self, session: SessionContext) -> Optional[str]:
        """
        Resolve the anti-CSRF token: session header, DOM snapshot,
        live page fetch, then the last known value. First hit wins.
        """
        sources = (
            ("session headers", lambda: session.headers.get(TOKEN_FIELD)),
            ("DOM snapshot", lambda: session.dom_data.get("verificationToken")),
            ("live page", lambda: self._fetch_page_token(session)),
            ("last known", self.sessions.last_token),
        )
        for source, lookup in sources:
            try:
                token = lookup()
            except Exception as e:
                logger.warning(f"[TOKEN] Lookup via {source} failed: {e}")
                continue
            if token:
                logger.debug(f"[TOKEN] Found in {source}")
                self.sessions.remember_token(token)
                return token
        return None

    def _fetch_page_token(self, session: SessionContext) -> Optional[str]:
        if not session.url:
            return None
        headers = {}
        if session.headers.get("User-Agent"):
            headers["User-Agent"] = session.headers["User-Agent"]

        response = self.http.get(
            session.url,
            headers=headers,
            cookies=session.cookie_jar(),
            timeout=self.timeout,
        )
        if not response.ok:
            return None
        return extract_token_from_html(response.text)

    # ==================== Execution ====================

    def execute(
        self,
        slot: SlotDescriptor,
        session: Optional[SessionContext] = None,
    ) -> BookingAttemptResult:
        """
        Fire one booking request for slot

        Args:
            slot: Booking target
            session: Session snapshot; fetched from the store when omitted

        Returns:
            BookingAttemptResult
        """
        if not self._in_flight.acquire(blocking=False):
            logger.warning("[SNIPER] Already executing, blocking duplicate shot")
            return BookingAttemptResult.pending("Already executing")

        try:
            with self._stats_lock:
                self.last_shot = time.time()
                self.total_shots += 1

            result = self._fire(slot, session)

            with self._stats_lock:
                if result.is_booked:
                    self.successful_shots += 1
                else:
                    self.failed_shots += 1

            if result.is_booked:
                logger.info(f"[BOOKED] Slot {slot.slot_id} on {slot.date} {slot.time:%H:%M}")
                self._broadcast_booked(result, slot)
            else:
                logger.warning(f"[SNIPER] {result.status.value}: {result.reason}")

            return result
        finally:
            self._in_flight.release()

    def _fire(self, slot: SlotDescriptor, session: Optional[SessionContext]) -> BookingAttemptResult:
        try:
            if session is None:
                session = self.sessions.get_session()

            token = self.resolve_token(session)
            if not token:
                logger.error("[SNIPER] No verification token available")
                return BookingAttemptResult.token_error(f"Missing {TOKEN_FIELD}")

            booking = self.booking_config or BookingConfig.from_config()
            portal = detect_portal(session.url)
            url = portal.url(self.base_url, portal.book)

            headers = dict(BOOKING_HEADERS)
            headers[TOKEN_FIELD] = token
            headers["RequestVerificationToken"] = token
            if session.headers.get("User-Agent"):
                headers["User-Agent"] = session.headers["User-Agent"]

            logger.info(f"[SNIPER] Firing at {url} for slot {slot.slot_id}")
            response = self.http.post(
                url,
                data=build_booking_payload(slot, token, booking),
                headers=headers,
                cookies=session.cookie_jar(),
                allow_redirects=False,
                timeout=self.timeout,
            )

            body = response.text if 200 <= response.status_code < 300 else ""
            return classify_response(
                response.status_code,
                body=body,
                location=response.headers.get("Location"),
                reason=response.reason or "",
            )
        except Exception as e:
            logger.error(f"[SNIPER] Execution error: {e}")
            return BookingAttemptResult.failed(str(e))

    def execute_with_retry(
        self,
        slot: SlotDescriptor,
        session: Optional[SessionContext] = None,
        retries: Optional[int] = None,
    ) -> BookingAttemptResult:
        """
        Execute, retrying FAILED outcomes after a short fixed delay

        TOKEN_ERROR, PENDING and BOOKED are returned immediately.
        """
        remaining = self.max_retries if retries is None else retries
        result = self.execute(slot, session)

        while result.status == BookingStatus.FAILED and remaining > 0:
            logger.info(f"[SNIPER] Retrying... {remaining} attempt(s) remaining")
            time.sleep(self.retry_delay)
            remaining -= 1
            result = self.execute(slot, session)

        return result

    def _broadcast_booked(self, result: BookingAttemptResult, slot: SlotDescriptor):
        for listener in list(self._booked_listeners):
            try:
                listener(result, slot)
            except Exception as e:
                logger.error(f"[SNIPER] Booked-listener {listener!r} failed: {e}", exc_info=True)
