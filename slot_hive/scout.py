"""
Slot Hive - Scout Module
Silent slot availability polling with jitter, cooldown and exponential backoff.

The poll loop runs in a daemon thread. Cancellation is cooperative: every run
owns a stop Event that is tested after each wait and after each probe.
"""

import logging
import random
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import Config
from .identity import IdentityRotator, NoRotation
from .models import PollerState, ProbeResult, ProbeStatus, SlotDescriptor
from .portals import detect_portal
from .session_store import SessionStore

logger = logging.getLogger("SlotHive.Scout")

FoundListener = Callable[[List[SlotDescriptor], str], None]

PROBE_HEADERS = {
    "Accept": "application/json, text/javascript, */*; q=0.01",
    "Accept-Language": "en-US,en;q=0.9,fr;q=0.8,ar;q=0.7",
    "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
    "X-Requested-With": "XMLHttpRequest",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


def jittered_delay(min_interval: float, max_jitter: float) -> float:
    """Delay in [min_interval, min_interval + max_jitter)"""
    return min_interval + random.random() * max_jitter


def backoff_duration(
    consecutive_errors: int,
    max_retries: int,
    cooldown: float,
    multiplier: float,
    cap: float,
) -> float:
    """
    Cooldown length once errors pile up

    Below max_retries the plain cooldown applies; from there on it grows
    by multiplier per extra error, capped at cap.
    """
    exponent = max(0, consecutive_errors - max_retries)
    return min(cooldown * (multiplier ** exponent), cap)


def extract_slot_records(data: Any) -> List[Any]:
    """Slot list from either a bare list or {"slots": [...]}"""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return data.get("slots") or []
    return []


def normalize_slots(records: List[Any]) -> List[SlotDescriptor]:
    """
    Normalize raw slot records, skipping unparseable ones

    Raises:
        ValueError: if records is non-empty but none could be parsed
    """
    slots = []
    for record in records:
        try:
            slots.append(SlotDescriptor.from_raw(record))
        except ValueError as e:
            logger.warning(f"[SCOUT] Skipping malformed slot {record!r}: {e}")

    if records and not slots:
        raise ValueError("Malformed slot data in response")
    return slots


class Scout:
    """
    Rate-limited slot poller

    One instance per hunt. All probes (loop and on-demand) share the same
    cooldown/backoff state, so manual checks cannot bypass rate limiting.
    """

    def __init__(
        self,
        sessions: SessionStore,
        base_url: Optional[str] = None,
        rotator: Optional[IdentityRotator] = None,
        http: Optional[requests.Session] = None,
        min_interval: float = Config.SCOUT_MIN_INTERVAL,
        max_jitter: float = Config.SCOUT_MAX_JITTER,
        cooldown_duration: float = Config.SCOUT_COOLDOWN,
        max_retries: int = Config.SCOUT_MAX_RETRIES,
        backoff_multiplier: float = Config.SCOUT_BACKOFF_MULTIPLIER,
        max_backoff: float = Config.SCOUT_MAX_BACKOFF,
        rotation_cooldown: float = Config.SCOUT_ROTATION_COOLDOWN,
        timeout: float = Config.REQUEST_TIMEOUT,
    ):
        self.sessions = sessions
        self.base_url = base_url or Config.PORTAL_BASE_URL or ""
        self.rotator = rotator or NoRotation()
        self.http = http or requests.Session()

        self.min_interval = min_interval
        self.max_jitter = max_jitter
        self.cooldown_duration = cooldown_duration
        self.max_retries = max_retries
        self.backoff_multiplier = backoff_multiplier
        self.max_backoff = max_backoff
        self.rotation_cooldown = rotation_cooldown
        self.timeout = timeout

        self.state = PollerState()
        self._lock = threading.Lock()
        self._run_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._options: Dict[str, Any] = {}
        self._found_listeners: List[FoundListener] = []

    # ==================== Listeners ====================

    def add_found_listener(self, listener: FoundListener):
        """Register a callback invoked with (slots, param) on every FOUND probe"""
        self._found_listeners.append(listener)

    def _emit_found(self, slots: List[SlotDescriptor], param: str):
        for listener in list(self._found_listeners):
            try:
                listener(slots, param)
            except Exception as e:
                logger.error(f"[SCOUT] Found-listener {listener!r} failed: {e}", exc_info=True)

    # ==================== Polling Control ====================

    def start(self, param: str, options: Optional[Dict[str, Any]] = None) -> ProbeResult:
        """
        Start polling for param

        Restarts cleanly if already polling. One probe runs immediately; when
        it already finds slots the loop is not entered.

        Args:
            param: Data parameter (appointment category) to poll
            options: Per-run overrides: minInterval, maxJitter (seconds)

        Returns:
            The FOUND probe result, or POLLING with the initial probe attached
        """
        if self.state.is_polling:
            logger.warning("[SCOUT] Already polling, stopping previous loop")
            self.stop()

        logger.info(f"[SCOUT] Starting with param={param}")
        run_event = threading.Event()
        with self._lock:
            self._run_event = run_event
            self._options = dict(options or {})
            self.state.is_polling = True
            self.state.is_paused = False
            self.state.current_param = param
            self.state.consecutive_errors = 0
            self.state.cooldown_until = None

        initial = self.check_once(param)

        if initial.status == ProbeStatus.FOUND:
            with self._lock:
                self.state.is_polling = False
            return initial

        if run_event.is_set():
            # stopped while the initial probe was in flight
            return initial

        self._launch_loop(param, run_event)
        return ProbeResult(
            status=ProbeStatus.POLLING,
            message="Scout started",
            initial_result=initial,
        )

    def stop(self) -> ProbeResult:
        """Halt polling at the next check boundary. Safe to call at any time."""
        logger.info("[SCOUT] Stopping")
        with self._lock:
            self.state.is_polling = False
            self.state.is_paused = False
            if self._run_event is not None:
                self._run_event.set()
            return ProbeResult(
                status=ProbeStatus.STOPPED,
                total_checks=self.state.total_checks,
                slots_found=self.state.slots_found,
            )

    def pause(self):
        with self._lock:
            self.state.is_paused = True
            if self._run_event is not None:
                self._run_event.set()
        logger.info("[SCOUT] Paused")

    def resume(self) -> bool:
        """Re-enter the loop from scratch with the last parameter"""
        with self._lock:
            if not (self.state.is_polling and self.state.is_paused):
                return False
            self.state.is_paused = False
            param = self.state.current_param
            run_event = threading.Event()
            self._run_event = run_event

        logger.info("[SCOUT] Resumed")
        self._launch_loop(param, run_event)
        return True

    def status(self) -> Dict[str, Any]:
        with self._lock:
            state = replace(self.state)
        now = time.time()
        return {
            "isPolling": state.is_polling,
            "isPaused": state.is_paused,
            "lastCheck": state.last_check,
            "nextCheck": state.next_check,
            "cooldownUntil": state.cooldown_until,
            "inCooldown": bool(state.cooldown_until and now < state.cooldown_until),
            "totalChecks": state.total_checks,
            "slotsFound": state.slots_found,
            "consecutiveErrors": state.consecutive_errors,
            "currentParam": state.current_param,
        }

    def next_delay(self) -> float:
        min_interval = self._options.get("minInterval", self.min_interval)
        max_jitter = self._options.get("maxJitter", self.max_jitter)
        return jittered_delay(min_interval, max_jitter)

    def join(self, timeout: Optional[float] = None):
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    # ==================== Poll Loop ====================

    def _launch_loop(self, param: str, run_event: threading.Event):
        self._thread = threading.Thread(
            target=self._poll_loop,
            args=(param, run_event),
            name="Scout-Loop",
            daemon=True,
        )
        self._thread.start()

    def _should_continue(self, run_event: threading.Event) -> bool:
        with self._lock:
            return (
                not run_event.is_set()
                and self.state.is_polling
                and not self.state.is_paused
            )

    def _poll_loop(self, param: str, run_event: threading.Event):
        delay: Optional[float] = None
        cooling = False

        while self._should_continue(run_event):
            if delay is None:
                remaining = self._cooldown_remaining()
                if remaining > 0:
                    delay, cooling = remaining, True
                else:
                    delay, cooling = self.next_delay(), False

            with self._lock:
                self.state.next_check = time.time() + delay

            logger.info(f"[SCOUT] Next check in {delay:.1f}s")
            if run_event.wait(delay):
                logger.info("[SCOUT] Polling stopped during wait")
                break

            if cooling:
                with self._lock:
                    self.state.cooldown_until = None

            result = self._probe(param, cancel=run_event)

            if run_event.is_set():
                break

            if result.status == ProbeStatus.FOUND:
                logger.info("[SCOUT] Slots found, stopping poll loop")
                with self._lock:
                    self.state.is_polling = False
                break

            if result.status == ProbeStatus.COOLDOWN:
                delay, cooling = result.remaining_seconds or 0.0, True
            else:
                delay, cooling = None, False

        logger.info("[SCOUT] Poll loop ended")

    def _cooldown_remaining(self) -> float:
        with self._lock:
            until = self.state.cooldown_until
        if until is None:
            return 0.0
        return max(0.0, until - time.time())

    # ==================== Probes ====================

    def check_once(self, param: str, date: Optional[str] = None) -> ProbeResult:
        """Single on-demand probe sharing the loop's cooldown/backoff state"""
        return self._probe(param, date)

    def _probe(
        self,
        param: str,
        date: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ProbeResult:
        remaining = self._cooldown_remaining()
        if remaining > 0:
            logger.info(f"[COOLDOWN] {remaining:.0f}s remaining")
            return ProbeResult(status=ProbeStatus.COOLDOWN, remaining_seconds=remaining)

        session = self.sessions.get_session()
        if not session.is_authenticated:
            logger.warning("[SCOUT] No authenticated session available")
            return ProbeResult(status=ProbeStatus.ERROR, error="Not authenticated")

        portal = detect_portal(param)
        url = portal.url(self.base_url, portal.slots)

        body = {"AppointmentCategoryId": param}
        if date:
            body["selectedDate"] = date
        body["_"] = str(int(time.time() * 1000))

        with self._lock:
            self.state.last_check = time.time()
            self.state.total_checks += 1

        logger.debug(f"[SCOUT] Checking slots at {url}")

        try:
            response = self.http.post(
                url,
                data=body,
                headers=self._build_headers(session.headers),
                cookies=session.cookie_jar(),
                timeout=self.timeout,
            )

            if cancel is not None and cancel.is_set():
                return ProbeResult(status=ProbeStatus.STOPPED, message="Result discarded")

            if response.status_code == 429:
                return self._handle_rate_limit()

            if not response.ok:
                raise requests.HTTPError(
                    f"HTTP {response.status_code}: {response.reason}", response=response
                )

            data = response.json()
            slots = normalize_slots(extract_slot_records(data))

            with self._lock:
                self.state.consecutive_errors = 0

            if slots:
                with self._lock:
                    self.state.slots_found += 1
                logger.info(f"[FOUND] {len(slots)} slot(s) for {param}")
                self._emit_found(slots, param)
                return ProbeResult(status=ProbeStatus.FOUND, slots=slots)

            logger.info("[SCOUT] No slots available")
            return ProbeResult(status=ProbeStatus.EMPTY, message="No slots available")

        except Exception as e:
            return self._handle_error(e)

    def _handle_rate_limit(self) -> ProbeResult:
        logger.warning("[429] Rate limited, requesting identity rotation")
        with self._lock:
            self.state.consecutive_errors += 1

        try:
            rotation = self.rotator.rotate()
        except Exception as e:
            logger.warning(f"[429] Identity rotation failed: {e}")
            rotation = None

        if rotation is not None and rotation.success:
            logger.info("[429] Identity rotated, resuming shortly")
            with self._lock:
                self.state.cooldown_until = None
                self.state.consecutive_errors = 0
            return ProbeResult(
                status=ProbeStatus.COOLDOWN,
                remaining_seconds=self.rotation_cooldown,
                identity_rotated=True,
            )

        duration = self.cooldown_duration
        with self._lock:
            self.state.cooldown_until = time.time() + duration

        logger.warning(f"[COOLDOWN] Rate limited, cooling down for {duration:.0f}s")
        return ProbeResult(
            status=ProbeStatus.COOLDOWN,
            remaining_seconds=duration,
            identity_rotated=False,
        )

    def _handle_error(self, error: Exception) -> ProbeResult:
        with self._lock:
            self.state.consecutive_errors += 1
            errors = self.state.consecutive_errors
            if errors >= self.max_retries:
                duration = backoff_duration(
                    errors,
                    self.max_retries,
                    self.cooldown_duration,
                    self.backoff_multiplier,
                    self.max_backoff,
                )
                self.state.cooldown_until = time.time() + duration
            else:
                duration = None

        logger.error(f"[SCOUT] Check failed ({errors} consecutive): {error}")
        if duration is not None:
            logger.warning(f"[BACKOFF] Cooling down for {duration:.0f}s")

        return ProbeResult(
            status=ProbeStatus.ERROR,
            error=str(error),
            consecutive_errors=errors,
        )

    def check_dates(self, param: str) -> ProbeResult:
        """Ask the available-days endpoint which dates are open"""
        remaining = self._cooldown_remaining()
        if remaining > 0:
            return ProbeResult(status=ProbeStatus.COOLDOWN, remaining_seconds=remaining)

        session = self.sessions.get_session()
        portal = detect_portal(param)
        url = portal.url(self.base_url, portal.dates)
        body = {"AppointmentCategoryId": param, "_": str(int(time.time() * 1000))}

        try:
            response = self.http.post(
                url,
                data=body,
                headers=self._build_headers(session.headers),
                cookies=session.cookie_jar(),
                timeout=self.timeout,
            )

            if response.status_code == 429:
                with self._lock:
                    self.state.cooldown_until = time.time() + self.cooldown_duration
                return ProbeResult(
                    status=ProbeStatus.COOLDOWN,
                    remaining_seconds=self.cooldown_duration,
                )

            if not response.ok:
                raise requests.HTTPError(f"HTTP {response.status_code}", response=response)

            data = response.json()
            dates = data if isinstance(data, list) else (data or {}).get("dates") or []
            dates = [str(value) for value in dates]

            return ProbeResult(
                status=ProbeStatus.FOUND if dates else ProbeStatus.EMPTY,
                dates=dates,
            )
        except Exception as e:
            logger.error(f"[SCOUT] Date check failed: {e}")
            return ProbeResult(status=ProbeStatus.ERROR, error=str(e))

    @staticmethod
    def _build_headers(session_headers: Dict[str, str]) -> Dict[str, str]:
        headers = dict(PROBE_HEADERS)
        for key, value in session_headers.items():
            if value and key not in headers:
                headers[key] = value
        return headers
