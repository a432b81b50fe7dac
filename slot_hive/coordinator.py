"""
Slot Hive - Hunt Coordinator
Wires one client's Scout, Sniper and Hive channel together: reports
discoveries, auto-snipes found slots, and obeys remote commands.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from .channel import HiveChannel
from .config import Config
from .identity import IdentityRotator, NoRotation
from .models import (
    AutoSniperConfig,
    BookingAttemptResult,
    BookingStatus,
    ProbeResult,
    ProbeStatus,
    SlotDescriptor,
)
from .protocol import MessageType
from .scout import Scout, normalize_slots
from .session_store import SessionStore
from .sniper import Sniper

logger = logging.getLogger("SlotHive.Coordinator")


def select_best_slot(slots: List[SlotDescriptor], preferred_index: int = 0) -> Optional[SlotDescriptor]:
    """Earliest slot by time of day, then the preferred position (clamped)"""
    if not slots:
        return None
    ordered = sorted(slots, key=lambda slot: slot.time)
    index = min(max(preferred_index, 0), len(ordered) - 1)
    return ordered[index]


class HuntCoordinator:
    """
    One hunt on one client

    A BOOKING_COMPLETE from the Hive (or a local booking) sets hunt_complete,
    which stops the scout and aborts any remaining auto-sniper candidates.
    In-flight booking requests still run to completion.
    """

    def __init__(
        self,
        sessions: SessionStore,
        scout: Optional[Scout] = None,
        sniper: Optional[Sniper] = None,
        channel: Optional[HiveChannel] = None,
        rotator: Optional[IdentityRotator] = None,
        auto_sniper: Optional[AutoSniperConfig] = None,
    ):
        self.sessions = sessions
        self.rotator = rotator or NoRotation()
        self.scout = scout or Scout(sessions, rotator=self.rotator)
        self.sniper = sniper or Sniper(sessions)
        self.channel = channel
        self.auto_sniper = auto_sniper or AutoSniperConfig.from_config()

        self.hunt_complete = threading.Event()
        self.booked_slot: Optional[SlotDescriptor] = None
        self.booked_by: Optional[str] = None
        self._workers: List[threading.Thread] = []

        self._commands: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "START_SCOUT": lambda args: self.start_hunt(args.get("dataParam"), args.get("options")).to_dict(),
            "STOP_SCOUT": lambda args: self.stop_hunt().to_dict(),
            "SCOUT_STATUS": lambda args: self.scout.status(),
            "SNIPER_STATUS": lambda args: self.sniper.status(),
            "CHECK_SLOTS_ONCE": lambda args: self.scout.check_once(
                args.get("dataParam") or self._default_param(), args.get("date")
            ).to_dict(),
            "CHECK_DATES": lambda args: self.scout.check_dates(args.get("dataParam") or self._default_param()).to_dict(),
        }

        self.scout.add_found_listener(self._on_slots_found)
        self.sniper.add_booked_listener(self._on_booked)
        if channel is not None:
            channel.heartbeat_provider = self.heartbeat_report
            self._bind_channel(channel)

    def _bind_channel(self, channel: HiveChannel):
        channel.on(MessageType.SNIPER_TRIGGER, self._on_sniper_trigger)
        channel.on(MessageType.BOOKING_COMPLETE, self._on_booking_complete)
        channel.on(MessageType.START_SCOUT, self._on_start_scout)
        channel.on(MessageType.STOP_SCOUT, self._on_stop_scout)
        channel.on(MessageType.ROTATE_PROXY, self._on_rotate_identity)
        channel.on(MessageType.CHANGE_PROXY, self._on_rotate_identity)
        channel.on(MessageType.ROTATE_IDENTITY, self._on_rotate_identity)
        channel.on(MessageType.EXECUTE_COMMAND, self._on_execute_command)

    # ==================== Hunt Control ====================

    @staticmethod
    def _default_param() -> str:
        return Config.APPOINTMENT_CATEGORY

    def start_hunt(self, data_param: Optional[str] = None, options: Optional[Dict[str, Any]] = None) -> ProbeResult:
        """Start the scout for data_param (defaults to the configured category)"""
        param = data_param or self._default_param()
        if not param:
            logger.error("[HUNT] No data parameter to hunt for")
            return ProbeResult(status=ProbeStatus.ERROR, error="Missing dataParam")

        self.hunt_complete.clear()
        self.booked_slot = None
        self.booked_by = None
        logger.info(f"[HUNT] Starting hunt for {param}")
        return self.scout.start(param, options)

    def stop_hunt(self) -> ProbeResult:
        return self.scout.stop()

    def shutdown(self, timeout: float = 5.0):
        self.scout.stop()
        for worker in list(self._workers):
            worker.join(timeout)
        if self.channel is not None:
            self.channel.disconnect()

    def heartbeat_report(self) -> Dict[str, Any]:
        scout = self.scout.status()
        sniper = self.sniper.status()
        return {
            "status": "hunting" if scout["isPolling"] else "idle",
            "stats": {
                "checks": scout["totalChecks"],
                "slotsFound": scout["slotsFound"],
                "bookings": sniper["successfulShots"],
            },
        }

    # ==================== Auto-Sniper ====================

    def _on_slots_found(self, slots: List[SlotDescriptor], data_param: str):
        if self.channel is not None:
            self.channel.report_slot_found(slots, data_param)
        self.handle_slots_found(slots)

    def handle_slots_found(self, slots: List[SlotDescriptor]) -> Optional[BookingAttemptResult]:
        """
        Try candidates best-first until one books

        A FAILED attempt drops that slot id and moves to the next candidate
        (when retry-on-fail is set); PENDING and TOKEN_ERROR end the round.
        At most max_auto_attempts candidates are tried.

        Returns:
            The last BookingAttemptResult, or None if nothing was fired
        """
        if not slots:
            logger.info("[AUTO] No slots in payload")
            return None

        if not self.auto_sniper.enabled:
            logger.info(f"[AUTO] Auto-sniper disabled, {len(slots)} slot(s) waiting for manual action")
            return None

        candidates = list(slots)
        attempts = 0
        result: Optional[BookingAttemptResult] = None

        while candidates and attempts < self.auto_sniper.max_auto_attempts:
            if self.hunt_complete.is_set():
                logger.info("[AUTO] Hunt already complete, abandoning remaining candidates")
                break

            slot = select_best_slot(candidates, self.auto_sniper.preferred_slot_index)
            attempts += 1
            logger.info(f"[AUTO] Targeting slot {slot.slot_id} on {slot.date} {slot.time:%H:%M} (attempt {attempts})")

            result = self.sniper.execute_with_retry(slot)
            if self.channel is not None:
                self.channel.report_booking(result, slot)

            if result.is_booked:
                break
            if result.status != BookingStatus.FAILED or not self.auto_sniper.retry_on_fail:
                break

            candidates = [candidate for candidate in candidates if candidate.slot_id != slot.slot_id]
            if candidates:
                logger.info("[AUTO] Trying next slot...")
        else:
            if candidates:
                logger.warning(f"[AUTO] Max auto attempts ({self.auto_sniper.max_auto_attempts}) reached")

        return result

    def _on_booked(self, result: BookingAttemptResult, slot: SlotDescriptor):
        logger.info(f"[HUNT] Booked {slot.slot_id}, ending hunt")
        self.booked_slot = slot
        self.hunt_complete.set()
        self.scout.stop()

    # ==================== Remote Commands ====================

    def _spawn(self, name: str, target: Callable[..., Any], *args: Any):
        """Run target on a worker thread so the channel reader stays responsive"""
        def run():
            try:
                target(*args)
            except Exception as e:
                logger.error(f"[{name}] Failed: {e}", exc_info=True)
                if self.channel is not None:
                    self.channel.report_error(str(e))

        worker = threading.Thread(target=run, name=f"Hunt-{name}", daemon=True)
        self._workers = [w for w in self._workers if w.is_alive()]
        self._workers.append(worker)
        worker.start()
        return worker

    def _on_sniper_trigger(self, payload: Dict[str, Any]):
        logger.warning(f"[TRIGGER] Slots reported by {payload.get('source')}")
        slots = normalize_slots(payload.get("slots") or [])
        if self.hunt_complete.is_set():
            logger.info("[TRIGGER] Hunt already complete, ignoring")
            return
        self._spawn("Trigger", self.handle_slots_found, slots)

    def _on_booking_complete(self, payload: Dict[str, Any]):
        self.booked_by = payload.get("bookedBy")
        logger.info(f"[HUNT] Booking completed by {self.booked_by}")
        self.hunt_complete.set()
        if self.scout.status()["isPolling"]:
            logger.info("[HUNT] Stopping hunt - booking already made")
            self.scout.stop()

    def _on_start_scout(self, payload: Dict[str, Any]):
        def start():
            result = self.start_hunt(payload.get("dataParam"), payload.get("options"))
            self.channel.report_status("hunting", result.to_dict())

        self._spawn("StartScout", start)

    def _on_stop_scout(self, payload: Dict[str, Any]):
        result = self.stop_hunt()
        self.channel.report_status("idle", result.to_dict())

    def _on_rotate_identity(self, payload: Dict[str, Any]):
        def rotate():
            logger.info(f"[IDENTITY] Rotating via {self.rotator.name()}")
            result = self.rotator.rotate()
            self.channel.report_status("proxy_rotated", result.to_dict())

        self._spawn("Rotate", rotate)

    def _on_execute_command(self, payload: Dict[str, Any]):
        command = payload.get("command")
        args = payload.get("args") or {}

        def execute():
            response = self.execute_command(command, args)
            self.channel.send(MessageType.COMMAND_RESULT, {"command": command, "response": response})

        self._spawn("Command", execute)

    def execute_command(self, command: Optional[str], args: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"[COMMAND] Executing {command}")
        handler = self._commands.get(command or "")
        if handler is None:
            return {"error": f"Unknown command: {command}"}
        return handler(args)
