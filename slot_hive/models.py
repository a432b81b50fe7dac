"""
Slot Hive - Data Model
Slots, session snapshots, poller state and typed probe/booking results
"""

import datetime
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import Config


# Field-name variants seen across provider responses
DATE_KEYS = ("date", "AppointmentDate", "appointmentDate")
SLOT_ID_KEYS = ("slotId", "SlotId", "AppointmentSlotId", "id")
TIME_KEYS = ("time", "AppointmentTime", "appointmentTime", "Time")

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y", "%Y/%m/%d")
TIME_FORMATS = ("%H:%M", "%H:%M:%S", "%I:%M %p", "%I:%M%p")


def _first_present(raw: Dict[str, Any], keys) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_slot_date(value: Any) -> datetime.date:
    """Parse a provider date (ISO, ISO datetime or day-first) into a date"""
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value

    text = str(value).strip()
    if "T" in text:
        text = text.split("T", 1)[0]

    for fmt in DATE_FORMATS:
        try:
            return datetime.datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognized slot date: {value!r}")


def parse_slot_time(value: Any) -> datetime.time:
    """Parse a provider time of day; ranges like '09:00-09:15' keep the start"""
    if isinstance(value, datetime.time):
        return value

    text = str(value).strip()
    if "-" in text:
        text = text.split("-", 1)[0].strip()

    for fmt in TIME_FORMATS:
        try:
            return datetime.datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    raise ValueError(f"Unrecognized slot time: {value!r}")


# ==================== Slots ====================

@dataclass(frozen=True)
class SlotDescriptor:
    """A bookable date/time unit, normalized from a raw provider record"""
    date: datetime.date
    slot_id: str
    time: datetime.time

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "SlotDescriptor":
        """
        Normalize a raw slot record

        Args:
            raw: Provider record using any of the known field-name variants

        Returns:
            SlotDescriptor

        Raises:
            ValueError: if a field is missing or cannot be parsed
        """
        if isinstance(raw, SlotDescriptor):
            return raw
        if not isinstance(raw, dict):
            raise ValueError(f"Slot record must be an object, got {type(raw).__name__}")

        date_value = _first_present(raw, DATE_KEYS)
        slot_id = _first_present(raw, SLOT_ID_KEYS)
        time_value = _first_present(raw, TIME_KEYS)

        missing = [
            name for name, value in
            (("date", date_value), ("slotId", slot_id), ("time", time_value))
            if value is None
        ]
        if missing:
            raise ValueError(f"Slot record missing: {', '.join(missing)}")

        return cls(
            date=parse_slot_date(date_value),
            slot_id=str(slot_id),
            time=parse_slot_time(time_value),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "date": self.date.isoformat(),
            "slotId": self.slot_id,
            "time": self.time.strftime("%H:%M"),
        }


# ==================== Session ====================

@dataclass(frozen=True)
class Cookie:
    name: str
    value: str
    domain: Optional[str] = None
    path: str = "/"


@dataclass(frozen=True)
class SessionContext:
    """Read-only snapshot of the latest captured authentication material"""
    cookies: List[Cookie] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)
    is_authenticated: bool = False
    captured_at: Optional[float] = None
    url: Optional[str] = None
    page_state: Optional[str] = None
    dom_data: Dict[str, Any] = field(default_factory=dict)

    def cookie_jar(self) -> Dict[str, str]:
        return {cookie.name: cookie.value for cookie in self.cookies}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionContext":
        cookies = [
            Cookie(
                name=item["name"],
                value=str(item.get("value", "")),
                domain=item.get("domain"),
                path=item.get("path", "/"),
            )
            for item in data.get("cookies") or []
            if item.get("name")
        ]
        return cls(
            cookies=cookies,
            headers=dict(data.get("headers") or {}),
            is_authenticated=bool(data.get("isAuthenticated", False)),
            captured_at=data.get("capturedAt"),
            url=data.get("url"),
            page_state=data.get("pageState"),
            dom_data=dict(data.get("domData") or {}),
        )


# ==================== Scout ====================

class ProbeStatus(str, Enum):
    FOUND = "FOUND"
    EMPTY = "EMPTY"
    COOLDOWN = "COOLDOWN"
    ERROR = "ERROR"
    STOPPED = "STOPPED"
    POLLING = "POLLING"


@dataclass
class PollerState:
    """Mutable polling state; written by the poll loop, read by status queries"""
    is_polling: bool = False
    is_paused: bool = False
    cooldown_until: Optional[float] = None
    consecutive_errors: int = 0
    total_checks: int = 0
    slots_found: int = 0
    last_check: Optional[float] = None
    next_check: Optional[float] = None
    current_param: Optional[str] = None


@dataclass
class ProbeResult:
    status: ProbeStatus
    slots: List[SlotDescriptor] = field(default_factory=list)
    dates: List[str] = field(default_factory=list)
    remaining_seconds: Optional[float] = None
    error: Optional[str] = None
    consecutive_errors: Optional[int] = None
    identity_rotated: Optional[bool] = None
    message: Optional[str] = None
    total_checks: Optional[int] = None
    slots_found: Optional[int] = None
    initial_result: Optional["ProbeResult"] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value}
        if self.slots:
            data["slots"] = [slot.to_dict() for slot in self.slots]
            data["count"] = len(self.slots)
        if self.dates:
            data["dates"] = list(self.dates)
        optional = {
            "remainingSeconds": self.remaining_seconds,
            "error": self.error,
            "consecutiveErrors": self.consecutive_errors,
            "identityRotated": self.identity_rotated,
            "message": self.message,
            "totalChecks": self.total_checks,
            "slotsFound": self.slots_found,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        if self.initial_result is not None:
            data["initialResult"] = self.initial_result.to_dict()
        return data


# ==================== Sniper ====================

class BookingStatus(str, Enum):
    BOOKED = "BOOKED"
    FAILED = "FAILED"
    PENDING = "PENDING"
    TOKEN_ERROR = "TOKEN_ERROR"


@dataclass(frozen=True)
class BookingAttemptResult:
    """Outcome of one booking attempt. Never mutated after creation."""
    status: BookingStatus
    reason: Optional[str] = None
    redirect_url: Optional[str] = None

    @classmethod
    def booked(cls, redirect_url: Optional[str] = None) -> "BookingAttemptResult":
        return cls(BookingStatus.BOOKED, redirect_url=redirect_url)

    @classmethod
    def failed(cls, reason: str) -> "BookingAttemptResult":
        return cls(BookingStatus.FAILED, reason=reason)

    @classmethod
    def pending(cls, reason: str, redirect_url: Optional[str] = None) -> "BookingAttemptResult":
        return cls(BookingStatus.PENDING, reason=reason, redirect_url=redirect_url)

    @classmethod
    def token_error(cls, reason: str) -> "BookingAttemptResult":
        return cls(BookingStatus.TOKEN_ERROR, reason=reason)

    @property
    def is_booked(self) -> bool:
        return self.status == BookingStatus.BOOKED

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.redirect_url is not None:
            data["redirectUrl"] = self.redirect_url
        return data


@dataclass(frozen=True)
class BookingConfig:
    """Visa type, center and category fields sent with every booking"""
    visa_type: str = ""
    visa_sub_type: str = ""
    center: str = ""
    appointment_category: str = ""
    applicant_count: int = 1

    @classmethod
    def from_config(cls) -> "BookingConfig":
        return cls(
            visa_type=Config.VISA_TYPE,
            visa_sub_type=Config.VISA_SUB_TYPE,
            center=Config.CENTER,
            appointment_category=Config.APPOINTMENT_CATEGORY,
            applicant_count=Config.APPLICANT_COUNT,
        )


@dataclass
class AutoSniperConfig:
    enabled: bool = True
    preferred_slot_index: int = 0
    retry_on_fail: bool = True
    max_auto_attempts: int = 3

    @classmethod
    def from_config(cls) -> "AutoSniperConfig":
        return cls(
            enabled=Config.AUTO_SNIPER_ENABLED,
            preferred_slot_index=Config.AUTO_SNIPER_PREFERRED_INDEX,
            retry_on_fail=Config.AUTO_SNIPER_RETRY_ON_FAIL,
            max_auto_attempts=Config.AUTO_SNIPER_MAX_ATTEMPTS,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
