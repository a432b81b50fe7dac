"""
Slot Hive - Portal Endpoints
Per-portal endpoint paths and portal detection
"""

from dataclasses import dataclass
from typing import Dict, Optional

from .config import Config


@dataclass(frozen=True)
class Portal:
    code: str
    slots: str
    dates: str
    book: str

    def url(self, base_url: str, path: str) -> str:
        return f"{base_url.rstrip('/')}{path}"


def _portal(code: str) -> Portal:
    return Portal(
        code=code,
        slots=f"/{code}/appointment/GetAvailableSlotsByDate",
        dates=f"/{code}/appointment/GetAvailableDays",
        book=f"/{code}/appointment/NewAppointment",
    )


PORTALS: Dict[str, Portal] = {
    "MAR": _portal("MAR"),
    "PRT": _portal("PRT"),
}


def detect_portal(hint: Optional[str] = None, default: Optional[str] = None) -> Portal:
    """
    Pick the portal matching a data parameter or session URL

    Args:
        hint: Data parameter or URL that may carry a portal code
        default: Portal code when nothing matches (Config.PORTAL_CODE)
    """
    if hint:
        upper = hint.upper()
        for code, portal in PORTALS.items():
            if f"/{code}/" in upper or upper.startswith(code) or code in upper.split("_"):
                return portal

    code = (default or Config.PORTAL_CODE).upper()
    return PORTALS.get(code) or _portal(code)
