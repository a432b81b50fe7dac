"""
Slot Hive - Telegram Notifier
Slot-found and booking-confirmed alerts with rate limiting
"""

import datetime
import logging
import threading
import time
from typing import Any, Dict, List, Optional

import pytz
import requests

from .config import Config

logger = logging.getLogger("SlotHive.Notifier")


def local_timestamp(tz_name: Optional[str] = None) -> str:
    """Current time in the configured timezone"""
    try:
        tz = pytz.timezone(tz_name or Config.TIMEZONE)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone {tz_name or Config.TIMEZONE!r}, using UTC")
        tz = pytz.UTC
    return datetime.datetime.now(tz).strftime("%Y-%m-%d %H:%M:%S %Z")


def _first_slot(payload: Dict[str, Any]) -> Dict[str, Any]:
    slots: List[Dict[str, Any]] = payload.get("slots") or []
    return slots[0] if slots and isinstance(slots[0], dict) else {}


def format_slot_found(client_name: str, payload: Dict[str, Any]) -> str:
    """
    Build the "slot found" alert

    Args:
        client_name: Display name of the reporting client
        payload: SLOT_FOUND payload ({slots, dataParam, timestamp})
    """
    slot = _first_slot(payload)
    count = len(payload.get("slots") or [])

    lines = [
        "🚨 *SLOT FOUND!* 🚨",
        "",
        f"📍 *Found by:* {client_name}",
        f"⏰ *Time:* {local_timestamp()}",
        f"📅 *Date:* {slot.get('date', 'N/A')}",
        f"🕐 *Slot:* {slot.get('time', 'N/A')}",
        f"🆔 *Slot ID:* {slot.get('slotId', 'N/A')}",
    ]
    if count:
        lines.append(f"📊 *Available:* {count} slot(s)")
    lines += ["", "🎯 Attempting auto-booking..."]
    return "\n".join(lines)


def format_booking_confirmed(client_name: str, payload: Dict[str, Any]) -> str:
    """Build the "booking confirmed" alert from a BOOKING_SUCCESS payload"""
    slot = payload.get("slotData") or {}
    return "\n".join([
        "🎉 *BOOKING CONFIRMED!* 🎉",
        "",
        "✅ *Status:* SUCCESS",
        f"📍 *Booked by:* {client_name}",
        f"⏰ *Time:* {local_timestamp()}",
        f"📅 *Appointment Date:* {slot.get('date', 'N/A')}",
        f"🕐 *Appointment Time:* {slot.get('time', 'N/A')}",
        "",
        "Check your email for confirmation!",
    ])


class TelegramNotifier:
    """
    Sends messages to one Telegram chat

    Without a token/chat id the notifier runs in log-only mode.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        chat_id: Optional[str] = None,
        enabled: Optional[bool] = None,
        min_interval: Optional[float] = None,
        timeout: float = 10.0,
    ):
        self.token = token if token is not None else Config.TELEGRAM_TOKEN
        self.chat_id = chat_id if chat_id is not None else Config.TELEGRAM_CHAT_ID
        self.enabled = Config.TELEGRAM_ENABLED if enabled is None else enabled
        self.min_interval = Config.TELEGRAM_MIN_INTERVAL if min_interval is None else min_interval
        self.timeout = timeout

        self._lock = threading.Lock()
        self._last_message_time = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.enabled and self.token and self.chat_id)

    def _check_rate_limit(self) -> bool:
        """Check if we can send a message (rate limiting)"""
        with self._lock:
            now = time.time()
            if now - self._last_message_time < self.min_interval:
                return False
            self._last_message_time = now
            return True

    def send_alert(self, message: str, parse_mode: str = "Markdown", urgent: bool = False) -> bool:
        """
        Send text message to Telegram

        Args:
            message: Message text
            parse_mode: "Markdown" or "HTML"
            urgent: Bypass the minimum interval (slot/booking alerts)

        Returns:
            Success status
        """
        if not self.configured:
            logger.info(f"[TELEGRAM] Not configured, logging message:\n{message}")
            return False

        if not urgent and not self._check_rate_limit():
            logger.debug("Rate limited, skipping message")
            return False

        url = f"https://api.telegram.org/bot{self.token}/sendMessage"
        payload = {
            "chat_id": self.chat_id,
            "text": message,
            "parse_mode": parse_mode,
            "disable_web_page_preview": True,
        }

        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            logger.info("[TELEGRAM] Notification sent")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"[TELEGRAM] Failed to send message: {e}")
            return False

    def notify_slot_found(self, client_name: str, payload: Dict[str, Any]) -> bool:
        return self.send_alert(format_slot_found(client_name, payload), urgent=True)

    def notify_booking_confirmed(self, client_name: str, payload: Dict[str, Any]) -> bool:
        return self.send_alert(format_booking_confirmed(client_name, payload), urgent=True)
