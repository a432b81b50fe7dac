"""
Slot Hive - Configuration Module
Environment-driven settings for the Scout, Sniper, Hive server and channel
"""

import os
from dotenv import load_dotenv

load_dotenv()
load_dotenv("config.env")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """Centralized configuration for Slot Hive"""

    # ==================== Telegram ====================
    TELEGRAM_TOKEN = os.getenv("TELEGRAM_TOKEN")
    TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID")
    TELEGRAM_ENABLED = _env_bool("TELEGRAM_ENABLED", "true")
    TELEGRAM_MIN_INTERVAL = float(os.getenv("TELEGRAM_MIN_INTERVAL", "1.0"))  # seconds

    # ==================== Target Portal ====================
    PORTAL_BASE_URL = os.getenv("PORTAL_BASE_URL")
    PORTAL_CODE = os.getenv("PORTAL_CODE", "MAR")
    REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "15"))
    TIMEZONE = os.getenv("TIMEZONE", "Africa/Casablanca")

    # ==================== Scout (Rate Limiting) ====================
    SCOUT_MIN_INTERVAL = float(os.getenv("SCOUT_MIN_INTERVAL", "10.0"))
    SCOUT_MAX_JITTER = float(os.getenv("SCOUT_MAX_JITTER", "5.0"))
    SCOUT_COOLDOWN = float(os.getenv("SCOUT_COOLDOWN", "60.0"))
    SCOUT_MAX_RETRIES = int(os.getenv("SCOUT_MAX_RETRIES", "3"))
    SCOUT_BACKOFF_MULTIPLIER = float(os.getenv("SCOUT_BACKOFF_MULTIPLIER", "2.0"))
    SCOUT_MAX_BACKOFF = float(os.getenv("SCOUT_MAX_BACKOFF", "300.0"))  # 5 minutes
    # Retry delay after a successful identity rotation. Tune against the
    # provider's real rate-limit window.
    SCOUT_ROTATION_COOLDOWN = float(os.getenv("SCOUT_ROTATION_COOLDOWN", "2.0"))

    # ==================== Sniper ====================
    SNIPER_MAX_RETRIES = int(os.getenv("SNIPER_MAX_RETRIES", "2"))
    SNIPER_RETRY_DELAY = float(os.getenv("SNIPER_RETRY_DELAY", "0.5"))

    # ==================== Booking Data ====================
    VISA_TYPE = os.getenv("VISA_TYPE", "")
    VISA_SUB_TYPE = os.getenv("VISA_SUB_TYPE", "")
    CENTER = os.getenv("CENTER", "")
    APPOINTMENT_CATEGORY = os.getenv("APPOINTMENT_CATEGORY", "")
    APPLICANT_COUNT = int(os.getenv("APPLICANT_COUNT", "1"))

    # ==================== Auto-Sniper ====================
    AUTO_SNIPER_ENABLED = _env_bool("AUTO_SNIPER_ENABLED", "true")
    AUTO_SNIPER_MAX_ATTEMPTS = int(os.getenv("AUTO_SNIPER_MAX_ATTEMPTS", "3"))
    AUTO_SNIPER_RETRY_ON_FAIL = _env_bool("AUTO_SNIPER_RETRY_ON_FAIL", "true")
    AUTO_SNIPER_PREFERRED_INDEX = int(os.getenv("AUTO_SNIPER_PREFERRED_INDEX", "0"))

    # ==================== Hive Server ====================
    HIVE_HOST = os.getenv("HIVE_HOST", "0.0.0.0")
    HIVE_PORT = int(os.getenv("HIVE_PORT", "3000"))
    HEARTBEAT_SWEEP_INTERVAL = float(os.getenv("HEARTBEAT_SWEEP_INTERVAL", "30.0"))
    HEARTBEAT_TIMEOUT = float(os.getenv("HEARTBEAT_TIMEOUT", "60.0"))

    # ==================== Hive Channel (Client) ====================
    HIVE_URL = os.getenv("HIVE_URL", "ws://localhost:3000/ws")
    CLIENT_NAME = os.getenv("CLIENT_NAME", "SlotHive-Client")
    RECONNECT_INTERVAL = float(os.getenv("RECONNECT_INTERVAL", "5.0"))
    RECONNECT_MAX_ATTEMPTS = int(os.getenv("RECONNECT_MAX_ATTEMPTS", "0"))  # 0 = unlimited
    CLIENT_HEARTBEAT_INTERVAL = float(os.getenv("CLIENT_HEARTBEAT_INTERVAL", "30.0"))

    # ==================== Session ====================
    SESSION_FILE = os.getenv("SESSION_FILE", "session.json")


def validate_client_config():
    """Validate configuration required to run a hunting client"""
    required = ["PORTAL_BASE_URL"]

    missing = [field for field in required if not getattr(Config, field, None)]

    if missing:
        raise ValueError(f"[ERR] Missing configuration: {', '.join(missing)}")
