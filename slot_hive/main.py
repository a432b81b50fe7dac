"""
Slot Hive - Client Entry Point
Runs one hunting client: watches the session file, joins the Hive and
polls/books for a data parameter.

Usage:
    python -m slot_hive.main --data-param <category>
    python -m slot_hive.main --no-hive --data-param <category>
"""

import argparse
import logging
import signal
import sys
from typing import List, Optional

from . import __version__
from .channel import HiveChannel
from .config import Config, validate_client_config
from .coordinator import HuntCoordinator
from .session_store import SessionStore

logger = logging.getLogger("SlotHive.Main")


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Slot Hive hunting client.")
    parser.add_argument("--data-param", help="Appointment category to hunt (default: APPOINTMENT_CATEGORY)")
    parser.add_argument("--session-file", default=Config.SESSION_FILE, help="Session snapshot JSON to watch")
    parser.add_argument("--name", default=Config.CLIENT_NAME, help="Display name in the Hive")
    parser.add_argument("--hive-url", default=Config.HIVE_URL, help="Hive WebSocket URL")
    parser.add_argument("--no-hive", action="store_true", help="Run standalone without the Hive")
    parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging")
    return parser.parse_args(argv)


def run_client(args: argparse.Namespace) -> bool:
    """
    Run until a booking completes (here or elsewhere in the Hive) or interrupted

    Returns:
        True if this client booked a slot
    """
    sessions = SessionStore(args.session_file)
    channel = None if args.no_hive else HiveChannel(url=args.hive_url, name=args.name)
    coordinator = HuntCoordinator(sessions, channel=channel)

    try:
        if channel is not None:
            channel.start()
            if not channel.wait_connected(timeout=10):
                logger.warning("[HIVE] Not connected yet, hunting standalone while reconnecting")

        if args.data_param or Config.APPOINTMENT_CATEGORY:
            result = coordinator.start_hunt(args.data_param)
            logger.info(f"[HUNT] {result.status.value}: {result.message or result.error or ''}")
        else:
            logger.info("[HUNT] No data parameter, waiting for START_SCOUT from the Hive")

        while not coordinator.hunt_complete.wait(timeout=1.0):
            pass

        if coordinator.booked_slot is not None:
            slot = coordinator.booked_slot
            logger.info(f"[SUCCESS] Booked {slot.date} {slot.time:%H:%M} (slot {slot.slot_id})")
            return True

        logger.info(f"[END] Booking completed by {coordinator.booked_by}, stopping")
        return False

    except KeyboardInterrupt:
        logger.info("[STOP] Shutdown requested by user")
        return False
    finally:
        coordinator.shutdown()


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    logger.info(f"Received signal {signum} - initiating graceful shutdown")
    sys.exit(0)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        validate_client_config()
    except ValueError as e:
        logger.error(str(e))
        return 2

    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("=" * 60)
    logger.info(f"   SLOT HIVE CLIENT v{__version__}")
    logger.info(f"   Hive: {'disabled' if args.no_hive else args.hive_url}")
    logger.info(f"   Session file: {args.session_file}")
    logger.info("=" * 60)

    return 0 if run_client(args) else 1


if __name__ == "__main__":
    sys.exit(main())
