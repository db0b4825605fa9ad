"""Runtime settings for the auction core, read from the environment."""
import os
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_BID_INCREMENT = Decimal(os.getenv("DEFAULT_BID_INCREMENT", "10"))
HOLD_DURATION_DAYS = int(os.getenv("HOLD_DURATION_DAYS", "7"))
STALE_HOLD_DAYS = int(os.getenv("STALE_HOLD_DAYS", "30"))

MIN_DEPOSIT = Decimal(os.getenv("MIN_DEPOSIT", "10"))
MAX_DEPOSIT = Decimal(os.getenv("MAX_DEPOSIT", "50000"))

COMMISSION_ROUNDING = os.getenv("COMMISSION_ROUNDING", "half_even")

INSTANT_PURCHASE_MAX_ATTEMPTS = int(os.getenv("INSTANT_PURCHASE_MAX_ATTEMPTS", "3"))
INSTANT_PURCHASE_BASE_DELAY = float(os.getenv("INSTANT_PURCHASE_BASE_DELAY", "0.05"))

MAX_ESCALATION_ROUNDS = int(os.getenv("MAX_ESCALATION_ROUNDS", "50"))

MAX_SETTLEMENT_RETRIES = int(os.getenv("MAX_SETTLEMENT_RETRIES", "5"))

SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
INTEGRITY_INTERVAL_SECONDS = float(os.getenv("INTEGRITY_INTERVAL_SECONDS", "3600"))

_ROUNDING_MODES = {
    "half_even": ROUND_HALF_EVEN,
    "down": ROUND_DOWN,
}


def rounding_mode(name: Optional[str] = None) -> str:
    """Map a configured rounding name to a ``decimal`` rounding constant."""
    key = (name or COMMISSION_ROUNDING).lower()
    if key not in _ROUNDING_MODES:
        raise ValueError(f"Unknown commission rounding mode: {key}")
    return _ROUNDING_MODES[key]


def platform_account_id() -> Optional[int]:
    value = os.getenv("PLATFORM_ACCOUNT_ID")
    return int(value) if value else None
