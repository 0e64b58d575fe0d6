"""
Runtime configuration.

Values come from the process environment (optionally a ``.env`` file) and are
read once by the entry point; components receive them explicitly.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

PAYOUT_METHODS = ("bank_transfer", "paxum", "skrill", "crypto", "other")

DEFAULT_DATABASE_URL = "sqlite:///./monetization.db"


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    min_payout_cents: int = 1000
    platform_fee_percent: int = 20
    subscription_period_days: int = 30
    payment_provider: str = "mock"
    log_level: str = "INFO"
    payment_webhook_secret: str = ""
    verification_webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        load_dotenv(env_file)
        fee = _int_env("PLATFORM_FEE_PERCENT", 20)
        if not 0 <= fee <= 100:
            raise ValueError(f"PLATFORM_FEE_PERCENT out of range: {fee}")
        return cls(
            database_url=os.environ.get("MONETIZATION_DATABASE_URL", DEFAULT_DATABASE_URL),
            min_payout_cents=_int_env("MIN_PAYOUT_CENTS", 1000),
            platform_fee_percent=fee,
            subscription_period_days=_int_env("SUBSCRIPTION_PERIOD_DAYS", 30),
            payment_provider=os.environ.get("PAYMENT_PROVIDER", "mock"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            payment_webhook_secret=os.environ.get("PAYMENT_WEBHOOK_SECRET", "").strip(),
            verification_webhook_secret=os.environ.get("VERIFICATION_WEBHOOK_SECRET", "").strip(),
            webhook_tolerance_seconds=_int_env("WEBHOOK_TOLERANCE_SECONDS", 300),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
