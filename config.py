"""Configuration management for the order-escrow settlement engine"""

import os
import logging
from typing import List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    # PostgreSQL in production; a local SQLite file keeps development runs self-contained
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./settlement.db")
    SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"

    # Upper bound for waiting on another transaction's per-order lock
    LOCK_TIMEOUT_SECONDS = int(os.getenv("LOCK_TIMEOUT_SECONDS", "10"))

    # Release window (global default, store policies may override within bounds)
    CONFIRMATION_WINDOW_DAYS = int(os.getenv("CONFIRMATION_WINDOW_DAYS", "4"))
    MIN_CONFIRMATION_WINDOW_HOURS = int(os.getenv("MIN_CONFIRMATION_WINDOW_HOURS", "24"))
    MAX_CONFIRMATION_WINDOW_HOURS = int(os.getenv("MAX_CONFIRMATION_WINDOW_HOURS", "720"))

    # Which order transition starts the confirmation window: "delivered" or "shipped"
    RELEASE_ANCHOR = os.getenv("RELEASE_ANCHOR", "delivered").lower().strip()

    # Auto-release worker
    AUTO_RELEASE_ENABLED = os.getenv("AUTO_RELEASE_ENABLED", "True").lower() == "true"
    AUTO_RELEASE_POLL_SECONDS = int(os.getenv("AUTO_RELEASE_POLL_SECONDS", "60"))
    AUTO_RELEASE_BATCH_SIZE = int(os.getenv("AUTO_RELEASE_BATCH_SIZE", "50"))

    # Payouts
    PAYOUT_PROVIDER = os.getenv("PAYOUT_PROVIDER", "outbox").lower().strip()  # outbox | paystack
    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY")
    PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    PAYOUT_TIMEOUT_SECONDS = int(os.getenv("PAYOUT_TIMEOUT_SECONDS", "15"))

    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "GHS")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @classmethod
    def validate(cls) -> List[str]:
        """Return a list of configuration problems (empty when the config is usable)"""
        problems = []

        if cls.RELEASE_ANCHOR not in ("delivered", "shipped"):
            problems.append(
                f"RELEASE_ANCHOR must be 'delivered' or 'shipped', got '{cls.RELEASE_ANCHOR}'"
            )
        if cls.PAYOUT_PROVIDER not in ("outbox", "paystack"):
            problems.append(
                f"PAYOUT_PROVIDER must be 'outbox' or 'paystack', got '{cls.PAYOUT_PROVIDER}'"
            )
        if cls.PAYOUT_PROVIDER == "paystack" and not cls.PAYSTACK_SECRET_KEY:
            problems.append("PAYSTACK_SECRET_KEY is required when PAYOUT_PROVIDER=paystack")
        if cls.MIN_CONFIRMATION_WINDOW_HOURS > cls.MAX_CONFIRMATION_WINDOW_HOURS:
            problems.append("MIN_CONFIRMATION_WINDOW_HOURS exceeds MAX_CONFIRMATION_WINDOW_HOURS")
        if cls.CONFIRMATION_WINDOW_DAYS <= 0:
            problems.append("CONFIRMATION_WINDOW_DAYS must be positive")
        if cls.IS_PRODUCTION and cls.DATABASE_URL.startswith("sqlite"):
            problems.append("Production environment is running on SQLite")

        return problems

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Settlement Engine Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('://')[0]}")
        logger.info(
            f"   Release window: {Config.CONFIRMATION_WINDOW_DAYS}d from {Config.RELEASE_ANCHOR.upper()}"
        )
        logger.info(
            f"   Auto-release: {'enabled' if Config.AUTO_RELEASE_ENABLED else 'disabled'} "
            f"(every {Config.AUTO_RELEASE_POLL_SECONDS}s, batch {Config.AUTO_RELEASE_BATCH_SIZE})"
        )
        logger.info(f"   Payout provider: {Config.PAYOUT_PROVIDER}")

        for problem in Config.validate():
            logger.warning(f"⚠️ CONFIG: {problem}")
