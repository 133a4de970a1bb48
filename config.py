"""Configuration management for the Stars to TON conversion engine"""

import os
import logging
from decimal import Decimal
from typing import List, Tuple

logger = logging.getLogger(__name__)


def _parse_delays(raw: str) -> Tuple[int, ...]:
    """Parse a comma separated list of second delays ("30,60,300")"""
    delays = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            delays.append(int(part))
    return tuple(delays)


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./stars_gateway.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"
    if DATABASE_URL.startswith("postgresql"):
        DATABASE_SOURCE = "PostgreSQL"
    elif DATABASE_URL.startswith("sqlite"):
        DATABASE_SOURCE = "SQLite (local)"
    else:
        DATABASE_SOURCE = "Custom"

    # ===== CONVERSION =====
    SOURCE_CURRENCY = "STARS"
    TARGET_CURRENCY = "TON"
    PLATFORM_FEE_PERCENTAGE = Decimal(os.getenv("PLATFORM_FEE_PERCENTAGE", "2"))
    NETWORK_FEE_STARS = Decimal(os.getenv("NETWORK_FEE_STARS", "0.1"))
    MIN_CONVERSION_AMOUNT = Decimal(os.getenv("MIN_CONVERSION_AMOUNT", "100"))
    MAX_CONVERSION_AMOUNT = Decimal(os.getenv("MAX_CONVERSION_AMOUNT", "1000000"))
    PLATFORM_WALLET_ADDRESS = os.getenv("TON_MASTER_WALLET_ADDRESS", "")
    # Telegram's internal valuation of one Star in USD
    STARS_USD_RATE = Decimal(os.getenv("STARS_USD_RATE", "0.015"))
    QUOTE_VALIDITY_SECONDS = int(os.getenv("QUOTE_VALIDITY_SECONDS", "60"))
    # "direct" sends TON from the platform wallet, "p2p" tries resting buy orders first
    CONVERSION_ROUTE = os.getenv("CONVERSION_ROUTE", "direct").lower().strip()
    SETTLEMENT_MAX_ATTEMPTS = int(os.getenv("SETTLEMENT_MAX_ATTEMPTS", "5"))
    SETTLEMENT_RETRY_INTERVAL_SECONDS = int(os.getenv("SETTLEMENT_RETRY_INTERVAL_SECONDS", "120"))

    # ===== RATE LOCKS =====
    RATE_LOCK_DEFAULT_SECONDS = int(os.getenv("RATE_LOCK_DEFAULT_SECONDS", "300"))
    RATE_LOCK_MIN_SECONDS = 60
    RATE_LOCK_MAX_SECONDS = 600
    RATE_LOCK_MAX_ENTRIES = int(os.getenv("RATE_LOCK_MAX_ENTRIES", "10000"))

    # ===== RATE SOURCES =====
    RATE_CACHE_TTL_SECONDS = int(os.getenv("RATE_CACHE_TTL_SECONDS", "30"))
    RATE_REQUEST_TIMEOUT_SECONDS = int(os.getenv("RATE_REQUEST_TIMEOUT_SECONDS", "10"))
    COINGECKO_API_URL = os.getenv("COINGECKO_API_URL", "https://api.coingecko.com/api/v3")
    BINANCE_API_URL = os.getenv("BINANCE_API_URL", "https://api.binance.com/api/v3")

    # ===== TON BLOCKCHAIN =====
    TON_API_URL = os.getenv("TON_API_URL", "https://toncenter.com/api/v3")
    TON_API_KEY = os.getenv("TON_API_KEY")
    # Custody signer endpoint; key management lives behind it
    TON_SIGNER_URL = os.getenv("TON_SIGNER_URL", "http://localhost:8700")
    TON_SIGNER_TOKEN = os.getenv("TON_SIGNER_TOKEN")
    TON_REQUEST_TIMEOUT_SECONDS = int(os.getenv("TON_REQUEST_TIMEOUT_SECONDS", "15"))
    TON_MIN_CONFIRMATIONS = int(os.getenv("TON_MIN_CONFIRMATIONS", "1"))
    CONFIRMATION_POLL_INTERVAL_SECONDS = float(os.getenv("CONFIRMATION_POLL_INTERVAL_SECONDS", "5"))
    CONFIRMATION_MAX_POLLS = int(os.getenv("CONFIRMATION_MAX_POLLS", "60"))  # 5 minutes at 5s

    # ===== P2P MATCHING =====
    P2P_MATCHING_INTERVAL_SECONDS = int(os.getenv("P2P_MATCHING_INTERVAL_SECONDS", "5"))
    P2P_MATCHING_BATCH_SIZE = int(os.getenv("P2P_MATCHING_BATCH_SIZE", "20"))

    # ===== WEBHOOKS =====
    WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
    WEBHOOK_TIMEOUT_SECONDS = int(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))
    WEBHOOK_MAX_ATTEMPTS = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "5"))
    WEBHOOK_RETRY_DELAYS = _parse_delays(os.getenv("WEBHOOK_RETRY_DELAYS", "30,60,300,900,3600"))
    WEBHOOK_DISPATCH_INTERVAL_SECONDS = int(os.getenv("WEBHOOK_DISPATCH_INTERVAL_SECONDS", "60"))
    WEBHOOK_RETRY_BATCH_SIZE = int(os.getenv("WEBHOOK_RETRY_BATCH_SIZE", "100"))
    WEBHOOK_USER_AGENT = os.getenv("WEBHOOK_USER_AGENT", "StarsTonGateway/1.0")

    # ===== RECONCILIATION =====
    RECONCILIATION_TOLERANCE_TON = Decimal(os.getenv("RECONCILIATION_TOLERANCE_TON", "0.01"))
    STALE_PAYMENT_HOURS = int(os.getenv("STALE_PAYMENT_HOURS", "1"))
    STALE_CONVERSION_HOURS = int(os.getenv("STALE_CONVERSION_HOURS", "1"))
    STUCK_SWAP_HOURS = int(os.getenv("STUCK_SWAP_HOURS", "24"))
    UNVERIFIED_DEPOSIT_HOURS = int(os.getenv("UNVERIFIED_DEPOSIT_HOURS", "1"))
    RECONCILIATION_INTERVAL_SECONDS = int(os.getenv("RECONCILIATION_INTERVAL_SECONDS", "300"))
    RECONCILIATION_BATCH_SIZE = int(os.getenv("RECONCILIATION_BATCH_SIZE", "50"))

    # ===== BACKGROUND JOBS =====
    JOB_TICK_TIMEOUT_SECONDS = int(os.getenv("JOB_TICK_TIMEOUT_SECONDS", "50"))
    RATE_LOCK_EXPIRY_INTERVAL_SECONDS = int(os.getenv("RATE_LOCK_EXPIRY_INTERVAL_SECONDS", "60"))

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Conversion Engine Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_SOURCE}")
        logger.info(f"   Route: {Config.CONVERSION_ROUTE}")
        logger.info(
            f"   Fees: platform={Config.PLATFORM_FEE_PERCENTAGE}% network={Config.NETWORK_FEE_STARS} STARS"
        )
        logger.info(
            f"   Limits: min={Config.MIN_CONVERSION_AMOUNT} max={Config.MAX_CONVERSION_AMOUNT} STARS"
        )
        logger.info(
            f"   Confirmation polling: {Config.CONFIRMATION_MAX_POLLS} x "
            f"{Config.CONFIRMATION_POLL_INTERVAL_SECONDS}s (min confirmations {Config.TON_MIN_CONFIRMATIONS})"
        )
        logger.info(f"   Webhook signing: {'configured' if Config.WEBHOOK_SECRET else 'NOT CONFIGURED'}")

    @staticmethod
    def validate() -> List[str]:
        """Return a list of configuration problems, logging each one"""
        issues = []

        if not Config.WEBHOOK_SECRET:
            issues.append("WEBHOOK_SECRET is not set - webhook signatures cannot be trusted")
        if not Config.PLATFORM_WALLET_ADDRESS:
            issues.append("TON_MASTER_WALLET_ADDRESS is not set - platform fees have no destination")
        if Config.MIN_CONVERSION_AMOUNT > Config.MAX_CONVERSION_AMOUNT:
            issues.append("MIN_CONVERSION_AMOUNT exceeds MAX_CONVERSION_AMOUNT")
        if not Config.WEBHOOK_RETRY_DELAYS:
            issues.append("WEBHOOK_RETRY_DELAYS is empty")
        if Config.CONVERSION_ROUTE not in ("direct", "p2p"):
            issues.append(f"CONVERSION_ROUTE must be 'direct' or 'p2p', got '{Config.CONVERSION_ROUTE}'")
        if not (Config.RATE_LOCK_MIN_SECONDS <= Config.RATE_LOCK_DEFAULT_SECONDS <= Config.RATE_LOCK_MAX_SECONDS):
            issues.append("RATE_LOCK_DEFAULT_SECONDS must be within 60-600 seconds")

        for issue in issues:
            if Config.IS_PRODUCTION:
                logger.error(f"❌ CONFIG: {issue}")
            else:
                logger.warning(f"⚠️ CONFIG: {issue}")

        return issues
