"""Configuration management for the marketplace settlement engine"""

import os
import json
import logging
from typing import Dict, Any

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: {name}={raw!r} is not an integer, using default {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_json(name: str, default: Dict[str, Any]) -> Dict[str, Any]:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.error(f"❌ CONFIG: {name} is not valid JSON, ignoring")
        return default
    if not isinstance(value, dict):
        logger.error(f"❌ CONFIG: {name} must be a JSON object, ignoring")
        return default
    return value


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./marketplace.db")
    DATABASE_ECHO = _env_bool("DATABASE_ECHO", False)

    # Payment provider (PIX instant payments)
    PAYMENT_PROVIDER = os.getenv("PAYMENT_PROVIDER", "pix")
    PAYMENT_TTL_SECONDS = _env_int("PAYMENT_TTL_SECONDS", 900)
    PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET")
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "BRL")

    # Inventory holds outlive the payment window by a small grace period so a
    # payment confirmed at the last second still finds its unit reserved
    INVENTORY_HOLD_GRACE_SECONDS = _env_int("INVENTORY_HOLD_GRACE_SECONDS", 120)

    # Order and settlement timers
    ORDER_AUTO_COMPLETE_HOURS = _env_int("ORDER_AUTO_COMPLETE_HOURS", 72)
    SETTLEMENT_RELEASE_DELAY_HOURS = _env_int("SETTLEMENT_RELEASE_DELAY_HOURS", 0)

    # Request validation
    ADMIN_REASON_MIN_LENGTH = _env_int("ADMIN_REASON_MIN_LENGTH", 5)
    MAX_CHECKOUT_QUANTITY = _env_int("MAX_CHECKOUT_QUANTITY", 10)

    # Background jobs
    SWEEPER_BATCH_SIZE = _env_int("SWEEPER_BATCH_SIZE", 100)
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", True)

    # Built-in auth port: {"<token>": {"user_id": 1, "role": "admin"}}
    AUTH_STATIC_TOKENS = _env_json("AUTH_STATIC_TOKENS", {})

    @classmethod
    def inventory_hold_seconds(cls) -> int:
        """Hold duration used at checkout: payment window plus grace"""
        return cls.PAYMENT_TTL_SECONDS + cls.INVENTORY_HOLD_GRACE_SECONDS

    @classmethod
    def log_environment_config(cls):
        """Log the effective configuration (secrets redacted)"""
        logger.info("🔧 ENVIRONMENT CONFIGURATION:")
        logger.info(f"   Environment: {cls.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {cls.DATABASE_URL.split('@')[-1]}")
        logger.info(f"   Payment provider: {cls.PAYMENT_PROVIDER} (ttl={cls.PAYMENT_TTL_SECONDS}s)")
        logger.info(f"   Webhook signatures: {'enforced' if cls.PAYMENT_WEBHOOK_SECRET else 'disabled'}")
        logger.info(
            f"   Timers: auto_complete={cls.ORDER_AUTO_COMPLETE_HOURS}h "
            f"release_delay={cls.SETTLEMENT_RELEASE_DELAY_HOURS}h"
        )
