import logging
from dataclasses import dataclass
from datetime import timedelta

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Mastercard payment gateway (MPGS)
    MASTERCARD_HOST: str = "test-gateway.mastercard.com"
    MASTERCARD_MERCHANT_ID: Optional[str] = None
    MASTERCARD_API_PASSWORD: Optional[str] = None
    MASTERCARD_API_VERSION: int = 100

    # Admin access (X-Admin-Key)
    ADMIN_KEY: Optional[str] = None

    # Billing worker
    BILLING_WORKER_ENABLED: bool = True
    BILLING_CYCLE_INTERVAL_SECONDS: int = 300
    BILLING_GATEWAY_TIMEOUT_SECONDS: float = 30.0
    BILLING_DUE_SUBSCRIPTION_LIMIT: int = 100
    BILLING_PENDING_ATTEMPT_LIMIT: int = 50
    BILLING_RETRY_SCAN_LIMIT: int = 50
    BILLING_RETRY_COOLDOWN_HOURS: int = 24
    BILLING_MAX_RETRY_ATTEMPTS: int = 3
    BILLING_LOOKAHEAD_SECONDS: int = 300
    BILLING_SHUTDOWN_GRACE_SECONDS: float = 2.0
    BILLING_MARK_UNPAID_ON_EXHAUSTION: bool = True
    BILLING_STUCK_PROCESSING_MINUTES: int = 30
    DEFAULT_CURRENCY: str = "LKR"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


@dataclass(frozen=True)
class BillingConfig:
    """Tunables for the billing engine. Defaults match the production schedule."""
    cycle_interval: timedelta = timedelta(minutes=5)
    gateway_timeout: timedelta = timedelta(seconds=30)
    due_subscription_limit: int = 100
    pending_attempt_limit: int = 50
    retry_scan_limit: int = 50
    retry_cooldown: timedelta = timedelta(hours=24)
    max_retry_attempts: int = 3
    lookahead: timedelta = timedelta(minutes=5)
    shutdown_grace: timedelta = timedelta(seconds=2)
    mark_unpaid_on_exhaustion: bool = True
    stuck_processing_after: timedelta = timedelta(minutes=30)


def billing_config_from_settings(settings_obj: Optional[Settings] = None) -> BillingConfig:
    cfg = settings_obj or settings
    return BillingConfig(
        cycle_interval=timedelta(seconds=cfg.BILLING_CYCLE_INTERVAL_SECONDS),
        gateway_timeout=timedelta(seconds=cfg.BILLING_GATEWAY_TIMEOUT_SECONDS),
        due_subscription_limit=cfg.BILLING_DUE_SUBSCRIPTION_LIMIT,
        pending_attempt_limit=cfg.BILLING_PENDING_ATTEMPT_LIMIT,
        retry_scan_limit=cfg.BILLING_RETRY_SCAN_LIMIT,
        retry_cooldown=timedelta(hours=cfg.BILLING_RETRY_COOLDOWN_HOURS),
        max_retry_attempts=cfg.BILLING_MAX_RETRY_ATTEMPTS,
        lookahead=timedelta(seconds=cfg.BILLING_LOOKAHEAD_SECONDS),
        shutdown_grace=timedelta(seconds=cfg.BILLING_SHUTDOWN_GRACE_SECONDS),
        mark_unpaid_on_exhaustion=cfg.BILLING_MARK_UNPAID_ON_EXHAUSTION,
        stuck_processing_after=timedelta(minutes=cfg.BILLING_STUCK_PROCESSING_MINUTES),
    )


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("pg_billing")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "MASTERCARD_MERCHANT_ID",
        "MASTERCARD_API_PASSWORD",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.BILLING_CYCLE_INTERVAL_SECONDS <= 0:
        message = "BILLING_CYCLE_INTERVAL_SECONDS must be positive"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
