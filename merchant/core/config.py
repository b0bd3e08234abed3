# merchant/core/config.py

import os
from functools import lru_cache

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings.
    Loads values from environment variables (.env file)
    """
    # Database settings
    DATABASE_URL: str = ""

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Carts / checkout
    CART_TTL_MINUTES: int = 30
    CHECKOUT_GRACE_PERIOD_MINUTES: int = 60  # abandoned provider sessions

    # Inventory
    LOW_STOCK_THRESHOLD: int = 5  # stores.low_stock_threshold overrides per tenant

    # Outbound webhooks
    WEBHOOK_MAX_ATTEMPTS: int = 3
    WEBHOOK_BACKOFF_BASE_SECONDS: float = 2.0
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_RETRY_WINDOW_HOURS: int = 24
    WEBHOOK_RETRY_BATCH_SIZE: int = 50
    WEBHOOK_PENDING_STALE_MINUTES: int = 10
    WEBHOOK_USER_AGENT: str = "Merchant-Webhook/1.0"

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    REAPER_INTERVAL_SECONDS: int = 60
    WEBHOOK_RETRY_INTERVAL_SECONDS: int = 300

    # Payment provider
    PAYMENT_API_BASE: str = "https://api.stripe.com/v1"
    PAYMENT_SIGNATURE_TOLERANCE_SECONDS: int = 300
    PAYMENT_TIMEOUT_SECONDS: float = 30.0

    model_config = ConfigDict(
        env_file=os.environ.get('ENV_FILE', '.env') if os.path.exists('.env') else None,
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings():
    """Cached settings to avoid loading .env file for every request"""
    return Settings()


def clear_settings_cache():
    """Clear the settings cache - useful when switching between environments"""
    get_settings.cache_clear()
