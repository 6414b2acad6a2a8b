"""
Application configuration using Pydantic Settings.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from `INK_`-prefixed environment variables."""

    # Database
    MONGO_URI: str = ""
    MONGO_DB: str = "ink_economy"

    # Logging
    LEDGER_LOG_PATH: str = "logs/ink_ledger.log"
    LOG_LEVEL: str = "INFO"

    # Pricing (USD per million tokens, local currency units per USD)
    INPUT_RATE_USD_PER_MTOK: str = "0.5"
    OUTPUT_RATE_USD_PER_MTOK: str = "3.0"
    EXCHANGE_RATE: str = "33"

    # Lifecycles
    SESSION_TTL_MINUTES: int = 120
    PENDING_ORDER_TTL_MINUTES: int = 30
    SESSION_OCCUPANCY_CREDITS: int = 0

    # Accounts and orders
    WELCOME_CREDITS: int = 10
    PRICE_PER_CREDIT: int = 1

    # Cache
    PACKAGE_CACHE_TTL_SECONDS: int = 300

    model_config = SettingsConfigDict(
        env_prefix="INK_", env_file=".env", case_sensitive=True, extra="ignore"
    )


settings = Settings()
