"""Application configuration via pydantic-settings.

Loads all settings from environment variables (or .env file).
See .env.example for documented variable names and defaults.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from datatrans_gateway.core.client import DEFAULT_TIMEOUT_SECONDS, MerchantOption

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Central configuration for the Datatrans gateway."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Webhook ---
    # Hex-encoded "Sign2" HMAC key from the Datatrans merchant backend.
    datatrans_sign2_hmac_key: str = ""

    # --- Merchant (basic auth for the transaction API) ---
    datatrans_merchant_id: str = ""
    datatrans_password: str = ""
    datatrans_enable_production: bool = False
    datatrans_enable_idempotency: bool = False

    # --- Application ---
    http_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    log_level: str = "INFO"

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.datatrans_sign2_hmac_key)

    def merchant_option(self) -> MerchantOption:
        """Build the default merchant from the DATATRANS_* variables."""
        if not self.datatrans_merchant_id:
            logger.warning("DATATRANS_MERCHANT_ID is empty, API calls will be rejected")
        return MerchantOption(
            merchant_id=self.datatrans_merchant_id,
            password=self.datatrans_password,
            enable_production=self.datatrans_enable_production,
            enable_idempotency=self.datatrans_enable_idempotency,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached application settings singleton."""
    return Settings()
