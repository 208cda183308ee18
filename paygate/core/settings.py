"""
Application settings (pydantic-settings)
"""

from __future__ import annotations
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables / .env"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # database
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "paygate"
    db_password: str = "dev_password"
    db_name: str = "paygate"
    db_echo: bool = False
    db_pool_size: int = 5
    db_max_overflow: int = 10
    database_url: str | None = None  # full SQLAlchemy async URL, overrides db_*
    need_reset_database: bool = False

    # gateways (every credential is optional until the gateway is requested)
    ## gcash
    gcash_api_url: str = "https://api.gcash.com/v1"
    gcash_api_key: str = ""
    gcash_merchant_id: str = ""
    gcash_webhook_secret: str = ""

    ## maya
    maya_api_url: str = "https://pg-sandbox.paymaya.com"
    maya_public_key: str = ""
    maya_secret_key: str = ""
    maya_webhook_secret: str = ""

    ## stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance: int = 300  # seconds

    ## paypal
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_mode: Literal["sandbox", "live"] = "sandbox"
    paypal_webhook_id: str = ""
    paypal_brand_name: str = "Shop"

    # application
    payment_default_gateway: str | None = None
    frontend_url: str = "http://localhost:3000"
    app_url: str = "http://localhost:9000"
    http_timeout_seconds: float = Field(default=30.0, gt=0, le=120)
    log_level: str = "INFO"
    debug: bool = False


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance"""
    return Settings()
