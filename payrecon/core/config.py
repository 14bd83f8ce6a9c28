"""Application configuration loaded from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with defaults and env var overrides."""

    # Database
    database_url: str = "sqlite:///./payrecon.db"

    # App
    app_env: str = "development"
    app_port: int = 8000
    log_level: str = "INFO"

    # Store calls must finish or fail within this many seconds
    store_timeout_seconds: float = 10.0

    # App settings document cache
    settings_cache_ttl_seconds: float = 300.0

    # Used when a source row carries no payment method
    default_payment_method: str = "QR 1 (VNPay)"

    default_page_size: int = 5

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
