from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Map the env var named DATABASE_URL to this field
    database_url: str = Field(alias="DATABASE_URL")

    # Processor A (connected-account transfers). Unset -> transfers disabled.
    stripe_secret_key: str | None = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_instant_payouts: bool = Field(default=False, alias="STRIPE_INSTANT_PAYOUTS")
    payout_currency: str = Field(default="usd", alias="PAYOUT_CURRENCY")

    payout_scheduler_enabled: bool = Field(default=False, alias="PAYOUT_SCHEDULER_ENABLED")
    payout_scheduler_timezone: str = Field(default="UTC", alias="PAYOUT_SCHEDULER_TIMEZONE")
    stale_batch_minutes: int = Field(default=60, alias="STALE_BATCH_MINUTES")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Pydantic v2-style config: read .env and ignore extra env vars
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

settings = Settings()
