"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Scheduler configuration. All values come from environment variables."""

    # Database
    database_path: Path = Field(default=Path("data/sms_scheduler.db"))

    # SMS provider: "telnyx" or "twilio"
    sms_provider: str = Field(default="telnyx")

    # Telnyx
    telnyx_api_key: str = Field(default="")
    telnyx_phone_number: str = Field(default="")

    # Twilio
    twilio_account_sid: str = Field(default="")
    twilio_auth_token: str = Field(default="")
    twilio_phone_number: str = Field(default="")

    # Dispatch retry policy
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=30.0, gt=0)
    backoff_cap_seconds: float = Field(default=1800.0, gt=0)
    backoff_jitter_seconds: float = Field(default=5.0, ge=0)
    send_timeout_seconds: float = Field(default=10.0, gt=0)

    # Scheduler
    worker_pool_size: int = Field(default=4, ge=1, le=64)
    recovery_grace_seconds: float = Field(default=900.0, ge=0)
    store_retry_delay_seconds: float = Field(default=5.0, gt=0)

    # Retention
    retention_days: int = Field(default=30, ge=1)
    archive_interval_minutes: int = Field(default=60, ge=1)

    # Timezone used to interpret appointment dates and times
    timezone: str = Field(default="America/Chicago")

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)


settings = Settings()
