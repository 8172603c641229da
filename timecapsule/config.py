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
    """Time capsule configuration. All values come from environment variables."""

    # Database
    database_path: Path = Field(default=Path("data/timecapsule.db"))

    # Uploaded images are served under this prefix by the intake API
    uploads_url_prefix: str = Field(default="/uploads")

    # Scheduler
    scheduler_cron: str = Field(default="*/5 * * * *")
    scheduler_timezone: str = Field(default="America/Sao_Paulo")
    scheduler_max_concurrent: int = Field(default=3, ge=1)
    scheduler_chunk_delay_ms: int = Field(default=2000, ge=0)
    scheduler_initial_run_delay_s: float = Field(default=5.0, ge=0)

    # SMTP
    smtp_host: str = Field(default="smtp.gmail.com")
    smtp_port: int = Field(default=587)
    smtp_use_tls: bool = Field(default=False)
    smtp_user: str = Field(default="")
    smtp_password: str = Field(default="")
    smtp_timeout_s: float = Field(default=30.0)

    # Sender identity
    email_from: str = Field(default="")
    email_from_name: str = Field(default="Time Capsule")

    # Provider throttling and retry policy
    email_max_connections: int = Field(default=3, ge=1)
    email_rate_per_second: float = Field(default=1.0, gt=0)
    email_max_retries: int = Field(default=3, ge=1)
    email_retry_delay_ms: int = Field(default=5000, ge=0)

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

    def get_sender_address(self) -> str:
        """Return the From address, falling back to the SMTP login."""
        return self.email_from or self.smtp_user


settings = Settings()
