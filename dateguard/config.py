import logging
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    database_url: str = "sqlite:///./dateguard.db"
    secret_key: str = "change-me"
    # Required on the scheduled sweep endpoints when set
    api_key: str = ""
    log_level: str = "INFO"

    # Messaging and directory credentials; unset means simulation mode
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    google_places_api_key: Optional[str] = None

    grace_period_minutes: int = 5
    publish_delay_hours: int = 24
    review_deadline_days: int = 7

    # Workers
    api_base: str = "http://localhost:8000"
    watchdog_interval_seconds: int = 300
    window_sweep_interval_seconds: int = 900

    class Config:
        env_prefix = ""
        env_file = ".env"

    @property
    def messaging_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_phone_number)


settings = Settings()


def configure_logging(level: Optional[str] = None):
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
