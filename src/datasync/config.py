from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./datasync.db"
    airtable_token: str = ""
    airtable_base_id: str = ""
    airtable_timeout_s: int = 30
    default_batch_size: int = 100
    circuit_failure_threshold: int = 5
    circuit_cooldown_ms: int = 60_000
    integrity_check_interval_seconds: int = 30
    integrity_alert_threshold_percentage: float = 5.0
    integrity_check_minutes: int = 60
    nightly_sync_hour: int = 3
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "DATASYNC_"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
