from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Trackwell"
    app_env: str = "local"
    log_level: str = "INFO"
    database_url: str = "sqlite+pysqlite:///./trackwell.db"
    persistence_enabled: bool = False
    max_attachment_bytes: int = 5 * 1024 * 1024
    notification_dedup_seconds: float = 5.0
    reminder_dedup_seconds: float = 3600.0
    default_currency: str = "USD"
    metrics_enabled: bool = False
    otel_enabled: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
