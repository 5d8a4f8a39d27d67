from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./expenso.db"
    user_email: str = ""  # documents are namespaced per user; empty = unscoped
    google_token_file: str = "~/.expenso/google_token.json"

    # Sync triggers
    sync_interval_seconds: int = 120
    enqueue_debounce_seconds: float = 1.0
    online_debounce_seconds: float = 2.0

    # Retry policy
    retry_base_delay_seconds: float = 5.0
    max_retries: int = 3

    # Spacing between remote calls inside one cycle (rate limits)
    queue_operation_delay_seconds: float = 1.0
    pending_operation_delay_seconds: float = 0.5

    retention_days: int = 7

    # Active reachability probe
    connectivity_host: str = "8.8.8.8"
    connectivity_port: int = 53
    connectivity_timeout_seconds: float = 3.0
    connectivity_poll_seconds: int = 30

    class Config:
        env_prefix = "EXPENSO_"
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
