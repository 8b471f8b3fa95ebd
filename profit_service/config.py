"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = "sqlite:///./profit_service.db"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]  # Vite dev server

    # Auth
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 1440  # 24 hours
    trigger_secret: str = ""  # shared secret for the external cron trigger; empty rejects all calls

    # Run execution
    max_concurrency: int = 8
    storage_timeout_seconds: float = 10.0
    max_credit_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    run_lock_stale_after_seconds: int = 1800

    # Cooldown windows for manual runs after a clean completion
    investment_manual_cooldown_hours: float = 24.0
    live_trade_manual_cooldown_hours: float = 1.0

    # Kinds whose principal goes back to the available balance on completion
    capital_return_kinds: list[str] = ["live_trade"]

    # In-process scheduler
    scheduler_enabled: bool = True
    investment_run_hour: int = 0
    investment_run_minute: int = 5
    live_trade_run_minute: int = 1

    model_config = {"env_prefix": "PS_", "env_file": ".env"}


settings = Settings()
