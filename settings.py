from functools import lru_cache
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # `.env.prod` takes priority over `.env`
        env_file=(".env", ".env.prod"),
        extra="ignore",
    )

    app_name: str = "Job Marketplace"

    # "database" uses SQLAlchemy (Postgres or the local SQLite fallback),
    # "memory" keeps everything in process for demos and tests
    storage_backend: Literal["database", "memory"] = "database"
    database_url: Optional[str] = None

    # Logging
    log_format: Literal["json", "console"] = "json"
    log_level: str = "INFO"

    # CloudWatch embedded metrics
    metrics_namespace: str = "JobMarketplace"
    metrics_environment: str = "Local"

    # Passed straight to werkzeug.security.generate_password_hash
    password_hash_method: str = "scrypt"

    # Window used by the admin dashboard for "new this week" counters
    new_item_window_days: int = 7

    cors_origins: List[str] = [
        "http://localhost",
        "http://localhost:5000",
        "http://localhost:5173",
        "http://127.0.0.1:5000",
    ]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
