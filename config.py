"""
Application settings loaded from the environment (and .env when present)
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Backing store; no default so a missing value surfaces as a config error
    database_url: Optional[str] = None
    store_key: str = "food_orders"
    document_ttl_seconds: Optional[int] = Field(None, ge=1)
    write_retries: int = Field(3, ge=1, le=10)

    # Manager shared secret
    manager_secret: Optional[str] = None
    manager_header: str = "X-Manager-Key"

    # Orders
    completed_orders_cap: int = Field(50, ge=1)
    recent_orders_limit: int = Field(10, ge=1, le=50)
    timezone: str = "Pacific/Auckland"
    enforce_kitchen_open: bool = False

    # Event log
    events_max: int = Field(100, ge=1)
    events_ttl_seconds: int = Field(300, ge=1)

    # Live update stream (must close before the host request timeout)
    stream_poll_seconds: float = Field(3.0, gt=0)
    stream_heartbeat_seconds: float = Field(10.0, gt=0)
    stream_max_seconds: float = Field(25.0, gt=0)

    port: int = 8000

    @model_validator(mode="after")
    def heartbeat_within_stream(self):
        if self.stream_heartbeat_seconds >= self.stream_max_seconds:
            raise ValueError("STREAM_HEARTBEAT_SECONDS must be shorter than STREAM_MAX_SECONDS")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
