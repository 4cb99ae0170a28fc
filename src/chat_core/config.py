from __future__ import annotations

from typing import Literal

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    API_BASE_URL: str = "http://localhost:5000"
    WS_URL: str = "ws://localhost:5000/ws"

    AUTH_TOKEN: str = ""
    JWT_SECRET: str = ""
    JWT_ALGORITHM: str = "HS256"

    READ_TIMEOUT_SECONDS: float = 10.0
    WRITE_TIMEOUT_SECONDS: float = 20.0

    RETRY_BASE_DELAY: float = 0.5
    RETRY_FACTOR: float = 2.0
    RETRY_MAX_DELAY: float = 30.0
    RETRY_JITTER: float = 0.2
    RETRY_MAX_ATTEMPTS: int = 5

    HISTORY_PAGE_SIZE: int = 50
    HISTORY_CACHE_MAX_MESSAGES: int = 500
    HISTORY_STALE_SECONDS: float = 60.0

    TYPING_TTL_SECONDS: float = 3.0
    TYPING_SWEEP_INTERVAL: float = 1.0
    LOCAL_TYPING_IDLE_SECONDS: float = 2.0

    OUTBOUND_MAX_QUEUE: int = 100
    ECHO_MATCH_WINDOW_SECONDS: float = 30.0

    WS_HEARTBEAT_SECONDS: float = 20.0
    WS_RECONNECT_MAX_DELAY: float = 30.0

    QUEUE_STORAGE: Literal["memory", "redis"] = "memory"
    REDIS_URL: str = "redis://localhost:6379/0"
    OUTBOX_KEY_PREFIX: str = "chat_core:outbox"

    model_config = ConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
