from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    ENVIRONMENT: str = "development"

    # Database
    MONGO_URL: str = "mongodb://localhost:27017"
    MONGO_DB: str = "agrichat"

    # Tokens are issued by the identity service; we only verify them
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"

    # Redis pub/sub for multi-process fan-out, disabled when unset
    REDIS_URL: Optional[str] = None

    MAX_MESSAGE_LENGTH: int = 1000

    # limits rate strings, empty to disable; storage is a limits async URI
    SEND_RATE_LIMIT: str = "30/minute"
    CONVERSATION_RATE_LIMIT: str = "10/5 minutes"
    RATE_LIMIT_STORAGE_URI: str = "async+memory://"

    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
