"""
Application Configuration
"""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # App
    APP_NAME: str = "Marketplace Auction House"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Store
    STORE_BACKEND: str = "sql"  # "sql" or "memory"

    # Database
    DATABASE_URL: str = "sqlite:///./auction_house.db"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 30
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600

    # Redis (Pub/Sub fan-out and cross-process locks)
    REDIS_ENABLED: bool = False
    REDIS_URL: str = "redis://localhost:6379/0"

    # Lock (only used when the store has no conditional writes)
    LOCK_BACKEND: str = "local"  # "local" or "redis"
    LOCK_EXPIRE_MS: int = 3000
    LOCK_RETRY_DELAY: float = 0.005
    LOCK_MAX_RETRIES: int = 10

    # Bidding
    BID_MAX_RETRIES: int = 5
    BID_RETRY_BASE_DELAY: float = 0.005  # seconds, doubles per attempt
    BID_RETRY_MAX_DELAY: float = 0.1
    MIN_INCREMENT_RATE: Decimal = Decimal("0.05")
    MIN_INCREMENT_FLOOR: Decimal = Decimal("1.00")
    DEFAULT_CURRENCY: str = "USD"

    # Auction lifecycle
    MAX_EXTENSION_MINUTES: int = 24 * 60
    ENDING_SOON_MINUTES: int = 60
    LAZY_EXPIRY: bool = True

    # Expiry sweep
    SWEEP_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 10

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None

    # CORS
    CORS_ORIGINS: Union[List[str], str] = ["*"]

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @field_validator("STORE_BACKEND", "LOCK_BACKEND")
    @classmethod
    def normalize_backend(cls, v: str) -> str:
        return v.lower()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
