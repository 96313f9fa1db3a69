from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    ENV: str = "dev"
    DATABASE_URL: str = "sqlite:///./data.db"
    APP_URL: str = "https://qrwolf.com"

    # Budget for every round trip to Redis or the record store
    STORE_TIMEOUT_SECONDS: float = 2.0

    # JWT verification for the key management surface
    JWT_PUBLIC_KEY_PATH: str = "keys/jwtRS256.key.pub"
    JWT_ALGORITHM: str = "RS256"

    # Redis
    ENABLE_REDIS_RATE_LIMIT: bool = True
    RATE_LIMIT_REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_RETRY_INTERVAL_SECONDS: int = 60

    # Quotas
    RATE_LIMIT_MAX_REQUESTS: int = 60
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    MONTHLY_REQUEST_LIMIT: int = 10000

    # API keys
    API_KEY_PREFIX: str = "qrw_"
    API_ACCESS_TIER: str = "business"
    MAX_ACTIVE_API_KEYS: int = 5

    # Client IP from X-Forwarded-For / X-Real-IP (only behind a trusted proxy)
    TRUST_PROXY_HEADERS: bool = False

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
