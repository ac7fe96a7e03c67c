from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Skygate"
    BLUESKY_API_URL: str = "https://bsky.social/xrpc/"
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # State storage ("memory" or "database")
    STATE_BACKEND: str = "memory"
    STATE_KEY_PREFIX: str = "bluesky_"
    DATABASE_URL: str = "sqlite:///./skygate.db"
    MEMORY_STORE_MAXSIZE: int = 10000

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = 3
    CIRCUIT_COOLDOWN_SECONDS: int = 900  # 15 minutes
    CIRCUIT_STATE_TTL: int = 3600  # closed/half-open records
    CIRCUIT_FAILURE_TTL: int = 604800  # 1 week

    # Rate limiter (429 backoff)
    RATE_LIMIT_BASE_DELAY: int = 60
    RATE_LIMIT_MAX_DELAY: int = 300
    RATE_LIMIT_JITTER: float = 0.2  # +/- 20%
    RATE_LIMIT_ATTEMPT_TTL: int = 604800

    # Session tokens
    ACCESS_TOKEN_TTL: int = 3600  # 1 hour
    REFRESH_TOKEN_TTL: int = 604800  # 1 week
    IDENTITY_TTL: int = 604800

    FEED_DEFAULT_LIMIT: int = 10
    # Profile and processed-feed cache across cycles, seconds (0 disables)
    RESPONSE_CACHE_TTL: int = 3600

    # Error tracking (disabled when no DSN is set)
    SENTRY_DSN: Optional[str] = None
    SENTRY_ENVIRONMENT: str = "production"

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()
