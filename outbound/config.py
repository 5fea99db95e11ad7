from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Record-creation API signing key - required from .env
    API_SECRET: str

    # Poller schedule
    POLL_INTERVAL_SECONDS: float = 60.0
    POLL_BATCH_SIZE: int = 100

    # Delivery provider
    PROVIDER_MODE: str = "simulated"  # "http" or "simulated"
    PROVIDER_URL: str = "https://api.sms-provider.com/send"
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    SIMULATED_SUCCESS_RATE: float = 0.95
    SIMULATED_DELAY_SECONDS: float = 3.0

    # Work queue
    QUEUE_VISIBILITY_TIMEOUT_SECONDS: float = 60.0
    QUEUE_MAX_DELIVERIES: int = 5
    CONSUMER_CONCURRENCY: int = 4

    # Recovery sweep for records stuck in Processing
    RECOVERY_INTERVAL_SECONDS: float = 300.0
    STALE_PROCESSING_SECONDS: float = 900.0
    MAX_DELIVERY_ATTEMPTS: int = 3

    # Start poller/consumer/recovery threads inside the API process
    RUN_WORKERS: bool = False


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
