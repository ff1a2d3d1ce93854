from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = Field(default=8000, ge=1, le=65535)

    # Shared stores
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20
    DATABASE_URL: str | None = None

    # Credential vault (64 hex chars -> 32 byte AES-256 key)
    ENCRYPTION_KEY: str | None = None

    # =================================================================
    # QUEUES
    # =================================================================
    QUEUE_BACKEND: str = "redis"  # "redis" or "memory"
    QUEUE_PREFIX: str = "bouncer"
    QUEUE_CONCURRENCY_STREAM: int = Field(default=5, ge=1)
    QUEUE_CONCURRENCY_WEBHOOK: int = Field(default=10, ge=1)
    QUEUE_CONCURRENCY_SCORING: int = Field(default=3, ge=1)
    QUEUE_CONCURRENCY_NOTIFICATION: int = Field(default=8, ge=1)
    QUEUE_MAX_RETRIES: int = Field(default=3, ge=1)
    QUEUE_RETRY_DELAY_MS: int = Field(default=5000, ge=0)
    QUEUE_LEASE_SECONDS: float = Field(default=30.0, gt=0)
    QUEUE_POLL_INTERVAL_SECONDS: float = Field(default=1.0, gt=0)
    QUEUE_METRICS_INTERVAL_SECONDS: float = Field(default=30.0, gt=0)
    QUEUE_KEEP_COMPLETED: int = Field(default=50, ge=0)
    QUEUE_KEEP_DEAD: int = Field(default=1000, ge=1)
    QUEUE_SHUTDOWN_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)

    # =================================================================
    # SCORING
    # =================================================================
    SCORING_WEIGHTS_USERNAME: float = Field(default=0.4, ge=0, le=1)
    SCORING_WEIGHTS_DISPLAY_NAME: float = Field(default=0.3, ge=0, le=1)
    SCORING_WEIGHTS_PROFILE_IMAGE: float = Field(default=0.2, ge=0, le=1)
    SCORING_WEIGHTS_METADATA: float = Field(default=0.1, ge=0, le=1)
    THRESHOLD_LOW: float = Field(default=0.3, ge=0, le=1)
    THRESHOLD_MEDIUM: float = Field(default=0.6, ge=0, le=1)
    THRESHOLD_HIGH: float = Field(default=0.8, ge=0, le=1)
    SCORING_PAIR_COOLDOWN_SECONDS: int = Field(default=300, ge=0)

    # =================================================================
    # RATE LIMITING
    # =================================================================
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_FAIL_OPEN: bool = True
    RATE_LIMIT_WINDOW_SECONDS: int = Field(default=900, ge=1)
    RATE_LIMIT_API_MAX: int = Field(default=100, ge=1)
    RATE_LIMIT_WEBHOOK_MAX: int = Field(default=1000, ge=1)

    # =================================================================
    # NOTIFICATIONS
    # =================================================================
    NOTIFICATION_DEFAULT_MAX_PER_HOUR: int = Field(default=10, ge=1)
    NOTIFICATION_THROTTLE_WINDOW_SECONDS: int = Field(default=3600, ge=1)
    NOTIFICATION_DELIVERY_RECORD_TTL_SECONDS: int = Field(default=7 * 24 * 3600, ge=60)
    NOTIFICATION_HTTP_TIMEOUT_SECONDS: float = 10.0

    # =================================================================
    # ACCOUNT FEATURE SOURCE
    # =================================================================
    FEATURE_SOURCE_URL: str | None = None
    FEATURE_SOURCE_TOKEN: str | None = None  # iv:authTag:ciphertext
    FEATURE_SOURCE_TIMEOUT_SECONDS: float = 10.0

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def queue_concurrency(self) -> dict[str, int]:
        """Worker pool size per queue name."""
        return {
            "stream": self.QUEUE_CONCURRENCY_STREAM,
            "webhook": self.QUEUE_CONCURRENCY_WEBHOOK,
            "scoring": self.QUEUE_CONCURRENCY_SCORING,
            "notification": self.QUEUE_CONCURRENCY_NOTIFICATION,
        }

    def scoring_weights(self) -> dict[str, float]:
        return {
            "username": self.SCORING_WEIGHTS_USERNAME,
            "display_name": self.SCORING_WEIGHTS_DISPLAY_NAME,
            "profile_image": self.SCORING_WEIGHTS_PROFILE_IMAGE,
            "metadata": self.SCORING_WEIGHTS_METADATA,
        }

    def scoring_thresholds(self) -> dict[str, float]:
        return {
            "low": self.THRESHOLD_LOW,
            "medium": self.THRESHOLD_MEDIUM,
            "high": self.THRESHOLD_HIGH,
        }

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Development keeps the pool small.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
        }

        if self.environment == "development":
            config.update({"min_size": 1, "max_size": 4})

        return config


def validate_startup_config(config: Settings) -> None:
    """
    Check cross-field rules that pydantic field constraints can't express.

    Raises:
        ConfigurationError: weights don't sum to 1.0, thresholds are out of
            order, or the encryption key has the wrong length.
    """
    from bouncer.scoring.engine import ScoringThresholds, ScoringWeights
    from bouncer.services.infrastructure.encryption_service import parse_key

    ScoringWeights.from_mapping(config.scoring_weights()).validate()
    ScoringThresholds.from_mapping(config.scoring_thresholds()).validate()

    if config.ENCRYPTION_KEY:
        parse_key(config.ENCRYPTION_KEY)

    if config.QUEUE_BACKEND not in ("redis", "memory"):
        from bouncer.errors import ConfigurationError

        raise ConfigurationError(
            f"QUEUE_BACKEND must be 'redis' or 'memory', got {config.QUEUE_BACKEND!r}"
        )


settings = Settings()
