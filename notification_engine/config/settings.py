from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from notification_engine.utils.offsets import parse_offsets


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "notification-engine"
    VERSION: str = "0.1.0"
    LOG_LEVEL: str = "info"

    # Database
    DATABASE_URL: str = "sqlite:///./notification_engine.db"

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    SCHEDULER_TIMEZONE: str = "UTC"

    # Collaborators, as "package.module:ClassName"
    ENTITY_STORE_CLASS: str = ""
    CHANNEL_TRANSPORT_CLASS: str = (
        "notification_engine.providers.channel_transport:LoggingChannelTransport"
    )

    # Dispatch & retries
    NOTIFICATION_BATCH_SIZE: int = Field(100, gt=0)
    # 0 derives the limit from NOTIFICATION_BATCH_SIZE
    DISPATCH_CONCURRENCY: int = Field(0, ge=0)
    MAX_RETRIES: int = Field(3, ge=0)
    RETRY_BACKOFF_BASE_MINUTES: int = Field(5, gt=0)
    STALE_PENDING_MINUTES: int = Field(15, gt=0)

    # Channel feature flags
    SMS_ENABLED: bool = False
    PUSH_ENABLED: bool = True
    IN_APP_EXPIRY_DAYS: int = Field(30, gt=0)

    # Trigger windows
    DEFAULT_TOLERANCE_MINUTES: int = Field(10, gt=0)
    EVENT_REMINDER_OFFSETS: str = "7d:low,3d:medium,1d:medium,2h:high,30m:urgent"
    EVENT_REMINDER_TOLERANCE_MINUTES: Optional[int] = None
    REGISTRATION_DEADLINE_OFFSETS: str = "48h:medium,24h:high,6h:urgent"
    REGISTRATION_DEADLINE_TOLERANCE_MINUTES: Optional[int] = 30
    PAYMENT_REMINDER_OFFSETS: str = "7d:medium,3d:high,1d:urgent"
    PAYMENT_REMINDER_TOLERANCE_MINUTES: Optional[int] = 720
    CHECKIN_REMINDER_OFFSETS: str = "30m:urgent"
    CHECKIN_REMINDER_TOLERANCE_MINUTES: Optional[int] = 5

    # Profile completion nudges
    PROFILE_COMPLETION_PERIOD_DAYS: int = Field(14, gt=0)
    PROFILE_COMPLETION_MIN_ACCOUNT_AGE_DAYS: int = Field(7, ge=0)
    PROFILE_COMPLETION_THRESHOLD: int = Field(70, ge=0, le=100)

    # Outbound queue
    OUTBOUND_BATCH_SIZE: int = Field(50, gt=0)
    OUTBOUND_SUB_BATCH_SIZE: int = Field(10, gt=0)
    OUTBOUND_BATCH_DELAY_MS: int = Field(1000, ge=0)
    OUTBOUND_MAX_RETRIES: int = Field(3, ge=0)
    OUTBOUND_BACKOFF_BASE_MINUTES: int = Field(1, gt=0)
    DIGEST_LOOKAHEAD_DAYS: int = Field(7, gt=0)

    # Retention
    RECORD_RETENTION_DAYS: int = Field(90, gt=0)
    OUTBOUND_RETENTION_DAYS: int = Field(30, gt=0)

    @field_validator(
        "EVENT_REMINDER_OFFSETS",
        "REGISTRATION_DEADLINE_OFFSETS",
        "PAYMENT_REMINDER_OFFSETS",
        "CHECKIN_REMINDER_OFFSETS",
    )
    @classmethod
    def validate_offsets(cls, v: str) -> str:
        parse_offsets(v)
        return v

    @field_validator(
        "EVENT_REMINDER_TOLERANCE_MINUTES",
        "REGISTRATION_DEADLINE_TOLERANCE_MINUTES",
        "PAYMENT_REMINDER_TOLERANCE_MINUTES",
        "CHECKIN_REMINDER_TOLERANCE_MINUTES",
    )
    @classmethod
    def validate_tolerance(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("tolerance must be a positive number of minutes")
        return v

    @field_validator("ENTITY_STORE_CLASS", "CHANNEL_TRANSPORT_CLASS")
    @classmethod
    def validate_class_path(cls, v: str) -> str:
        if v and (":" not in v or not all(v.split(":", 1))):
            raise ValueError(f"expected 'package.module:ClassName', got {v!r}")
        return v

    @property
    def dispatch_concurrency(self) -> int:
        if self.DISPATCH_CONCURRENCY:
            return self.DISPATCH_CONCURRENCY
        return max(1, self.NOTIFICATION_BATCH_SIZE // 10)

    @property
    def redis_url(self) -> str:
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
