from typing import List, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "Cohort Scheduler"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api/v1"
    WEBHOOK_PREFIX: str = "/webhooks"
    """Pydantic v2 doesn't support parsing List[str] from a plain comma-separated string by default anymore."""
    ALLOWED_HOSTS: Union[str, List[str]] = "http://localhost:3000"
    LOG_LEVEL: str = ""

    # Database
    DATABASE_URL: str = "sqlite:///./cohort_scheduler.db"

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # Email delivery provider (SendGrid)
    SENDGRID_API_KEY: str = "<your-sendgrid-api-key>"
    SENDGRID_BASE_URL: str = "https://api.sendgrid.com/v3"
    SENDGRID_TIMEOUT: float = 10.0
    SENDER_EMAIL: str = "no-reply@example.com"
    DELIVERY_WEBHOOK_SECRET: str = ""

    # Delivery retry policy
    DELIVERY_MAX_ATTEMPTS: int = 5
    DELIVERY_RETRY_BASE_DELAY: int = 60  # seconds
    DELIVERY_RETRY_MAX_DELAY: int = 3600  # seconds
    DELIVERY_LOOKAHEAD_HOURS: int = 24

    @field_validator("ALLOWED_HOSTS", mode="before")
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if not v:
            return []
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        return v

    @field_validator("DELIVERY_MAX_ATTEMPTS")
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("DELIVERY_MAX_ATTEMPTS must be at least 1")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
