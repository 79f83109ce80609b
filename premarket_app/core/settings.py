import logging
import os
from typing import List

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv()

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    PROJECT_NAME: str = "PRE-MARKET REFERRAL PLATFORM"
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL", "sqlite+aiosqlite:///./premarket.db"
    )
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    JWT_SECRET_KEY: str | None = os.getenv("JWT_SECRET_KEY")
    ALGORITHM: str = os.getenv("ALGORITHM", "HS256")
    FRONTEND_URL: str | None = os.getenv("FRONTEND_URL")
    ALLOWED_HOSTS_RAW: str = os.getenv("ALLOWED_HOSTS", "")

    STRIPE_SECRET_KEY: str | None = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET: str | None = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    PAYMENT_GATEWAY_TIMEOUT_SECONDS: float = 15.0
    PAYMENT_GATEWAY_MAX_RETRIES: int = 2

    GRANT_ACCESS_CURRENCY: str = "USD"
    GRANT_ACCESS_MAX_PAYMENT_FAILURES: int = 3

    EMAIL_USER: str | None = os.getenv("EMAIL_USER")
    EMAIL_PASSWORD: str | None = os.getenv("EMAIL_PASSWORD")
    EMAIL_SERVER: str | None = os.getenv("EMAIL_SERVER")
    EMAIL_PORT: int = 587
    EMAIL_USE_TLS: bool = True
    EMAIL_TIMEOUT_SECONDS: float = 10.0
    EMAIL_ENABLED: bool = True

    SWEEP_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 300
    SWEEP_HARD_RETIRE_DAYS: int = 30

    RABBITMQ_URL: str = os.getenv("RABBITMQ_URL", "")
    RABBITMQ_MAIN_EXCHANGE: str = "premarket_events"

    @property
    def ALLOWED_HOSTS(self) -> List[str]:
        items = [v.strip() for v in self.ALLOWED_HOSTS_RAW.split(",") if v.strip()]
        valid_items = [
            v for v in items if v.startswith("http://") or v.startswith("https://")
        ]
        if items and not valid_items:
            logger.warning("No valid URLs found in ALLOWED_HOSTS")
        return valid_items

    class Config:
        env_file = ".env"
        extra = "ignore"
        case_sensitive = False


settings = Settings()
