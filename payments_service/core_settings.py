from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "maison"
    POSTGRES_USER: str = "maison"
    POSTGRES_PASSWORD: str = "maison"
    # Overrides the POSTGRES_* composition when set (tests use sqlite+aiosqlite)
    DATABASE_URL: Optional[str] = None
    RUN_MIGRATIONS: bool = False

    # PayPal defaults, used until an admin stores settings in the database
    PAYPAL_ENABLED: bool = False
    PAYPAL_ENVIRONMENT: str = "sandbox"
    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_CLIENT_SECRET: str = ""
    PAYPAL_WEBHOOK_ID: str = ""
    PAYPAL_REQUIRE_WEBHOOK_SIGNATURE: bool = False
    PAYPAL_TIMEOUT_SECONDS: float = 15.0
    PAYPAL_RETURN_URL: str = "http://localhost:8080/payment/return"
    PAYPAL_CANCEL_URL: str = "http://localhost:8080/checkout/cancel"
    BRAND_NAME: str = "Maison Darin"

    SITE_CURRENCY: str = "SAR"
    SETTLEMENT_CURRENCY: str = "USD"
    EXCHANGE_RATE_API_URL: str = "https://api.exchangerate-api.com/v4/latest"
    EXCHANGE_RATE_TIMEOUT_SECONDS: float = 5.0
    ALLOW_FALLBACK_RATES: bool = True

    WEBHOOK_LOOKUP_ATTEMPTS: int = 3
    WEBHOOK_LOOKUP_DELAY_SECONDS: float = 0.5

    EMAIL_RELAY_URL: Optional[str] = None
    DEFAULT_LOCALE: str = "ar"

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
