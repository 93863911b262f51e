from pydantic_settings import BaseSettings
from pydantic import field_validator
from decimal import Decimal
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./fuelops.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # JWT Settings (tokens are issued by the identity service, only verified here)
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"

    # App Settings
    APP_NAME: str = "FuelOps Commission Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Rate resolution
    SYSTEM_DEFAULT_COMMISSION_RATE: Decimal = Decimal("0.05")  # Per litre, used when no override/OMC default
    ABSOLUTE_RATE_MODE: bool = False  # Allow rates above 1 (absolute currency per unit)

    # Lifecycle policy
    APPROVAL_REQUIRED_FOR_PAYMENT: bool = False  # If True, records must be approved before payment

    # Progressive accrual
    TREND_DEAD_ZONE: Decimal = Decimal("0.10")  # +/-10% change is reported as neutral

    # Calculation runtime
    UPSTREAM_FETCH_TIMEOUT_SECONDS: float = 15.0  # Per-source ledger fetch timeout
    CALCULATION_MAX_CONCURRENCY: int = 4  # Stations calculated in parallel per batch

    # Scheduled auto-calculation
    AUTO_CALCULATION_ENABLED: bool = False
    AUTO_CALCULATION_HOUR: int = 1
    AUTO_CALCULATION_MINUTE: int = 30
    SCHEDULER_TIMEZONE: str = "Africa/Accra"

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return list(self.CORS_ORIGINS)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
