from datetime import timedelta, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./fiscal_engine.db"

    # Database Connection Pool Settings (ignored for SQLite)
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # App Settings
    APP_NAME: str = "Fiscal Document Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Fiscal rules
    SIMPLIFIED_INVOICE_CEILING: Decimal = Decimal("25000.00")
    SEQUENCE_PADDING: int = 6
    SEQUENCE_MAX_RETRIES: int = 5
    DEFAULT_CURRENCY: str = "AOA"
    COUNTRY_CODE: str = "AO"
    DEFAULT_CITY: str = "Luanda"
    # Issue dates are business dates in local time (WAT, UTC+1)
    BUSINESS_UTC_OFFSET_HOURS: int = 1

    # SAF-T software identification
    SAFT_AUDIT_FILE_VERSION: str = "1.01_01"
    SAFT_PRODUCT_COMPANY_TAX_ID: str = "5417082695"
    SAFT_SOFTWARE_CERTIFICATE_NUMBER: str = "31.1/AGT20"
    SAFT_PRODUCT_ID: str = "Fiscal Document Engine"
    SAFT_PRODUCT_VERSION: str = "1.0.0"

    # Vendor signing key (PEM, or base64-encoded PEM for single-line env vars)
    SIGNING_PRIVATE_KEY: Optional[str] = None
    SIGNING_PRIVATE_KEY_B64: Optional[str] = None
    SIGNING_PUBLIC_KEY: Optional[str] = None
    SIGNING_PUBLIC_KEY_B64: Optional[str] = None
    SIGNING_KEY_VERSION: str = "1"

    # Encryption of stored organization keys
    ENCRYPTION_SECRET: Optional[str] = None
    ENCRYPTION_SALT: str = "fiscal_engine_salt"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        """Accept log levels in any case."""
        return str(v).upper() if v else "INFO"

    @property
    def business_timezone(self) -> timezone:
        return timezone(timedelta(hours=self.BUSINESS_UTC_OFFSET_HOURS))

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
