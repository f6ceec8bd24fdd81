from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from decimal import Decimal
from pydantic import field_validator

class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'billar_user'
    POSTGRES_PASSWORD: str = 'billar_pass'
    POSTGRES_DB: str = 'billar_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = None  # Sobrescribe la URL completa (tests, SQLite)

    # Redis settings
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # JWT settings
    APP_SECRET_STRING: str = 'your-super-secret-key-here-change-in-production-2024'
    ALGORITHM: str = 'HS256'
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Sesiones de mesa
    STALE_SESSION_HOURS: int = 12
    DEFAULT_MAINTENANCE_THRESHOLD_HOURS: int = 500
    REQUIRE_WRITE_OFF_BEFORE_REUSE: bool = False
    AUDIT_SWEEP_INTERVAL_SECONDS: float = 900.0

    # Cierre Z (arqueo ciego)
    CASH_ALERT_TOLERANCE: Decimal = Decimal("0")
    BALANCE_HISTORY_LIMIT: int = 30

    # Pasarela de pagos
    PAYMENT_WEBHOOK_SECRET: str = 'change-me-webhook-secret'
    PAYMENT_BASE_URL: str = 'https://pay.billar360.local/checkout'

    # Pagination
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", "REQUIRE_WRITE_OFF_BEFORE_REUSE", mode="before")
    @classmethod
    def parse_bool(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("CASH_ALERT_TOLERANCE")
    @classmethod
    def validate_tolerance(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("CASH_ALERT_TOLERANCE no puede ser negativa")
        return v

settings = Settings()
