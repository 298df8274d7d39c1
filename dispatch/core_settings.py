from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional

class Settings(BaseSettings):
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "meddelivery"
    POSTGRES_USER: str = "meddelivery"
    POSTGRES_PASSWORD: str = "meddelivery"
    # Full SQLAlchemy URL; overrides the POSTGRES_* parts when set (tests use sqlite)
    DATABASE_URL: Optional[str] = None

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"

    PRESCRIPTIONS_SERVICE_URL: str = "http://prescriptions:8000"
    PRESCRIPTIONS_TIMEOUT: float = 5.0

    SERVICE_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"
    RUN_MIGRATIONS: bool = True

    # Dispatch tuning
    ASSIGN_IMMEDIATE_RETRIES: int = 3
    RETRY_BACKOFF_BASE_SECONDS: float = 30.0
    RETRY_BACKOFF_MAX_SECONDS: float = 300.0
    DISPATCH_MAX_WAIT_SECONDS: float = 900.0
    RETRY_QUEUE_MAX_SIZE: int = 500
    TIMEOUT_REPORT_LOG_SIZE: int = 200
    SWEEP_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: float = 15.0
    COURIER_HEARTBEAT_STALE_SECONDS: float = 120.0
    ACCEPTANCE_WINDOW_SECONDS: float = 180.0
    DECLINE_EXCLUSION_THRESHOLD: int = 2
    DECLINE_EXCLUSION_SECONDS: float = 600.0
    DEFAULT_COURIER_CAPACITY: int = 1
    COURIER_SPEED_KMH: float = 25.0

    class Config:
        env_file = ".env"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

@lru_cache
def get_settings() -> Settings:
    return Settings()
