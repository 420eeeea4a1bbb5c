"""
Application configuration using Pydantic Settings
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./warehouse.db"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Pipeline configuration (survivorship, thresholds, sentinels, schemas)
    PIPELINE_CONFIG_PATH: str = "config/warehouse.yaml"

    # ETL execution
    ETL_BATCH_SIZE: int = 500
    MAX_RETRIES: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 0.1
    OPERATION_TIMEOUT_SECONDS: float = 30.0
    STAGE_CONCURRENCY: int = 8
    FACT_WRITE_CONCURRENCY: int = 4

    # Scheduler
    SCHEDULER_ENABLED: bool = False
    SCHEDULER_INTERVAL_MINUTES: int = 30
    SCHEDULER_SOURCES_PATH: Optional[str] = None


settings = Settings()
