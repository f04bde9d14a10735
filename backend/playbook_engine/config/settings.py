"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "scenario_playbooks_dev"

    # Persistence backend: "mongo" or "memory"
    persistence_backend: str = "mongo"

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"
    log_to_files: bool = True
    log_file_max_mb: int = 10
    log_file_backups: int = 5

    # Orchestrator
    orchestrator_worker_threads: int = 8
    default_max_concurrency: int = 4
    cas_max_retries: int = 5
    dispatch_timeout_minutes: Optional[int] = None  # None = wait indefinitely
    stalled_dispatch_minutes: int = 15

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = 15

    # CORS - set to "*" to allow all origins
    cors_origins: str = "*"

    # Environment
    environment: str = "development"
    debug: bool = True

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string to list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def uses_memory_store(self) -> bool:
        """Check if the in-process store is configured"""
        return self.persistence_backend.lower() == "memory"

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
