"""Engine Settings - Central Configuration"""
from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Datastore: "memory" for embedding/tests, "mongo" for deployments
    datastore_backend: str = "memory"

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "caseflow_dev"

    # Workflow definitions (one file per workflow name)
    definitions_path: str = "./definitions"

    # Execution
    fire_max_attempts: int = 3  # read-evaluate-write cycles before ConcurrentModificationError
    persistence_retries: int = 1  # extra commit attempts after a datastore failure
    persistence_timeout_seconds: Optional[float] = 5.0

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"
    log_to_file: bool = False

    # Environment
    environment: str = "development"

    @property
    def uses_mongo(self) -> bool:
        """Check if the Mongo datastore is configured"""
        return self.datastore_backend.lower() == "mongo"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
