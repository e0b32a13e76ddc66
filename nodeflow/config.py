"""
Configuration settings for the NodeFlow engine.
"""

import logging
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings with environment variable support (``NODEFLOW_`` prefix)."""

    # Application
    APP_NAME: str = "NodeFlow"
    APP_VERSION: str = "1.0.0"

    # Node defaults
    DEFAULT_MAX_ATTEMPTS: int = 1
    DEFAULT_RETRY_WAIT: float = 0.0  # Seconds

    # Flow defaults
    MAX_STEPS: Optional[int] = None  # None = unbounded
    PARALLEL_LIMIT: Optional[int] = None  # None = no concurrency cap
    EXECUTION_TIMEOUT: Optional[float] = None  # Seconds, async runs only

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="NODEFLOW_",
        case_sensitive=True,
        extra="ignore",
    )


# Global settings instance
settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for scripts that embed the engine."""
    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL).upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
