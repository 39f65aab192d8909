"""
Configuration management for the questforge session generator
"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # LLM Provider Configuration
    model_provider: Literal["openai", "generic"] = Field(default="openai")
    openai_api_base: str = Field(default="https://api.openai.com/v1")
    openai_api_key: str = Field(default="")
    model_name: str = Field(default="gpt-4o-mini")
    temperature: float = Field(default=0.8, ge=0.0, le=2.0)

    # Provider gateway: per-call timeout, retry schedule and admission gate
    provider_timeout: float = Field(
        default=60.0, gt=0, description="Seconds allowed for a single provider call"
    )
    provider_max_attempts: int = Field(
        default=3, ge=1, description="Total attempts for transient provider failures"
    )
    provider_backoff_base: float = Field(
        default=0.5, ge=0, description="First backoff delay in seconds"
    )
    provider_backoff_max: float = Field(default=8.0, ge=0)
    provider_concurrency: int = Field(
        default=4,
        ge=1,
        description="Outstanding provider calls allowed across all sessions",
    )

    # Pipeline
    stage_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per stage, counting provider and validation failures",
    )
    event_buffer_size: int = Field(default=200, ge=1)
    event_buffer_sessions: int = Field(default=500, ge=1)

    # Database Configuration
    database_path: str = Field(
        default="data/questforge.db",
        description="SQLite database file path for storing game sessions",
    )

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    debug: bool = Field(default=False)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )
    log_file: Optional[str] = Field(default=None)

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
