"""
Configuration management for dynamic-record.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Library settings."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Connection routing
    database_url_template: str = Field(
        default="sqlite:///./{identity}.db",
        description="Database URL in which the placeholder is replaced by the connection identity.",
    )
    connection_placeholder: str = Field(default="{identity}")
    default_connection_identity: Optional[str] = Field(default=None)

    # Engine
    sql_echo: bool = Field(default=False)
    pool_size: int = Field(default=5)
    max_overflow: int = Field(default=10)
    pool_recycle: int = Field(default=3600)

    # Query composition
    default_table_alias: str = Field(default="t")
    default_join_type: str = Field(default="LEFT OUTER JOIN")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get library settings."""
    return settings
