"""Engine configuration with environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Settings loaded from DOREEN_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DOREEN_", env_file=".env", extra="ignore"
    )

    # Relaxes "unknown value" checks during bulk ticket import. Never on by default.
    importing_tickets: bool = False

    # Monetary input parsing
    decimal_separator: str = "."
    thousands_separator: str = ","

    # Priority slider
    default_priority: int = 3
    max_priority: int = 5

    # Display formats (strftime); timestamps are shown in UTC
    date_format: str = "%Y-%m-%d"
    timestamp_format: str = "%Y-%m-%d %H:%M"


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    return EngineSettings()
