"""Process configuration using Pydantic BaseSettings.

Every field can be overridden by the upper-cased environment variable of the
same name or from ``.env``.  :func:`get_settings` builds a fresh object on
each call, so tests can patch the environment without reloading modules.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings for the API process."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    api_key: str | None = Field(None, description="Shared secret expected in X-API-Key")
    elasticsearch_url: str = Field("http://localhost:9200", description="Elasticsearch endpoint")
    elasticsearch_api_key: str | None = Field(None, description="Elasticsearch API key")
    redis_url: str = Field("redis://localhost:6379/0", description="Redis connection URL")
    log_level: str = Field("INFO", description="Root log level")
    candidate_timeout_seconds: float = Field(
        0.3, gt=0, description="Per-generator time budget for candidate generation"
    )
    realtime_cf_updates: bool = Field(
        True, description="Queue similarity recomputation when interactions are recorded"
    )

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()


def get_settings() -> Settings:
    return Settings()
