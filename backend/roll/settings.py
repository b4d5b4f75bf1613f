"""Settings for the Roll social core."""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
    if env_names:
        alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
        return Field(default=default, validation_alias=alias)
    return Field(default=default)


class Settings(BaseSettings):
    redis_url: str = _env_field("redis://localhost:6379/0", "REDIS_URL")
    # "memory" keeps documents in-process (tests, local dev); "redis" uses redis_url
    store_backend: str = _env_field("memory", "STORE_BACKEND")
    store_key_prefix: str = _env_field("roll", "STORE_KEY_PREFIX")
    transaction_max_attempts: int = _env_field(5, "TRANSACTION_MAX_ATTEMPTS")

    object_store_backend: str = _env_field("memory", "OBJECT_STORE_BACKEND")
    object_base_url: str = _env_field("http://localhost:8001/objects", "OBJECT_BASE_URL")
    s3_bucket: Optional[str] = _env_field(None, "S3_BUCKET")
    s3_region: Optional[str] = _env_field(None, "S3_REGION", "AWS_REGION")
    s3_url_expires_seconds: int = _env_field(3600, "S3_URL_EXPIRES_SECONDS")

    # Detail hydration fan-out (friends list, incoming requests, feed)
    hydration_concurrency: int = _env_field(16, "HYDRATION_CONCURRENCY")
    hydration_timeout_seconds: float = _env_field(10.0, "HYDRATION_TIMEOUT_SECONDS")
    feed_window_days: int = _env_field(7, "FEED_WINDOW_DAYS")
    upload_concurrency: int = _env_field(4, "UPLOAD_CONCURRENCY")

    audit_streams_enabled: bool = _env_field(True, "AUDIT_STREAMS_ENABLED")

    environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
    obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
    obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")
    service_name: str = _env_field("roll-social", "SERVICE_NAME")
    git_commit: str = _env_field("unknown", "GIT_COMMIT", "COMMIT_SHA", "SOURCE_VERSION")

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("store_backend", "object_store_backend", mode="before")
    def _normalise_backend(cls, value):  # type: ignore[override]
        if value in (None, ""):
            return "memory"
        return str(value).strip().lower()

    @field_validator("transaction_max_attempts", "hydration_concurrency", "upload_concurrency")
    def _at_least_one(cls, value: int) -> int:  # type: ignore[override]
        return max(1, int(value))


def _normalise_level(level: str) -> str:
    return level.upper()


settings = Settings()
settings.obs_log_level = _normalise_level(settings.obs_log_level)
