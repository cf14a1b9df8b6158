import os
from enum import StrEnum, auto
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class ProgressChannels(StrEnum):
    REDIS = auto()
    MEMORY = auto()  # single process only (dev, tests)


class AudioStorages(StrEnum):
    LOCAL = auto()
    S3 = auto()


class Settings(BaseSettings):
    sqlalchemy_echo: bool = False
    db_drop_and_recreate: bool = False  # If True: drops all tables and recreates (dev mode)

    database_url: str
    redis_url: str = "redis://localhost:6379/0"
    cors_origins: list[str] = []
    admin_user_ids: list[str] = []  # may list and cancel any user's jobs

    progress_channel: ProgressChannels = ProgressChannels.REDIS

    # Retry policy
    default_max_retries: int = 3
    retry_base_delay_seconds: float = 30.0  # delay before the first retry, doubled per attempt
    retry_max_delay_seconds: float = 900.0

    # Worker lease: a processing job without a progress write for this long is reclaimable
    lease_seconds: int = 300
    reaper_interval_seconds: int = 30
    worker_poll_interval_seconds: float = 2.0
    worker_max_concurrent_jobs: int = 2

    audio_storage: AudioStorages = AudioStorages.LOCAL
    audio_storage_path: Path = Path("data/renders")
    public_base_url: str = "/renders"
    s3_endpoint_url: str | None = None
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    s3_public_bucket: str = "public-audio"
    s3_private_bucket: str = "private-audio"

    openai_api_key: str | None = None
    elevenlabs_api_key: str | None = None
    tts_request_timeout_seconds: float = 120.0
    # background tracks and uploaded voices must live under one of these URLs; empty rejects all remote assets
    asset_base_urls: list[str] = []

    log_dir: Path = Path("logs")
    metrics_db_path: Path | None = None

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=[os.getenv("ENV_FILE", ""), ".env"],
        extra="ignore",
        env_nested_delimiter="__",
    )


def get_settings() -> Settings:  # ty: ignore[invalid-return-type]
    """This is only used for dependency references, see __init__.py:

    app.dependency_overrides[get_settings] = lambda: settings
    """
    ...
