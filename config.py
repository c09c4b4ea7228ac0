"""Application configuration."""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

APP_DIR = Path(__file__).resolve().parent


class Settings(BaseSettings):
    """Runtime settings, read from the environment or a .env file."""

    data_dir: Path = Field(APP_DIR / "data", alias="DATA_DIR")
    database_url: Optional[str] = Field(None, alias="DATABASE_URL")
    upload_dir: Path = Field(APP_DIR / "uploads", alias="UPLOAD_DIR")
    # Whole-document JSON store (db.json), imported once into an empty store
    legacy_db_file: Optional[Path] = Field(None, alias="LEGACY_DB_FILE")
    base_url: str = Field("", alias="BASE_URL")

    max_upload_bytes: int = Field(100 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")
    daily_upload_limit: int = Field(200, alias="DAILY_UPLOAD_LIMIT")
    thumb_size: int = Field(400, alias="THUMB_SIZE")
    thumb_quality: int = Field(80, alias="THUMB_QUALITY")

    session_ttl_hours: int = Field(24 * 7, alias="SESSION_TTL_HOURS")
    session_cookie: str = Field("imgdrop_session", alias="SESSION_COOKIE")

    worker_threads: int = Field(4, alias="WORKER_THREADS")
    worker_queue: int = Field(16, alias="WORKER_QUEUE")

    log_level: str = Field("INFO", alias="LOG_LEVEL")
    port: int = Field(7878, alias="PORT")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def sqlite_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'imgdrop.db'}"

    @property
    def thumb_dir(self) -> Path:
        return self.upload_dir / "thumbs"

    @property
    def public_base_url(self) -> str:
        return self.base_url.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    return Settings()
