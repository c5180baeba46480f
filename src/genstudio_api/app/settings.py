"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "genstudio"
    endpoint: str = ""
    api_key: str = ""
    image_model: str = "gpt-image-1"
    video_model: str = "sora-2"
    default_image_size: str = "1024x1024"
    default_video_size: str = "720x1280"
    default_video_seconds: int = Field(default=4, ge=1)
    request_timeout_s: float = Field(default=120.0, gt=0)
    poll_interval_s: float = Field(default=3.0, gt=0)
    # 0 disables the bound and polls until a terminal state.
    poll_timeout_s: float = Field(default=900.0, ge=0)
    database_url: str = ""
    media_dir: Path = Path("media")
    media_base_url: str = "/media"
    default_owner_id: str = "default"
    history_page_size: int = Field(default=50, ge=1, le=100)

    model_config = SettingsConfigDict(
        env_prefix="GENSTUDIO_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_endpoint(self) -> str:
        return (self.endpoint or os.getenv("AZURE_OPENAI_ENDPOINT", "")).rstrip("/")

    def resolved_api_key(self) -> str:
        return self.api_key or os.getenv("AZURE_OPENAI_API_KEY", "")

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
