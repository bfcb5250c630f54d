"""Application settings."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]

DispatchMode = Literal["inline", "thread", "http"]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "batchchain"
    log_level: str = "INFO"
    # Empty database URL keeps tasks in process memory (local runs only).
    database_url: str = ""
    mirror_table: str = "batch_assets"
    store_max_retries: int = Field(default=2, ge=0)
    store_backoff_s: float = Field(default=0.5, ge=0.0)

    dispatch_mode: DispatchMode = "thread"
    dispatch_base_url: str = "http://127.0.0.1:8000"
    dispatch_timeout_s: float = Field(default=2.0, ge=0.1)
    dispatch_workers: int = Field(default=4, ge=1)

    provider_api_key: str = ""
    provider_model: str = "gpt-image-1"
    provider_base_url: str = "https://api.openai.com/v1"
    provider_quality: str = "high"
    provider_timeout_s: float = Field(default=300.0, ge=1.0)
    reference_timeout_s: float = Field(default=30.0, ge=0.5)

    artifact_root: Path = PROJECT_ROOT / "data" / "artifacts"
    artifact_base_url: str = "http://127.0.0.1:8000/artifacts"
    artifact_bucket: str = "images"

    model_config = SettingsConfigDict(
        env_prefix="BATCHCHAIN_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_provider_api_key(self) -> str:
        return self.provider_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """Install a basic root handler once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level.upper(),
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        return
    root.setLevel(level.upper())
