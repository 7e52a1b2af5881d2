"""Typed configuration loaded from the environment / .env via pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Shared secret for the x-api-key header; empty means nothing is accepted
    api_key: str = ""

    # Workers AI REST endpoint
    cf_account_id: str = ""
    cf_api_token: str = ""
    ai_base_url: str = "https://api.cloudflare.com/client/v4"

    # Deadlines and limits
    ai_timeout_ms: int = Field(default=60_000, gt=0)
    fetch_timeout_ms: int = Field(default=15_000, gt=0)
    max_image_bytes: int = Field(default=10 * 1024 * 1024, gt=0)

    # Person detection
    detection_model: str = "@cf/facebook/detr-resnet-50"
    vision_model: str = "@cf/meta/llama-3.2-11b-vision-instruct"
    bbox_models: List[str] = ["@cf/facebook/detr-resnet-50"]
    default_threshold: float = Field(default=0.7, ge=0, le=1)
    default_min_area_ratio: float = Field(default=0.2, ge=0, le=1)
    vision_max_tokens: int = Field(default=64, gt=0)

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
