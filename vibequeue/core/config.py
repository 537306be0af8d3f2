from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="allow",  # variáveis a mais no .env não quebram o boot
    )

    # app
    log_level: str = "INFO"
    log_file: Optional[str] = None  # o terminal pertence ao renderer
    app_env: str = "dev"
    host: str = "127.0.0.1"
    port: int = 8000

    # cache de artefatos (content-addressed)
    cache_dir: str = "./.cache/songs"

    # bins
    ytdlp_bin: str = "yt-dlp"
    ytdlp_timeout_s: int = 120

    # fetch pipeline
    fetch_concurrency: int = 2
    fetch_backlog: int = 32
    fetch_timeout_s: float = 180.0
    fetch_retry_delay_s: float = 1.0

    # playback
    playback_tick_s: float = 0.1
    prefetch_threshold_s: float = 30.0
    prefetch_count: int = 2
    visualizer_capacity: int = 64
    finished_capacity: int = 50
    default_volume: int = 70
    audio_device: Optional[str] = None

    # openai
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"

    # dispatcher
    dispatch_timeout_s: float = 45.0
    max_search_count: int = 5
    replace_queue_count: int = 2
    context_title_chars: int = 60
    context_max_queue: int = 20

    # renderer
    ui_tick_s: float = 0.2


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
