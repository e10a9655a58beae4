"""
Application configuration via environment variables (12-factor).
Pydantic BaseSettings validates and coerces all values at startup.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # ------------------------------------------------------------------
    # Embeddings (any OpenAI-compatible /v1/embeddings endpoint)
    # ------------------------------------------------------------------
    embedding_base_url: str = "http://localhost:1234/v1"
    embedding_api_key:  str = "not-needed"   # local servers ignore the key
    embedding_model:    str = "text-embedding-nomic-embed-text-v2-moe"

    embedding_batch_size:       int   = 100
    embedding_max_concurrency:  int   = 4
    embedding_max_retries:      int   = 3
    embedding_retry_base_delay: float = 2.0    # seconds, doubles each retry
    embedding_retry_max_delay:  float = 60.0
    embedding_timeout_seconds:  float = 30.0

    # ------------------------------------------------------------------
    # Extraction / OCR
    # ------------------------------------------------------------------
    ocr_dpi: int = 300
    ocr_primary_languages:  str = "ita+eng+fra+deu+spa"
    ocr_fallback_languages: str = "ita+eng"
    ocr_cancel_check_stride: int = 3          # poll the job registry every N pages
    ocr_consecutive_failure_warning: int = 3
    ocr_max_failed_page_ratio: float = 0.5    # above this the document hard-fails

    # Below this length the corruption heuristic is not applied
    quality_min_length: int = 100

    # ------------------------------------------------------------------
    # Chunking
    # ------------------------------------------------------------------
    # "" = boundary strategy; "semantic" | "token_approx" force a strategy
    chunking_strategy: str = ""
    chunking_cancel_check_stride: int = 25

    # ------------------------------------------------------------------
    # Caches and job registry
    # ------------------------------------------------------------------
    embedding_cache_ttl_seconds:   float = 3600.0
    cache_sweep_interval_seconds:  float = 300.0
    job_grace_period_seconds:      float = 60.0

    # ------------------------------------------------------------------
    # Uploads and persistence
    # ------------------------------------------------------------------
    max_upload_bytes:          int = 200 * 1024 * 1024   # 200 MB
    stream_progress_min_bytes: int = 10 * 1024 * 1024    # 10 MB
    context_dir: str = "context"
    base_context_dir: str = "context-base"   # shared files every caller sees

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    app_env: str = "development"   # development | staging | production
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000"]

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
