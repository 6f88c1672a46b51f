"""Application settings loaded from environment variables via pydantic-settings.

# ─── HOW SETTINGS WORK ────────────────────────────────────────────────
#
# pydantic-settings reads configuration from (highest priority first):
#
#   1. Environment variables  e.g. POOL_MAX_CONNECTIONS=40
#   2. .env file              key=value lines in the project root
#   3. Keyword arguments      what load_settings() passes from config.yaml
#   4. The defaults below
#
# Field names map to env vars by upper-casing: ``queue_concurrency``
# becomes ``QUEUE_CONCURRENCY``.  Every field is prefixed with the
# component it configures so config.yaml sections flatten onto them
# (``pool: {max_connections: 20}`` -> ``pool_max_connections``).
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


class Settings(BaseSettings):
    """docrag settings.

    Environment variables override defaults. Loaded from .env file when present.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # === Application ===
    app_env: str = "development"
    log_level: str = "INFO"
    log_json: bool = False

    # === Document store (SQLite via aiosqlite) ===
    database_path: str = "data/docrag.db"

    # === Connection pool ===
    pool_max_connections: int = 20
    pool_idle_timeout: float = 300.0
    pool_acquire_timeout: float = 10.0
    pool_sweep_interval: float = 60.0
    pool_retry_attempts: int = 3
    pool_retry_delay: float = 1.0

    # === Cache ===
    # "memory" uses cachetools in-process; "redis" needs cache_redis_url.
    cache_backend: Literal["memory", "redis"] = "memory"
    cache_redis_url: str = "redis://localhost:6379/0"
    cache_max_size: int = 10_000
    cache_max_key_length: int = 250
    cache_default_ttl: int = 3600
    cache_embedding_ttl: int = 7 * 24 * 3600
    cache_search_ttl: int = 1800
    cache_document_ttl: int = 6 * 3600

    # === Job queue ===
    queue_concurrency: int = 5
    queue_poll_interval: float = 1.0
    queue_retry_delay: float = 1.0
    queue_max_retry_delay: float = 300.0
    queue_max_attempts: int = 3
    queue_job_timeout: float = 300.0
    queue_job_ttl: float = 24 * 3600
    queue_cleanup_interval: float = 300.0
    # Jobs waiting longer than this jump ahead of higher lanes.
    queue_starvation_threshold: float = 300.0

    # === Worker pool ===
    worker_max_workers: int = 4
    worker_kind: Literal["process", "thread"] = "process"
    worker_task_timeout: float = 300.0
    worker_result_ttl: float = 300.0

    # === Chunking ===
    chunking_size: int = 400
    chunking_overlap: int = 40
    chunking_min_tokens: int = 5
    # "tiktoken" counts cl100k_base tokens; "whitespace" counts words.
    chunking_tokenizer: Literal["tiktoken", "whitespace"] = "tiktoken"
    chunking_encoding: str = "cl100k_base"
    chunking_offload: bool = False

    # === Embedding ===
    openai_api_key: str = ""
    openai_base_url: str = ""
    embedding_model: str = "text-embedding-3-small"
    embedding_dimension: int = 1536
    embedding_batch_size: int = 5
    embedding_batch_delay: float = 1.0
    embedding_call_timeout: float = 60.0
    embedding_batch_timeout: float = 120.0
    embedding_max_attempts: int = 3
    embedding_retry_delay: float = 1.0

    # === Ingestion ===
    ingestion_insert_batch_size: int = 5
    ingestion_insert_batch_delay: float = 0.5
    ingestion_stuck_after: float = 600.0
    ingestion_max_upload_bytes: int = 10 * 1024 * 1024
    ingestion_min_content_chars: int = 100
    ingestion_allowed_extensions: list[str] = [".md", ".markdown", ".txt"]

    # === Retrieval ===
    retrieval_similarity_threshold: float = 0.25
    retrieval_max_chunks: int = 8
    retrieval_min_chunk_length: int = 30
    retrieval_overfetch_factor: int = 2
    retrieval_offload_ranking: bool = False
    retrieval_batch_size: int = 5

    # === Object storage ===
    storage_root: str = "data/uploads"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Env beats init kwargs so YAML values passed by the loader stay
        # overridable at deploy time.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    def pool_options(self) -> dict[str, Any]:
        """Keyword arguments for :class:`~docrag.providers.database.connection_pool.ConnectionPool`."""
        return {
            "max_connections": self.pool_max_connections,
            "idle_timeout": self.pool_idle_timeout,
            "acquire_timeout": self.pool_acquire_timeout,
            "sweep_interval": self.pool_sweep_interval,
            "retry_attempts": self.pool_retry_attempts,
            "retry_delay": self.pool_retry_delay,
        }
