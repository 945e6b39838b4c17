"""Application configuration settings."""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_DATA_DIR = Path(__file__).resolve().parent.parent / "knowledge" / "data"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "CVChatRAG"
    app_version: str = "0.1.0"
    debug: bool = False

    # Knowledge base
    knowledge_base_path: Path = _DATA_DIR / "questions.json"
    cv_data_path: Optional[Path] = None

    # Chunking
    rag_chunk_tokens: int = 500
    rag_chunk_overlap_tokens: int = 50

    # Retrieval (tuned for bge-small / text-embedding-3-small, re-tune per model)
    rag_min_score: float = 0.6
    rag_max_results: int = 5
    rag_weak_score_buffer: float = 1.1
    rag_short_message_len: int = 10
    rag_summary_max_chars: int = 300

    # Embeddings
    embedding_provider: Optional[Literal["openai", "google"]] = None
    openai_api_key: Optional[str] = None
    openai_embedding_model: str = "text-embedding-3-small"
    google_ai_api_key: Optional[str] = None
    google_embedding_model: str = "text-embedding-004"
    embedding_batch_size: int = 20
    embedding_fallback_dim: int = 128
    embedding_timeout_seconds: float = 10.0

    # Embedding cache
    embedding_cache_backend: Literal["memory", "redis"] = "memory"
    embedding_cache_prefix: str = "rag-embedding:"
    redis_url: str = "redis://localhost:6379/0"

    # Observability
    metrics_backend: str = "inmemory"  # "inmemory" | "prometheus"

    @field_validator("rag_chunk_tokens", "embedding_batch_size", "embedding_fallback_dim")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @field_validator("rag_chunk_overlap_tokens")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"must be >= 0, got {v}")
        return v

    @field_validator("rag_min_score")
    @classmethod
    def _score_range(cls, v: float) -> float:
        if not -1.0 <= v <= 1.0:
            raise ValueError(f"rag_min_score must be within [-1, 1], got {v}")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Warns when no embedding provider is configured, since retrieval calls
    will fail with a configuration error.
    """
    settings = Settings()

    if settings.embedding_provider is None:
        logger.warning(
            "embedding_provider is not configured. "
            "Set EMBEDDING_PROVIDER to 'openai' or 'google' to enable retrieval."
        )

    return settings
