"""Configuration for building and searching companion archives."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class EmbeddingConfig:
    """Embedding endpoint details."""

    endpoint: str = "http://localhost:8001/v1/embeddings"
    model: str = "text-embedding"
    batch_size: int = 32
    request_timeout: int = 30
    model_kwargs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ArchiveConfig:
    archive_dir: str = "./archives"
    top_k: int = 3
    min_score: float = 0.2
    chunk_size: int = 1000
    cache_ttl_seconds: int = 60 * 60
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
