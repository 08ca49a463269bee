"""Build and search the archival documents attached to companions."""

from .builder import ArchiveBuilder, chunk_text
from .config import ArchiveConfig, EmbeddingConfig
from .embedding_client import EmbeddingClient
from .loader import ArchiveLoader, CachedArchiveManager

__all__ = [
    "ArchiveBuilder",
    "ArchiveConfig",
    "ArchiveLoader",
    "CachedArchiveManager",
    "EmbeddingClient",
    "EmbeddingConfig",
    "chunk_text",
]
