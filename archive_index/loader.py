"""Load and query companion archives for prompt context.

An archive is a FAISS index of normalised chunk embeddings stored next to a
``metadata.json`` list holding each chunk's text. Searching embeds the query,
runs an inner product search (cosine similarity on unit vectors) and keeps
the chunks that clear a relevance floor.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import faiss
import numpy as np

from companion_chat.models import RetrievedSnippet

from .config import ArchiveConfig
from .embedding_client import EmbeddingClient

logger = logging.getLogger(__name__)

INDEX_FILE = "index.faiss"
METADATA_FILE = "metadata.json"


@dataclass
class _CacheEntry:
    loader: "ArchiveLoader"
    last_access: float


class ArchiveLoader:
    """Load one persisted archive and perform similarity search."""

    def __init__(self, store_dir: Path, embedding_client: EmbeddingClient) -> None:
        self.store_dir = Path(store_dir)
        self.index_path = self.store_dir / INDEX_FILE
        self.metadata_path = self.store_dir / METADATA_FILE
        self.embedding_client = embedding_client
        self._index: Optional[Any] = None
        self._metadata: List[Dict[str, Any]] = []

    @property
    def is_loaded(self) -> bool:
        return self._index is not None

    def load(self) -> None:
        """Load the FAISS index and metadata from disk."""
        start_time = time.perf_counter()
        if not self.index_path.exists():
            raise FileNotFoundError(f"FAISS index not found at {self.index_path}")
        if not self.metadata_path.exists():
            raise FileNotFoundError(f"Metadata file not found at {self.metadata_path}")

        self._index = faiss.read_index(str(self.index_path))
        with self.metadata_path.open("r", encoding="utf-8") as f:
            metadata = json.load(f)
        if not isinstance(metadata, list):
            raise ValueError("metadata.json must contain a list of metadata entries")
        self._metadata = metadata

        if self._index.ntotal != len(self._metadata):
            logger.warning(
                "Archive mismatch in %s: index has %d vectors, metadata contains %d entries",
                self.store_dir,
                self._index.ntotal,
                len(self._metadata),
            )
        logger.info("Archive %s loaded in %.2f seconds", self.store_dir.name, time.perf_counter() - start_time)

    def search(self, query: str, top_k: int, min_score: float) -> List[RetrievedSnippet]:
        """Return up to ``top_k`` chunks scoring at least ``min_score``, best first."""
        if not query:
            raise ValueError("Query text must not be empty")
        if top_k <= 0:
            raise ValueError("top_k must be a positive integer")
        if not self.is_loaded:
            raise RuntimeError("Archive is not loaded. Call load() first.")
        if self._index.ntotal == 0:  # type: ignore[union-attr]
            return []

        embedding = self.embedding_client.embed_documents([query])
        if not embedding or not embedding[0]:
            raise RuntimeError("Embedding service returned no vectors for the query")

        vector = np.array(embedding[0], dtype="float32").reshape(1, -1)
        if vector.shape[1] != self._index.d:  # type: ignore[union-attr]
            raise ValueError(
                f"Embedding dimension {vector.shape[1]} does not match index dimension {self._index.d}"  # type: ignore[union-attr]
            )
        faiss.normalize_L2(vector)

        search_k = min(top_k, self._index.ntotal)  # type: ignore[union-attr]
        scores, ids = self._index.search(vector, search_k)  # type: ignore[union-attr]

        results: List[RetrievedSnippet] = []
        for idx, score in zip(ids[0], scores[0]):
            if idx < 0 or idx >= len(self._metadata):
                continue
            if float(score) < min_score:
                continue
            text = self._metadata[idx].get("text", "")
            if text:
                results.append(RetrievedSnippet(content=text, score=float(score)))
        results.sort(key=lambda snippet: snippet.score, reverse=True)
        logger.debug("Archive search in %s returned %d result(s)", self.store_dir.name, len(results))
        return results


class CachedArchiveManager:
    """Serve archive searches, keeping loaded archives cached with an inactivity TTL."""

    def __init__(
        self,
        config: Optional[ArchiveConfig] = None,
        *,
        embedding_client: Optional[EmbeddingClient] = None,
    ) -> None:
        self.config = config or ArchiveConfig()
        self.archive_dir = Path(self.config.archive_dir)
        self.embedding_client = (
            embedding_client if embedding_client is not None else EmbeddingClient(self.config.embedding)
        )
        self._cache: Dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    def vector_search(
        self, companion_id: str, document_id: str, *, query: Optional[str] = None
    ) -> List[RetrievedSnippet]:
        """Search the archive ``document_id`` for content related to ``query``.

        Without ``query`` the companion id itself is embedded. A companion with
        no archive yields an empty list.
        """
        loader = self.get_loader(document_id)
        if loader is None:
            logger.debug("No archive for companion %s (%s)", companion_id, document_id)
            return []
        return loader.search(query or companion_id, self.config.top_k, self.config.min_score)

    def get_loader(self, document_id: str) -> Optional[ArchiveLoader]:
        if not document_id:
            raise ValueError("document_id must not be empty")
        store_dir = self.archive_dir / document_id
        if not (store_dir / INDEX_FILE).exists():
            return None

        with self._lock:
            self._evict_stale()
            entry = self._cache.get(document_id)
            if entry:
                entry.last_access = time.monotonic()
                return entry.loader

            loader = ArchiveLoader(store_dir, self.embedding_client)
            loader.load()
            self._cache[document_id] = _CacheEntry(loader=loader, last_access=time.monotonic())
            return loader

    def invalidate(self, document_id: str) -> None:
        """Drop a cached archive so the next search reloads it from disk."""
        with self._lock:
            self._cache.pop(document_id, None)

    def _evict_stale(self) -> None:
        now = time.monotonic()
        expired = [
            doc_id for doc_id, entry in self._cache.items() if now - entry.last_access > self.config.cache_ttl_seconds
        ]
        for doc_id in expired:
            logger.info("Evicting cached archive %s after %.0f seconds of inactivity", doc_id, self.config.cache_ttl_seconds)
            self._cache.pop(doc_id, None)
