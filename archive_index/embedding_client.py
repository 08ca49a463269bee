"""HTTP client for an OpenAI compatible embeddings endpoint."""

from __future__ import annotations

import logging
from typing import Dict, List

import requests

from .config import EmbeddingConfig

logger = logging.getLogger(__name__)


class EmbeddingClient:
    def __init__(self, config: EmbeddingConfig) -> None:
        self.config = config

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        """Embed ``texts`` in batches, preserving input order."""
        vectors: List[List[float]] = []
        batch_size = max(1, self.config.batch_size)
        for start in range(0, len(texts), batch_size):
            batch = texts[start : start + batch_size]
            vectors.extend(self._embed_batch(batch))
        return vectors

    def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        payload: Dict[str, object] = {"model": self.config.model, "input": batch}
        if self.config.model_kwargs:
            payload.update(self.config.model_kwargs)

        logger.debug("Embedding batch of %d text(s) via %s", len(batch), self.config.endpoint)
        response = requests.post(self.config.endpoint, json=payload, timeout=self.config.request_timeout)
        response.raise_for_status()
        data = response.json().get("data") or []
        if len(data) != len(batch):
            raise RuntimeError(f"Embedding service returned {len(data)} vector(s) for {len(batch)} input(s)")
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in ordered]
