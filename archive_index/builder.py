"""Build the archival document searched for a companion's prompt context.

Run once when a companion is set up::

    python -m archive_index.builder --archive_dir ./archives \
        --companion_id abc123 --source_file backstory.txt
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from pathlib import Path
from typing import List, Optional

import faiss
import numpy as np

from companion_chat.utils import setup_logging

from .config import ArchiveConfig, EmbeddingConfig
from .embedding_client import EmbeddingClient
from .loader import INDEX_FILE, METADATA_FILE

logger = logging.getLogger(__name__)


def chunk_text(text: str, chunk_size: int) -> List[str]:
    """Split on blank lines, packing paragraphs into chunks of at most ``chunk_size`` characters.

    A paragraph longer than ``chunk_size`` is cut into fixed-size pieces.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    paragraphs = [part.strip() for part in text.replace("\r\n", "\n").split("\n\n") if part.strip()]
    chunks: List[str] = []
    current = ""
    for paragraph in paragraphs:
        while len(paragraph) > chunk_size:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(paragraph[:chunk_size])
            paragraph = paragraph[chunk_size:].lstrip()
        if not paragraph:
            continue
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) > chunk_size:
            chunks.append(current)
            current = paragraph
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


class ArchiveBuilder:
    """Embed a companion's source text and persist it as a FAISS archive."""

    def __init__(
        self,
        config: Optional[ArchiveConfig] = None,
        *,
        embedding_client: Optional[EmbeddingClient] = None,
    ) -> None:
        self.config = config or ArchiveConfig()
        self.embedding_client = (
            embedding_client if embedding_client is not None else EmbeddingClient(self.config.embedding)
        )

    def build(self, document_id: str, text: str) -> Path:
        """Write ``index.faiss`` and ``metadata.json`` under ``archive_dir/document_id``."""
        if not document_id:
            raise ValueError("document_id must not be empty")
        chunks = chunk_text(text, self.config.chunk_size)
        if not chunks:
            raise ValueError(f"No text to archive for {document_id}")

        start_time = time.perf_counter()
        logger.info("Embedding %d chunk(s) for archive %s", len(chunks), document_id)
        vectors = self.embedding_client.embed_documents(chunks)
        if len(vectors) != len(chunks):
            raise RuntimeError(f"Expected {len(chunks)} embedding(s), received {len(vectors)}")

        matrix = np.array(vectors, dtype="float32")
        faiss.normalize_L2(matrix)
        index = faiss.IndexFlatIP(matrix.shape[1])
        index.add(matrix)

        store_dir = Path(self.config.archive_dir) / document_id
        store_dir.mkdir(parents=True, exist_ok=True)
        faiss.write_index(index, str(store_dir / INDEX_FILE))
        metadata = [
            {"text": chunk, "document_id": document_id, "chunk": position}
            for position, chunk in enumerate(chunks)
        ]
        with (store_dir / METADATA_FILE).open("w", encoding="utf-8") as f:
            json.dump(metadata, f, ensure_ascii=False, indent=2)

        logger.info(
            "Archive %s written to %s in %.2f seconds",
            document_id,
            store_dir,
            time.perf_counter() - start_time,
        )
        return store_dir


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build the archival document for a companion.")
    parser.add_argument("--archive_dir", default="./archives", help="Root directory holding companion archives.")
    parser.add_argument("--companion_id", required=True, help="Companion the archive belongs to.")
    parser.add_argument("--source_file", required=True, help="Plain text file with the companion's background.")
    parser.add_argument(
        "--embedding_endpoint",
        default="http://localhost:8001/v1/embeddings",
        help="URL of the embedding service.",
    )
    parser.add_argument("--embedding_batch_size", type=int, default=32, help="Texts per embedding request.")
    parser.add_argument("--chunk_size", type=int, default=1000, help="Maximum characters per chunk.")
    parser.add_argument("--log_dir", help="Optional directory for log files.")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    if args.log_dir:
        setup_logging(args.log_dir, logging.INFO)

    source = Path(args.source_file)
    if not source.exists():
        raise SystemExit(f"Source file not found: {source}")

    config = ArchiveConfig(
        archive_dir=args.archive_dir,
        chunk_size=args.chunk_size,
        embedding=EmbeddingConfig(endpoint=args.embedding_endpoint, batch_size=args.embedding_batch_size),
    )
    builder = ArchiveBuilder(config)
    store_dir = builder.build(f"{args.companion_id}.txt", source.read_text(encoding="utf-8"))
    print(store_dir)


if __name__ == "__main__":
    main()
