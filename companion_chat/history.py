"""Durable, bounded conversational memory keyed by companion, user and model."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import zlib
from pathlib import Path
from typing import Callable, List, Optional
from urllib.parse import quote

from .config import HistoryConfig
from .models import ConversationKey

logger = logging.getLogger(__name__)

# Keys share a fixed pool of locks so the pool never grows with traffic.
LOCK_STRIPES = 64


class FileHistoryStore:
    """Keep each conversation as a JSON-lines file of history entries.

    Entries may contain newlines, so each line holds one JSON encoded string.
    Writes rewrite the file through a temporary file and ``os.replace`` and
    keep only the newest ``max_entries`` entries.

    The striped per-key lock only makes single file operations atomic. A
    caller that reads and then appends is not protected from another request
    doing the same on the same key.
    """

    def __init__(self, config: Optional[HistoryConfig] = None) -> None:
        self.config = config or HistoryConfig()
        self.root = Path(self.config.history_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]
        logger.info("History store ready at %s (max_entries=%d)", self.root, self.config.max_entries)

    def read_latest_history(self, key: ConversationKey) -> List[str]:
        """Return every stored entry, oldest first."""
        with self._lock_for(key):
            entries = self._load(key)
        logger.debug("Read %d history entr(ies) for %s", len(entries), key.storage_key)
        return entries

    def seed_chat_history(self, seed: str, delimiter: str, key: ConversationKey) -> None:
        """Write the companion seed as the first entries of the stream.

        A seed with no non-blank chunk is still written as one entry so the
        stream is never empty once seeded.
        """
        chunks = [chunk for chunk in (seed or "").split(delimiter or self.config.seed_delimiter) if chunk.strip()]
        if not chunks:
            logger.warning("Seed for %s is blank, storing it verbatim", key.storage_key)
            chunks = [seed or ""]
        with self._lock_for(key):
            entries = self._load(key)
            entries.extend(chunks)
            self._store(key, entries)
        logger.info("Seeded %s with %d entr(ies)", key.storage_key, len(chunks))

    def write_to_history(self, entry: str, key: ConversationKey) -> None:
        with self._lock_for(key):
            entries = self._load(key)
            entries.append(entry)
            self._store(key, entries)

    def path_for(self, key: ConversationKey) -> Path:
        return self.root / f"{quote(key.storage_key, safe='')}.jsonl"

    def _lock_for(self, key: ConversationKey) -> threading.Lock:
        return self._locks[zlib.crc32(key.storage_key.encode("utf-8")) % len(self._locks)]

    def _load(self, key: ConversationKey) -> List[str]:
        path = self.path_for(key)
        if not path.exists():
            return []
        entries: List[str] = []
        with path.open("r", encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt history line %d in %s", line_no, path)
        return entries

    def _store(self, key: ConversationKey, entries: List[str]) -> None:
        max_entries = self.config.max_entries
        if len(entries) > max_entries:
            logger.debug("Trimming %d oldest entr(ies) for %s", len(entries) - max_entries, key.storage_key)
            entries = entries[-max_entries:]

        path = self.path_for(key)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.root), prefix=".history-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                for entry in entries:
                    handle.write(json.dumps(entry, ensure_ascii=False))
                    handle.write("\n")
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class HistoryStoreProvider:
    """Construct the history store on first use and hand out that one instance.

    Safe under concurrent first access: exactly one caller runs the factory,
    the rest wait on the lock and receive the same store.
    """

    def __init__(self, factory: Callable[[], FileHistoryStore]) -> None:
        self._factory = factory
        self._instance: Optional[FileHistoryStore] = None
        self._lock = threading.Lock()

    def get(self) -> FileHistoryStore:
        instance = self._instance
        if instance is not None:
            return instance
        with self._lock:
            if self._instance is None:
                logger.info("Constructing history store")
                self._instance = self._factory()
            return self._instance

    @property
    def is_initialised(self) -> bool:
        return self._instance is not None

