import hashlib
import os
import sys
import threading
from typing import List, Optional

import pytest

# Make the project root importable when running from a checkout.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from companion_chat import (  # noqa: E402
    ChatConfig,
    ChatOrchestrator,
    Companion,
    FileHistoryStore,
    HistoryStoreProvider,
    InMemoryCompanionRepository,
)
from companion_chat.models import RetrievedSnippet  # noqa: E402
from companion_chat.rate_limit import RateLimiter  # noqa: E402


class HashingEmbeddingClient:
    """Deterministic bag-of-words embedder so archive tests need no service."""

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension
        self.calls: List[List[str]] = []

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        vectors = []
        for text in texts:
            vector = [0.0] * self.dimension
            for token in text.lower().split():
                digest = hashlib.md5(token.strip(".,!?").encode("utf-8")).hexdigest()
                vector[int(digest, 16) % self.dimension] += 1.0
            vectors.append(vector)
        return vectors


class FakeGenerationClient:
    def __init__(self, text: str = "Hello there\nI am rambling more", *, delay: float = 0.0, error=None) -> None:
        self.text = text
        self.delay = delay
        self.error = error
        self.prompts: List[str] = []
        self.timeouts: List[Optional[float]] = []
        self.released = threading.Event()

    def generate(self, prompt, params=None, *, timeout=None) -> str:
        self.prompts.append(prompt)
        self.timeouts.append(timeout)
        if self.delay:
            self.released.wait(self.delay)
        if self.error is not None:
            raise self.error
        return self.text


class FakeRetriever:
    def __init__(self, snippets: Optional[List[RetrievedSnippet]] = None, error=None) -> None:
        self.snippets = snippets or []
        self.error = error
        self.calls = []

    def vector_search(self, companion_id, document_id, *, query=None):
        self.calls.append((companion_id, document_id, query))
        if self.error is not None:
            raise self.error
        return list(self.snippets)


class CountingHistoryStore(FileHistoryStore):
    def __init__(self, config) -> None:
        super().__init__(config)
        self.seed_calls = 0

    def seed_chat_history(self, seed, delimiter, key) -> None:
        self.seed_calls += 1
        super().seed_chat_history(seed, delimiter, key)


@pytest.fixture
def companion() -> Companion:
    return Companion(
        id="luna",
        name="Luna",
        description="a stargazing guide",
        instructions="Speak warmly about the night sky.",
        seed="Hi, I'm Luna.\n\nI love talking about constellations.",
        src="/avatars/luna.png",
        owner_id="owner-1",
    )


@pytest.fixture
def chat_config(tmp_path) -> ChatConfig:
    config = ChatConfig()
    config.generation.api_key = "test-key"
    config.generation.model = "test/model"
    config.history.history_dir = str(tmp_path / "history")
    config.archive_dir = str(tmp_path / "archives")
    config.generation_deadline_ms = 2000
    return config


@pytest.fixture
def repository(companion) -> InMemoryCompanionRepository:
    repo = InMemoryCompanionRepository()
    repo.add_companion(companion)
    return repo


@pytest.fixture
def history_store(chat_config) -> CountingHistoryStore:
    return CountingHistoryStore(chat_config.history)


@pytest.fixture
def make_orchestrator(chat_config, repository, history_store):
    def _make(
        *,
        client=None,
        retriever=None,
        rate_limiter=None,
        repo=None,
    ) -> ChatOrchestrator:
        return ChatOrchestrator(
            chat_config,
            repository=repo if repo is not None else repository,
            history_provider=HistoryStoreProvider(lambda: history_store),
            retriever=retriever if retriever is not None else FakeRetriever(),
            rate_limiter=rate_limiter if rate_limiter is not None else RateLimiter(chat_config.rate_limit),
            client=client if client is not None else FakeGenerationClient(),
        )

    return _make
