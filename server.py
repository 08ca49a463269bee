"""FastAPI server exposing companion chat with memory, archives and admission control."""

from __future__ import annotations

import argparse
import logging
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, validator
import uvicorn

from archive_index import ArchiveConfig, CachedArchiveManager, EmbeddingConfig
from companion_chat import (
    ChatConfig,
    ChatOrchestrator,
    CompanionRepository,
    ConfigError,
    FileHistoryStore,
    HistoryStoreProvider,
    Identity,
    InMemoryCompanionRepository,
)
from companion_chat.errors import ChatError
from companion_chat.llm_client import GenerationClient
from companion_chat.rate_limit import RateLimiter
from companion_chat.service import ArchiveRetriever
from companion_chat.utils import setup_logging

logger = logging.getLogger(__name__)


# ---------- Request Models ----------
class ChatRequest(BaseModel):
    prompt: str = Field(..., description="User message to send to the companion.")

    @validator("prompt")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class HistoryResponse(BaseModel):
    companion_id: str
    model_name: str
    entries: List[str] = Field(default_factory=list)


# ---------- Helpers ----------
def resolve_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
) -> Identity:
    """Read the caller identity forwarded by the authentication proxy."""
    return Identity(user_id=x_user_id, name=x_user_name)


# ---------- FastAPI Factory ----------
def create_app(
    chat_config: Optional[ChatConfig] = None,
    *,
    log_dir: Optional[str] = None,
    repository: Optional[CompanionRepository] = None,
    history_provider: Optional[HistoryStoreProvider] = None,
    retriever: Optional[ArchiveRetriever] = None,
    rate_limiter: Optional[RateLimiter] = None,
    client: Optional[GenerationClient] = None,
    embedding_config: Optional[EmbeddingConfig] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    config = chat_config or ChatConfig.from_env()
    config.validate()

    history_config = config.history
    if repository is None:
        repository = InMemoryCompanionRepository()
    if history_provider is None:
        history_provider = HistoryStoreProvider(lambda: FileHistoryStore(history_config))
    if retriever is None:
        archive_config = ArchiveConfig(archive_dir=config.archive_dir)
        if embedding_config is not None:
            archive_config.embedding = embedding_config
        retriever = CachedArchiveManager(archive_config)

    orchestrator = ChatOrchestrator(
        config,
        repository=repository,
        history_provider=history_provider,
        retriever=retriever,
        rate_limiter=rate_limiter,
        client=client,
    )

    app = FastAPI(title="Companion Chat", version="0.1.0")
    app.state.orchestrator = orchestrator
    app.state.repository = orchestrator.repository

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/chat/{companion_id}")
    async def chat(
        companion_id: str,
        body: ChatRequest,
        request: Request,
        identity: Identity = Depends(resolve_identity),
    ):
        logger.info("Chat request for companion %s (user=%s)", companion_id, identity.user_id)
        try:
            result = await app.state.orchestrator.chat(
                identity,
                companion_id,
                body.prompt,
                origin=request.url.path,
            )
        except ChatError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

        return StreamingResponse(
            iter([result.response]),
            media_type="text/plain",
            headers={"X-Repetitive": "true" if result.is_repetitive else "false"},
        )

    @app.get("/chat/{companion_id}/history", response_model=HistoryResponse)
    async def chat_history(companion_id: str, identity: Identity = Depends(resolve_identity)):
        logger.info("Fetching history for companion %s (user=%s)", companion_id, identity.user_id)
        try:
            entries = await app.state.orchestrator.read_history(identity, companion_id)
        except ChatError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
        return HistoryResponse(
            companion_id=companion_id,
            model_name=app.state.orchestrator.config.generation.model,
            entries=entries,
        )

    return app


# ---------- CLI ----------
def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the companion chat server.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8010, help="Port to bind.")
    parser.add_argument("--log_dir", default="./logs", help="Directory for application logs.")
    parser.add_argument("--llm_endpoint", help="Completions endpoint (defaults to GENERATION_ENDPOINT).")
    parser.add_argument("--llm_model", help="Model name for completions (defaults to GENERATION_MODEL).")
    parser.add_argument("--request_timeout", type=int, default=60, help="HTTP timeout for LLM calls (seconds).")
    parser.add_argument("--deadline_ms", type=int, default=30000, help="Hard deadline for one generation call.")
    parser.add_argument("--history_dir", default="./history", help="Directory holding conversation history.")
    parser.add_argument("--max_history_entries", type=int, default=200, help="Entries kept per conversation.")
    parser.add_argument("--archive_dir", default="./archives", help="Directory holding companion archives.")
    parser.add_argument(
        "--embedding_endpoint",
        default="http://localhost:8001/v1/embeddings",
        help="Embedding service used to search archives.",
    )
    parser.add_argument("--rate_limit", type=int, default=10, help="Requests allowed per user per window.")
    parser.add_argument("--rate_window_seconds", type=float, default=10.0, help="Rate limit window length.")
    parser.add_argument("--companions_file", help="JSON list of companion records to serve.")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ChatConfig:
    config = ChatConfig.from_env()
    if args.llm_endpoint:
        config.generation.endpoint = args.llm_endpoint
    if args.llm_model:
        config.generation.model = args.llm_model
    config.generation.request_timeout = args.request_timeout
    config.generation_deadline_ms = args.deadline_ms
    config.history.history_dir = args.history_dir
    config.history.max_entries = args.max_history_entries
    config.archive_dir = args.archive_dir
    config.rate_limit.limit = args.rate_limit
    config.rate_limit.window_seconds = args.rate_window_seconds
    return config


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    config = build_config(args)
    repository = InMemoryCompanionRepository()
    if args.companions_file:
        loaded = repository.load_companions(args.companions_file)
        logger.info("Loaded %d companion(s) from %s", loaded, args.companions_file)
    try:
        app = create_app(
            config,
            repository=repository,
            log_dir=args.log_dir,
            embedding_config=EmbeddingConfig(endpoint=args.embedding_endpoint),
        )
    except ConfigError as exc:
        raise SystemExit(f"Configuration error: {exc}")

    logger.info("Starting companion chat server on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
