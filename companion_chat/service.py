"""Request lifecycle for chatting with a companion.

``ChatOrchestrator.chat`` runs one request through admission, loading,
prompt composition, generation and persistence. Blocking collaborators (the
history files, the repository, FAISS, the generation endpoint) run in worker
threads so independent steps can overlap.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Awaitable, Coroutine, List, Optional, Protocol, Sequence, Set

from .config import ChatConfig
from .errors import (
    ChatError,
    CompanionNotFound,
    GenerationFailure,
    GenerationTimeout,
    InternalChatError,
    RateLimited,
    Unauthorized,
)
from .history import HistoryStoreProvider
from .llm_client import GenerationClient, GenerationParams, first_line
from .models import (
    SYSTEM_ROLE,
    USER_ROLE,
    ChatResult,
    Companion,
    ConversationKey,
    Identity,
    RetrievedSnippet,
    Turn,
)
from .rate_limit import RateLimiter
from .repository import CompanionRepository
from .similarity import is_repetitive

logger = logging.getLogger(__name__)

HISTORY_SEED_DELIMITER = "\n\n"


class ArchiveRetriever(Protocol):
    def vector_search(
        self, companion_id: str, document_id: str, *, query: Optional[str] = None
    ) -> List[RetrievedSnippet]:
        ...


class ChatStage(str, enum.Enum):
    ADMITTING = "admitting"
    LOADING = "loading"
    COMPOSING = "composing"
    GENERATING = "generating"
    PERSISTING = "persisting"
    RESPONDING = "responding"
    FAILED = "failed"


def _advance(current: ChatStage, target: ChatStage, companion_id: str) -> ChatStage:
    logger.debug("Chat for %s: %s -> %s", companion_id, current.value, target.value)
    return target


def build_prompt(
    companion: Companion,
    prompt: str,
    recent_turns: Sequence[Turn],
    snippets: Sequence[RetrievedSnippet],
) -> str:
    """Assemble the generation prompt.

    ``recent_turns`` arrive newest first and are rendered oldest first.
    """
    transcript = "\n".join(
        f"{'User' if turn.role == USER_ROLE else companion.name}: {turn.content}"
        for turn in reversed(recent_turns)
    )
    parts = [
        "<|system|>",
        f"You are {companion.name}. Focus on: {prompt}",
        companion.instructions,
        "Recent context:",
        transcript,
    ]
    if snippets:
        parts.append("Relevant memories:")
        parts.append("\n".join(snippet.content for snippet in snippets))
    parts.append(f"Current question: {prompt}")
    parts.append("<|assistant|>")
    return "\n".join(parts)


class ChatOrchestrator:
    """Core chat engine used by the HTTP layer and by direct Python callers."""

    def __init__(
        self,
        config: ChatConfig,
        *,
        repository: CompanionRepository,
        history_provider: HistoryStoreProvider,
        retriever: ArchiveRetriever,
        rate_limiter: Optional[RateLimiter] = None,
        client: Optional[GenerationClient] = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.history_provider = history_provider
        self.retriever = retriever
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter(config.rate_limit)
        self.client = client if client is not None else GenerationClient(config.generation)
        self._background: Set["asyncio.Task[None]"] = set()

    def conversation_key(self, companion_id: str, user_id: str) -> ConversationKey:
        return ConversationKey(
            companion_id=companion_id,
            user_id=user_id,
            model_name=self.config.generation.model,
        )

    async def chat(
        self,
        identity: Optional[Identity],
        companion_id: str,
        prompt: str,
        *,
        origin: str = "chat",
    ) -> ChatResult:
        """Serve one chat request and return the companion's reply.

        Raises ``Unauthorized``, ``RateLimited`` or ``CompanionNotFound`` for
        the expected rejections, ``GenerationFailure`` (or its timeout
        subclass) when generation fails, and ``InternalChatError`` for
        anything else.
        """
        stage = ChatStage.ADMITTING
        try:
            if identity is None or not identity.is_complete:
                raise Unauthorized()
            user_id = identity.user_id

            stage = _advance(stage, ChatStage.LOADING, companion_id)
            decision, loaded, store = await self._join(
                asyncio.to_thread(self.rate_limiter.check, f"{origin}-{user_id}"),
                asyncio.to_thread(
                    self.repository.get_companion,
                    companion_id,
                    user_id=user_id,
                    recent_limit=self.config.recent_turns,
                ),
                asyncio.to_thread(self.history_provider.get),
            )
            if not decision.success:
                raise RateLimited()
            if loaded is None:
                raise CompanionNotFound()
            companion, recent_turns = loaded

            self._detach(
                self._persist_user_turn(Turn(USER_ROLE, prompt, user_id, companion.id)),
                name=f"user-turn-{companion.id}",
            )

            repetition_signals = [is_repetitive(turn.content or "", prompt) for turn in recent_turns]
            if any(repetition_signals):
                logger.debug("Prompt for %s repeats a recent turn", companion.id)

            stage = _advance(stage, ChatStage.COMPOSING, companion_id)
            key = self.conversation_key(companion.id, user_id)
            records, snippets = await self._join(
                asyncio.to_thread(store.read_latest_history, key),
                self._search_archive(companion, prompt),
            )
            seeded = False
            if not records:
                await asyncio.to_thread(store.seed_chat_history, companion.seed, HISTORY_SEED_DELIMITER, key)
                seeded = True
            generation_prompt = build_prompt(companion, prompt, recent_turns, snippets)

            stage = _advance(stage, ChatStage.GENERATING, companion_id)
            final_response = first_line(await self._generate(generation_prompt, companion.id))

            stage = _advance(stage, ChatStage.PERSISTING, companion_id)
            persisted = False
            if len(final_response) > 1:
                await self._join(
                    asyncio.to_thread(store.write_to_history, f"User: {prompt}\n{final_response}", key),
                    asyncio.to_thread(
                        self.repository.create_turn,
                        Turn(SYSTEM_ROLE, final_response, user_id, companion.id),
                    ),
                )
                persisted = True
            else:
                logger.info("Skipping persistence of trivial response for %s", key.storage_key)

            stage = _advance(stage, ChatStage.RESPONDING, companion_id)
            return ChatResult(
                response=final_response,
                key=key,
                repetition_signals=repetition_signals,
                snippet_count=len(snippets),
                seeded=seeded,
                persisted=persisted,
            )
        except GenerationFailure as exc:
            _advance(stage, ChatStage.FAILED, companion_id)
            logger.error("[CHAT_POST] generation failed for %s during %s: %s", companion_id, stage.value, exc)
            raise
        except ChatError as exc:
            _advance(stage, ChatStage.FAILED, companion_id)
            logger.info("[CHAT_POST] rejected %s during %s: %s", companion_id, stage.value, exc.detail)
            raise
        except Exception as exc:
            _advance(stage, ChatStage.FAILED, companion_id)
            logger.exception("[CHAT_POST] failed for %s during %s", companion_id, stage.value)
            raise InternalChatError() from exc

    async def read_history(self, identity: Optional[Identity], companion_id: str) -> List[str]:
        """Return the caller's stored history lines for ``companion_id``."""
        if identity is None or not identity.is_complete:
            raise Unauthorized()
        loaded, store = await self._join(
            asyncio.to_thread(
                self.repository.get_companion, companion_id, user_id=identity.user_id, recent_limit=1
            ),
            asyncio.to_thread(self.history_provider.get),
        )
        if loaded is None:
            raise CompanionNotFound()
        key = self.conversation_key(companion_id, identity.user_id)
        return await asyncio.to_thread(store.read_latest_history, key)

    async def wait_for_background(self) -> None:
        """Wait for detached writes started by earlier requests."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    @property
    def pending_background(self) -> int:
        return len(self._background)

    @staticmethod
    async def _join(*operations: Awaitable[Any]) -> List[Any]:
        """Run ``operations`` concurrently and wait for all of them.

        Every operation settles before the first failure is re-raised.
        """
        results = await asyncio.gather(*operations, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return results

    async def _search_archive(self, companion: Companion, prompt: str) -> List[RetrievedSnippet]:
        try:
            return await asyncio.to_thread(
                self.retriever.vector_search, companion.id, companion.document_id, query=prompt
            )
        except Exception:
            logger.exception("Failed to search archive %s", companion.document_id)
            return []

    async def _generate(self, prompt: str, companion_id: str) -> str:
        deadline = self.config.generation_deadline
        params = GenerationParams.from_config(self.config.generation)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.client.generate, prompt, params, timeout=deadline),
                timeout=deadline,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Generation for %s exceeded %.1fs deadline", companion_id, deadline)
            raise GenerationTimeout(f"generation exceeded {deadline:.1f}s") from exc
        except Exception as exc:
            raise GenerationFailure(str(exc) or exc.__class__.__name__) from exc

    async def _persist_user_turn(self, turn: Turn) -> None:
        try:
            await asyncio.to_thread(self.repository.create_turn, turn)
        except Exception:
            logger.exception("Failed to persist user turn for companion %s", turn.companion_id)

    def _detach(self, coro: Coroutine[Any, Any, None], *, name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
