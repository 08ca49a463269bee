"""Stateful companion chat with bounded memory, archival context and admission control.

The package wires a completions endpoint with per-conversation history,
archive retrieval and per-user rate limiting. The primary entry points are
``server.create_app`` for running the HTTP service and
``companion_chat.service.ChatOrchestrator`` for driving the chat engine
directly from Python code.
"""

from .config import ChatConfig, ConfigError, GenerationConfig, HistoryConfig, RateLimitConfig
from .history import FileHistoryStore, HistoryStoreProvider
from .models import ChatResult, Companion, ConversationKey, Identity, Turn
from .rate_limit import RateLimiter
from .repository import CompanionRepository, InMemoryCompanionRepository
from .service import ChatOrchestrator
from .similarity import is_repetitive

__all__ = [
    "ChatConfig",
    "ChatOrchestrator",
    "ChatResult",
    "Companion",
    "CompanionRepository",
    "ConfigError",
    "ConversationKey",
    "FileHistoryStore",
    "GenerationConfig",
    "HistoryConfig",
    "HistoryStoreProvider",
    "Identity",
    "InMemoryCompanionRepository",
    "RateLimitConfig",
    "RateLimiter",
    "Turn",
    "is_repetitive",
]
