"""Records shared by the chat engine and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

USER_ROLE = "user"
SYSTEM_ROLE = "system"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConversationKey:
    """Identifies one memory stream: a companion talking to a user through a model."""

    companion_id: str
    user_id: str
    model_name: str

    @property
    def storage_key(self) -> str:
        return f"{self.companion_id}-{self.model_name}-{self.user_id}"


@dataclass(frozen=True)
class Turn:
    role: str
    content: str
    author_id: str
    companion_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Companion:
    id: str
    name: str
    description: str
    instructions: str
    seed: str
    src: str = ""
    owner_id: Optional[str] = None

    @property
    def document_id(self) -> str:
        """Name of the archival document indexed for this companion."""
        return f"{self.id}.txt"


@dataclass(frozen=True)
class Identity:
    user_id: Optional[str]
    name: Optional[str]

    @property
    def is_complete(self) -> bool:
        return bool(self.user_id) and bool(self.name)


@dataclass(frozen=True)
class RateLimitDecision:
    success: bool
    limit: int = 0
    remaining: int = 0
    reset_after: float = 0.0


@dataclass(frozen=True)
class RetrievedSnippet:
    content: str
    score: float


@dataclass
class ChatResult:
    response: str
    key: ConversationKey
    repetition_signals: List[bool] = field(default_factory=list)
    snippet_count: int = 0
    seeded: bool = False
    persisted: bool = False

    @property
    def is_repetitive(self) -> bool:
        return any(self.repetition_signals)
