"""Configuration objects for the companion chat engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

API_KEY_ENV = "GENERATION_API_KEY"


class ConfigError(RuntimeError):
    """Raised at startup when the process is missing required settings."""


@dataclass
class GenerationConfig:
    """Generation endpoint details and sampling defaults."""

    endpoint: str = "http://localhost:8000/v1/completions"
    model: str = "meta/meta-llama-3-8b-instruct"
    api_key: Optional[str] = None
    request_timeout: int = 60
    temperature: float = 0.98
    max_tokens: int = 512
    top_p: float = 0.95
    presence_penalty: float = 1.8


@dataclass
class HistoryConfig:
    """Where conversational memory lives and how much of it is kept."""

    history_dir: str = "./history"
    max_entries: int = 200
    seed_delimiter: str = "\n\n"


@dataclass
class RateLimitConfig:
    """Sliding window admission control."""

    limit: int = 10
    window_seconds: float = 10.0
    idle_ttl_seconds: float = 10 * 60


@dataclass
class ChatConfig:
    """Runtime controls for chat behaviour."""

    generation: GenerationConfig = field(default_factory=GenerationConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    archive_dir: str = "./archives"
    recent_turns: int = 10
    generation_deadline_ms: int = 30000

    @classmethod
    def from_env(cls) -> "ChatConfig":
        config = cls()
        config.generation.api_key = os.getenv(API_KEY_ENV) or None
        config.generation.endpoint = os.getenv("GENERATION_ENDPOINT", config.generation.endpoint)
        config.generation.model = os.getenv("GENERATION_MODEL", config.generation.model)
        return config

    @property
    def generation_deadline(self) -> float:
        return self.generation_deadline_ms / 1000.0

    def validate(self) -> None:
        """Fail fast on settings every request depends on."""
        if not self.generation.api_key:
            raise ConfigError(f"{API_KEY_ENV} must be set to reach the generation endpoint")
        if self.generation_deadline_ms <= 0:
            raise ConfigError("generation_deadline_ms must be positive")
        if self.history.max_entries <= 0:
            raise ConfigError("history.max_entries must be positive")
        if self.recent_turns <= 0:
            raise ConfigError("recent_turns must be positive")
