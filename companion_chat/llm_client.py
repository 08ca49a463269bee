"""Client wrapper for the text generation endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import requests

from .config import GenerationConfig

logger = logging.getLogger(__name__)


@dataclass
class GenerationParams:
    temperature: float
    max_tokens: int
    top_p: float
    presence_penalty: float

    @classmethod
    def from_config(cls, config: GenerationConfig) -> "GenerationParams":
        return cls(
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            top_p=config.top_p,
            presence_penalty=config.presence_penalty,
        )


def first_line(text: str) -> str:
    """Keep only the in-character reply: everything before the first newline."""
    return (text or "").split("\n", 1)[0].strip()


class GenerationClient:
    """Thin wrapper around a completions endpoint."""

    def __init__(self, config: GenerationConfig) -> None:
        self.config = config
        self.session = requests.Session()

    def generate(
        self,
        prompt: str,
        params: Optional[GenerationParams] = None,
        *,
        timeout: Optional[float] = None,
    ) -> str:
        """Return the raw completion text for ``prompt``.

        ``timeout`` caps the HTTP call so a worker thread abandoned by the
        caller's deadline still finishes.
        """
        params = params or GenerationParams.from_config(self.config)
        payload: Dict[str, object] = {
            "model": self.config.model,
            "prompt": prompt,
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
            "top_p": params.top_p,
            "presence_penalty": params.presence_penalty,
            "stream": False,
        }
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        request_timeout = self.config.request_timeout
        if timeout is not None:
            request_timeout = min(request_timeout, timeout)

        logger.info("Requesting completion from %s using model %s", self.config.endpoint, self.config.model)
        response = self.session.post(
            self.config.endpoint,
            json=payload,
            headers=headers,
            timeout=request_timeout,
        )
        response.raise_for_status()
        text = self._extract_text(response.json())
        logger.debug("Completion returned %d character(s)", len(text))
        return text

    @staticmethod
    def _extract_text(data: Dict[str, object]) -> str:
        choices = data.get("choices") or []
        if choices:
            choice = choices[0] or {}
            if choice.get("text") is not None:
                return str(choice["text"])
            message = choice.get("message") or {}
            return str(message.get("content") or "")

        output = data.get("output")
        if isinstance(output, list):
            return "".join(str(part) for part in output)
        if isinstance(output, str):
            return output
        raise ValueError("Generation response contained no text")
