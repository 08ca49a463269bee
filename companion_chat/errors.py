"""Exceptions raised by the chat orchestrator.

Each error carries the HTTP status it maps to and a detail string that is
safe to show to the caller.
"""


class ChatError(Exception):
    """Base class for request-level chat failures."""

    status_code = 500
    detail = "Internal Error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.detail)


class Unauthorized(ChatError):
    status_code = 401
    detail = "Unauthorized"


class RateLimited(ChatError):
    status_code = 429
    detail = "Rate limit exceeded"


class CompanionNotFound(ChatError):
    status_code = 404
    detail = "Companion not found"


class GenerationFailure(ChatError):
    """The generation endpoint errored or returned an unusable payload."""


class GenerationTimeout(GenerationFailure):
    """The generation call outlived its deadline."""


class InternalChatError(ChatError):
    """Anything else that went wrong while serving a chat request."""
