from __future__ import annotations


class LLMError(RuntimeError):
    """Raised when the model endpoint is unreachable, unconfigured or returns unusable output."""


class ConversationNotFoundError(LookupError):
    pass


class InvalidTransitionError(ValueError):
    pass
