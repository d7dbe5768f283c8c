"""Exceptions raised by the llmstream engine.

None of these are retried inside the engine; retry policy belongs to the caller.
"""

from __future__ import annotations


class StreamError(RuntimeError):
    """Base class for engine failures."""


class ModelLoadError(StreamError):
    """The model could not be loaded or is missing required metadata."""


class InputTooLargeError(StreamError, ValueError):
    """A request does not fit in the session's context window."""

    def __init__(self, n_tokens: int, limit: int) -> None:
        super().__init__(f"{n_tokens} tokens of input exceeds maximum {limit} tokens")
        self.n_tokens = n_tokens
        self.limit = limit


class ContextFullError(StreamError):
    """No headspace is left in the context window for further generation."""

    def __init__(self, headspace: int = 0, needed: int = 0) -> None:
        super().__init__("context full")
        self.headspace = headspace
        self.needed = needed


class EvaluationError(StreamError):
    """The backend failed to decode a batch. The session must not be reused."""

    def __init__(self, code: int, message: str | None = None) -> None:
        super().__init__(message or f"eval failed with error {code}")
        self.code = code


class CacheOverflowError(EvaluationError):
    """The backend reported that its KV cache has no room for the batch."""

    def __init__(self) -> None:
        super().__init__(1, "eval failed, cache overflow")


class SamplingError(StreamError):
    """The backend did not produce a usable token."""


class EndOfStream(Exception):
    """Generation completed normally (the model produced end-of-sequence)."""
