"""Base backend interface: the boundary to the inference engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Sequence

# Returned by sampling kernels that failed to pick a token.
NULL_TOKEN = -1


class BaseBackend(ABC):
    """
    Abstract base class for inference backends.

    A backend owns the loaded weights and exposes the primitives the engine
    builds sessions from: tokenization, contexts with a position-indexed KV
    cache, a decode step, per-position logits and the numeric sampling
    kernels. The engine never looks inside a context or a candidate list;
    both are opaque values handed back to the backend.

    Thread Safety:
        Backends are NOT thread-safe. A context must only be used by one
        caller at a time.
    """

    # -------------------------------------------------------------------------
    # Loading / metadata
    # -------------------------------------------------------------------------

    @abstractmethod
    def load(self, model_path: str, **kwargs) -> None:
        """
        Load weights and tokenizer from the given path.

        Args:
            model_path: Local path or hub identifier.
            **kwargs: Backend-specific loading options (dtype, device, etc.).
        """

    def unload(self) -> None:
        """
        Unload the model and free resources.

        Default implementation does nothing; override if cleanup is needed.
        """

    @property
    @abstractmethod
    def n_ctx_train(self) -> int:
        """Context length the model was trained with (0 if unknown)."""

    @property
    @abstractmethod
    def n_vocab(self) -> int:
        """Vocabulary size."""

    @abstractmethod
    def token_bos(self) -> int | None:
        """Beginning-of-sequence token, if the model has one."""

    @abstractmethod
    def token_eos(self) -> int | None:
        """End-of-sequence token."""

    @abstractmethod
    def token_nl(self) -> int | None:
        """Newline token."""

    @property
    def model_info(self) -> dict[str, Any]:
        """Return metadata about the loaded model."""
        return {"n_ctx_train": self.n_ctx_train, "n_vocab": self.n_vocab}

    # -------------------------------------------------------------------------
    # Tokenization
    # -------------------------------------------------------------------------

    @abstractmethod
    def tokenize(self, text: str) -> list[int]:
        """Encode text without adding special tokens."""

    @abstractmethod
    def detokenize(self, tokens: Sequence[int]) -> str:
        """Concatenate the text pieces of `tokens`."""

    # -------------------------------------------------------------------------
    # Contexts and the KV cache
    # -------------------------------------------------------------------------

    @abstractmethod
    def new_context(self, n_ctx: int, seed: int) -> Any | None:
        """Allocate a context holding up to `n_ctx` positions, or None on failure."""

    @abstractmethod
    def set_seed(self, context: Any, seed: int) -> None:
        """Reseed the random generator used by the context's sampling kernels."""

    @abstractmethod
    def free_context(self, context: Any) -> None:
        """Release a context."""

    @abstractmethod
    def decode(self, context: Any, start_pos: int, tokens: Sequence[int]) -> int:
        """
        Run one decode step over `tokens` placed at start_pos, start_pos + 1, ...

        Logits are kept for the final token only.

        Returns:
            0 on success, 1 if the cache has no room for the batch, any other
            value for a fatal failure.
        """

    @abstractmethod
    def candidates(self, context: Any, pos: int) -> Any | None:
        """Vocabulary-sized candidate list built from the logits at `pos`, or None."""

    @abstractmethod
    def cache_remove(self, context: Any, seq_id: int, start: int, stop: int) -> None:
        """Remove positions [start, stop) of a sequence; stop < 0 means to the end."""

    @abstractmethod
    def cache_shift(self, context: Any, seq_id: int, start: int, stop: int, delta: int) -> None:
        """Add `delta` to the positions in [start, stop) of a sequence."""

    # -------------------------------------------------------------------------
    # Sampling kernels
    # -------------------------------------------------------------------------

    @abstractmethod
    def apply_repetition_penalties(
        self,
        context: Any,
        candidates: Any,
        last_tokens: Sequence[int],
        repeat_penalty: float,
        frequency_penalty: float,
        presence_penalty: float,
    ) -> None:
        """Penalize candidates that occur in `last_tokens`."""

    @abstractmethod
    def apply_temperature(self, context: Any, candidates: Any, temperature: float) -> None:
        """Divide logits by the temperature."""

    @abstractmethod
    def apply_top_k(self, context: Any, candidates: Any, k: int, min_keep: int = 1) -> None:
        """Keep the k most likely candidates."""

    @abstractmethod
    def apply_tail_free(self, context: Any, candidates: Any, z: float, min_keep: int = 1) -> None:
        """Tail free sampling filter."""

    @abstractmethod
    def apply_typical(self, context: Any, candidates: Any, p: float, min_keep: int = 1) -> None:
        """Locally typical sampling filter."""

    @abstractmethod
    def apply_top_p(self, context: Any, candidates: Any, p: float, min_keep: int = 1) -> None:
        """Nucleus filter."""

    @abstractmethod
    def sample_greedy(self, context: Any, candidates: Any) -> int:
        """Pick the most likely candidate."""

    @abstractmethod
    def sample_token(self, context: Any, candidates: Any) -> int:
        """Draw a candidate according to its probability."""

    @abstractmethod
    def sample_mirostat(
        self, context: Any, candidates: Any, tau: float, eta: float, m: int, mu: float
    ) -> tuple[int, float]:
        """Mirostat v1 draw. Returns the token and the updated mu."""

    @abstractmethod
    def sample_mirostat_v2(
        self, context: Any, candidates: Any, tau: float, eta: float, mu: float
    ) -> tuple[int, float]:
        """Mirostat v2 draw. Returns the token and the updated mu."""
