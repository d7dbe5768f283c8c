"""Sessions ("streams") over a backend context, and the single-slot session pool.

A stream owns one backend context and `history`, the exact list of tokens
resident in the context's KV cache at positions 0..len(history)-1. Every
cache edit is followed by the matching edit of `history`, and history is only
changed after the backend call succeeded.

Lifecycle:

    UNINITIALIZED --initialize--> ACTIVE --close--> POOLED --resume--> ACTIVE
                                     |                 |
                                     +------free-------+-----> FREED

A stream that failed to evaluate is FAILED: its cache may no longer match
`history`, so it is freed instead of pooled.
"""

from __future__ import annotations

import enum
import logging
import threading
from typing import TYPE_CHECKING, Any, Iterator, Sequence

from . import cache
from .errors import ContextFullError, EndOfStream, EvaluationError, InputTooLargeError, StreamError
from .evaluator import evaluate
from .overlap import overlap
from .sampler import MirostatState, sample
from .types import Parameters, Token

if TYPE_CHECKING:
    from .model import Model

logger = logging.getLogger(__name__)

# Positions kept free at the end of the context for the generated token and
# its lookahead.
RESERVED_SLACK = 5


class StreamState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    POOLED = "pooled"
    FREED = "freed"
    FAILED = "failed"


class Stream:
    """A generation session against one backend context.

    Not thread-safe: a stream is exclusively owned by whoever obtained it from
    `Model.predict()` until it is closed or freed.

    Example:
        >>> stream = model.predict(Parameters(temperature=0.7), model.encode("Hello"))
        >>> for token in stream:
        ...     print(model.decode([token]), end="", flush=True)
        >>> stream.close()
    """

    def __init__(self, model: Model) -> None:
        self.model = model  # borrowed; the model must outlive the stream
        self.backend = model.backend
        self.context: Any = None
        self.capacity: int = model.n_ctx_train
        self.history: list[Token] = []
        self.params = Parameters()
        self.mirostat = MirostatState.initial(self.params)
        self.state = StreamState.UNINITIALIZED

    def __repr__(self) -> str:
        return f"Stream(state={self.state.value}, history={len(self.history)}, capacity={self.capacity})"

    @property
    def headspace(self) -> int:
        """Positions still available for lookahead tokens."""
        return self.capacity - len(self.history) - RESERVED_SLACK

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    def _apply_parameters(self, params: Parameters) -> None:
        params.validate()
        self.params = params.resolve_seed()
        self.mirostat = MirostatState.initial(self.params)

    def initialize(self, tokens: Sequence[Token], params: Parameters) -> None:
        """Create a fresh context and evaluate `tokens` into it."""
        if self.state is not StreamState.UNINITIALIZED:
            raise StreamError(f"cannot initialize a {self.state.value} stream")
        try:
            self._apply_parameters(params)
            limit = self.capacity - RESERVED_SLACK
            if len(tokens) > limit:
                raise InputTooLargeError(len(tokens), limit)

            self.history = []
            logger.debug(
                "creating context: seed=%d n_ctx=%d bos=%s nl=%s eos=%s",
                self.params.seed,
                self.capacity,
                self.model.bos,
                self.model.nl,
                self.model.eos,
            )
            self.context = self.backend.new_context(self.capacity, self.params.seed)
            if self.context is None:
                raise StreamError("failed to create context from model")
            self.state = StreamState.ACTIVE
            evaluate(self, tokens)
        except Exception:
            self.free()
            self.state = StreamState.FAILED
            raise

    def resume(self, tokens: Sequence[Token], params: Parameters) -> None:
        """Reuse this stream's cache for a new request.

        The longest run of `history` matching the start of `tokens` is kept and
        moved to position 0; everything else is evicted and the rest of
        `tokens` is evaluated.
        """
        if self.state not in (StreamState.ACTIVE, StreamState.POOLED):
            raise StreamError(f"cannot resume a {self.state.value} stream")

        self._apply_parameters(params)
        if len(tokens) > self.capacity:
            raise InputTooLargeError(len(tokens), self.capacity)
        self.backend.set_seed(self.context, self.params.seed)

        length, offset = overlap(tokens, self.history)
        end = offset + length
        if length == len(tokens) and length > 0 and (offset > 0 or end < len(self.history)):
            # Logits of the last retained position are gone once the cache
            # has been cut; evaluate that token again to get them back.
            length -= 1
            end -= 1
        logger.debug(
            "resuming stream: history=%d offset=%d overlap=%d new=%d",
            len(self.history),
            offset,
            length,
            len(tokens) - length,
        )

        self.state = StreamState.ACTIVE
        cache.remove_range(self.backend, self.context, end, -1)
        if offset > 0:
            cache.remove_range(self.backend, self.context, 0, offset)
        cache.shift_range(self.backend, self.context, offset, end, -offset)
        self.history = self.history[offset:end]

        self._evaluate(tokens[length:])

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def _evaluate(self, tokens: Sequence[Token]) -> None:
        try:
            evaluate(self, tokens)
        except EvaluationError:
            self.state = StreamState.FAILED
            raise

    def next(self, lookahead: Sequence[Token] = ()) -> Token:
        """Evaluate `lookahead`, then sample and evaluate one new token.

        Raises:
            ContextFullError: there is no room for `lookahead`; history is untouched.
            EndOfStream: the model produced end-of-sequence.
        """
        if self.state is not StreamState.ACTIVE:
            raise StreamError(f"cannot generate from a {self.state.value} stream")

        headspace = self.headspace
        if headspace < len(lookahead):
            raise ContextFullError(headspace, len(lookahead))

        self._evaluate(lookahead)
        token = sample(self, len(self.history) - 1)
        if token == self.model.eos:
            raise EndOfStream()
        self._evaluate([token])
        return token

    def __iter__(self) -> Iterator[Token]:
        return self

    def __next__(self) -> Token:
        try:
            return self.next()
        except EndOfStream:
            raise StopIteration from None

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Hand the stream to the model's pool so the next request can reuse its cache."""
        if self.context is None:
            return
        if self.state is StreamState.FAILED:
            self.free()
            self.state = StreamState.FAILED
            return
        if self.model.closed:
            # The model has already cleared its pool.
            self.free()
            return
        self.state = StreamState.POOLED
        self.model.pool.put(self)

    def free(self) -> None:
        """Release the backend context."""
        if self.context is not None:
            self.backend.free_context(self.context)
            self.context = None
        self.state = StreamState.FREED

    def __enter__(self) -> "Stream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and issubclass(exc_type, EvaluationError):
            self.free()
        else:
            self.close()


class SessionPool:
    """Single-slot cache of the most recently closed stream.

    Holding a stream keeps its context (and KV cache) alive. Putting a new
    stream evicts and frees the previous occupant. The lock only guards the
    hand-off; a stream taken out of the pool is used without it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stream: Stream | None = None

    def take(self) -> Stream | None:
        with self._lock:
            stream, self._stream = self._stream, None
        return stream

    def put(self, stream: Stream) -> None:
        with self._lock:
            previous, self._stream = self._stream, stream
        if previous is not None and previous is not stream:
            logger.debug("evicting pooled stream %r", previous)
            previous.free()

    def peek(self) -> Stream | None:
        with self._lock:
            return self._stream

    def clear(self) -> None:
        stream = self.take()
        if stream is not None:
            stream.free()
