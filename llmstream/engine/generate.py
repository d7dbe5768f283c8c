"""Shared text generation / streaming logic on top of `Model` and `Stream`.

The session core only knows tokens. This module turns a text prompt into a
stream of text pieces, bounding the work with `n_predict` and stop strings.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterator, Sequence

from .errors import ContextFullError, EndOfStream
from .types import Completion, CompletionRequest, Token

if TYPE_CHECKING:
    from .model import Model

logger = logging.getLogger(__name__)


class _TextAccumulator:
    """Incremental detokenizer that applies stop strings.

    Text is held back while it ends in an incomplete UTF-8 sequence or could
    still be the beginning of a stop string.
    """

    def __init__(self, model: Model, stop: Sequence[str]) -> None:
        self._model = model
        self._stop = [s for s in stop if s]
        self._hold = max((len(s) for s in self._stop), default=1) - 1
        self._tokens: list[Token] = []
        self._emitted = 0
        self.text = ""
        self.stopped = False

    def push(self, token: Token) -> str:
        self._tokens.append(token)
        text = self._model.decode(self._tokens)
        if text.endswith("\ufffd"):
            return ""
        self.text = text

        hits = [i for i in (text.find(s) for s in self._stop) if i != -1]
        if hits:
            self.text = text[: min(hits)]
            self.stopped = True
            return self._emit(len(self.text))
        return self._emit(len(text) - self._hold)

    def flush(self) -> str:
        return self._emit(len(self.text))

    def _emit(self, upto: int) -> str:
        upto = max(upto, self._emitted)
        piece = self.text[self._emitted : upto]
        self._emitted = upto
        return piece


class CompletionRun:
    """One text completion. Iterate it to receive text pieces as they are generated.

    The stream is closed back to the model's pool when iteration ends, even if
    the consumer stops early.
    """

    def __init__(self, model: Model, request: CompletionRequest) -> None:
        self.model = model
        self.request = request
        self.tokens: list[Token] = []
        self.prompt_tokens = 0
        self.seed = 0
        self.finish_reason: str | None = None
        self._accumulator = _TextAccumulator(model, request.stop)

    @property
    def text(self) -> str:
        return self._accumulator.text

    def __iter__(self) -> Iterator[str]:
        params = self.request.parameters
        prompt = self.model.encode(self.request.prompt)
        self.prompt_tokens = len(prompt)

        stream = self.model.predict(params, prompt)
        self.seed = stream.params.seed
        try:
            limit = params.n_predict
            while limit < 0 or len(self.tokens) < limit:
                if stream.headspace <= 0:
                    self.finish_reason = "length"
                    break
                try:
                    token = stream.next()
                except EndOfStream:
                    self.finish_reason = "stop"
                    break
                except ContextFullError:
                    logger.debug("context full after %d tokens", len(self.tokens))
                    self.finish_reason = "length"
                    break
                self.tokens.append(token)
                piece = self._accumulator.push(token)
                if piece:
                    yield piece
                if self._accumulator.stopped:
                    self.finish_reason = "stop"
                    break
            else:
                self.finish_reason = "length"

            tail = self._accumulator.flush()
            if tail:
                yield tail
        finally:
            # A stream that failed to evaluate is freed instead of pooled.
            stream.close()

    def result(self) -> Completion:
        return Completion(
            text=self.text,
            tokens=list(self.tokens),
            prompt_tokens=self.prompt_tokens,
            completion_tokens=len(self.tokens),
            finish_reason=self.finish_reason or "stop",
            seed=self.seed,
        )


def stream_completion(model: Model, request: CompletionRequest) -> CompletionRun:
    """Start a completion whose text is produced while iterating the result."""
    return CompletionRun(model, request)


def complete(model: Model, request: CompletionRequest) -> Completion:
    """Run a completion to the end and return the whole result."""
    run = CompletionRun(model, request)
    for _ in run:
        pass
    return run.result()
