"""Loaded models: special tokens, text <-> token conversion and stream creation."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from .backends.base import BaseBackend
from .errors import InputTooLargeError, ModelLoadError
from .registry import resolve_backend
from .session import SessionPool, Stream
from .types import Parameters, Token

logger = logging.getLogger(__name__)


def load_model(
    model_path: str,
    *,
    backend: str | BaseBackend = "transformers",
    pool: SessionPool | None = None,
    **kwargs: Any,
) -> Model:
    """Load a model.

    Args:
        model_path: Path (or hub id) understood by the backend.
        backend: Registered backend name or an unloaded backend instance.
        pool: Session pool to reuse closed streams through (default: a new one).
        **kwargs: Backend loading options (device, dtype, ...).

    Raises:
        ModelLoadError: if the weights cannot be loaded or lack required metadata.
    """
    impl = resolve_backend(backend)
    try:
        impl.load(model_path, **kwargs)
    except ModelLoadError:
        raise
    except Exception as exc:
        raise ModelLoadError(f"failed to load {model_path!r}: {exc}") from exc
    return Model(impl, model_path=model_path, pool=pool)


class Model:
    """A loaded model and the factory for its streams.

    The model exclusively owns its backend and releases it once in `close()`.
    Streams borrow the model; close them (or let `close()` free the pooled
    one) before closing the model.
    """

    def __init__(
        self,
        backend: BaseBackend,
        *,
        model_path: str | None = None,
        pool: SessionPool | None = None,
    ) -> None:
        self.backend = backend
        self.model_path = model_path
        self.pool = pool if pool is not None else SessionPool()

        try:
            self.n_ctx_train = int(backend.n_ctx_train or 0)
            if self.n_ctx_train < 1:
                raise ModelLoadError(f"missing n_ctx_train in model {model_path!r}")
            self.eos = backend.token_eos()
            if self.eos is None:
                raise ModelLoadError(f"missing eos token in model {model_path!r}")
            self.bos = backend.token_bos()
            self.nl = backend.token_nl()
        except Exception:
            backend.unload()
            raise
        self._closed = False

    def __repr__(self) -> str:
        return f"Model({self.model_path!r}, n_ctx_train={self.n_ctx_train})"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def model_info(self) -> dict[str, Any]:
        return {
            "model_path": self.model_path,
            "n_ctx": self.n_ctx_train,
            "bos": self.bos,
            "eos": self.eos,
            "nl": self.nl,
            **self.backend.model_info,
        }

    def encode(self, text: str) -> list[Token]:
        return list(self.backend.tokenize(text))

    def decode(self, tokens: Sequence[Token]) -> str:
        text = self.backend.detokenize(tokens)
        # There is generally a leading space due to tokenization.
        if text.startswith(" "):
            text = text[1:]
        return text

    def predict(self, params: Parameters, tokens: Sequence[Token]) -> Stream:
        """Start generating after `tokens`, reusing the pooled stream's cache when possible.

        The returned stream's `params` carry the resolved seed.
        """
        if self._closed:
            raise RuntimeError("Model is closed.")

        params.validate()
        tokens = list(tokens)
        if self.bos is not None:
            tokens.insert(0, self.bos)

        stream = self.pool.take()
        if stream is None:
            stream = Stream(self)
            # initialize() frees its own context on failure.
            stream.initialize(tokens, params)
            return stream

        try:
            stream.resume(tokens, params)
        except InputTooLargeError:
            # Nothing was edited; the cache is still good for a later request.
            stream.close()
            raise
        except Exception:
            stream.free()
            raise
        return stream

    def close(self) -> None:
        """Free the pooled stream, then release the weights."""
        self.pool.clear()
        if self._closed:
            return
        self._closed = True
        self.backend.unload()

    def __enter__(self) -> "Model":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
