"""
llmstream - incremental, cache-reusing text generation over local language models.

Successive prediction requests against the same model reuse the KV cache of
the previous request: only the part of the new token sequence that is not
already resident in the cache is evaluated.

Quick Start:
    from llmstream import Parameters, load_model

    with load_model("gpt2", device="cpu") as model:
        stream = model.predict(Parameters(temperature=0.7), model.encode("Hello"))
        for token in stream:
            print(model.decode([token]), end="", flush=True)
        stream.close()

Submodules:
    - llmstream.engine: sessions, overlap matching, sampling policy
    - llmstream.engine.backends: inference backends
"""

from llmstream._version import __version__

from llmstream.engine.errors import (
    CacheOverflowError,
    ContextFullError,
    EndOfStream,
    EvaluationError,
    InputTooLargeError,
    ModelLoadError,
    SamplingError,
    StreamError,
)
from llmstream.engine.generate import CompletionRun, complete, stream_completion
from llmstream.engine.model import Model, load_model
from llmstream.engine.overlap import overlap
from llmstream.engine.registry import get_backend, list_backends, register_backend
from llmstream.engine.session import RESERVED_SLACK, SessionPool, Stream, StreamState
from llmstream.engine.types import Completion, CompletionRequest, Parameters, Token

__all__ = [
    # Version
    "__version__",
    # Models and streams
    "load_model",
    "Model",
    "Stream",
    "StreamState",
    "SessionPool",
    "RESERVED_SLACK",
    # Configuration and results
    "Parameters",
    "Token",
    "CompletionRequest",
    "Completion",
    # Text generation
    "CompletionRun",
    "complete",
    "stream_completion",
    # Utilities
    "overlap",
    "get_backend",
    "list_backends",
    "register_backend",
    # Errors
    "StreamError",
    "ModelLoadError",
    "InputTooLargeError",
    "ContextFullError",
    "EvaluationError",
    "CacheOverflowError",
    "SamplingError",
    "EndOfStream",
]
