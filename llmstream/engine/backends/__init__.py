# Inference backends
#
# Each backend implements a common interface for:
#   - Loading weights + tokenizer
#   - Contexts with a position-indexed KV cache (decode, remove, shift)
#   - Per-position logits and the numeric sampling kernels
#
# The session layer uses backends to stay engine-agnostic.

from .base import NULL_TOKEN, BaseBackend

__all__ = ["BaseBackend", "NULL_TOKEN"]
