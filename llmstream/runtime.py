"""Runtime environment checks for llmstream backends."""

from __future__ import annotations

import functools


@functools.lru_cache(maxsize=1)
def is_torch_available() -> bool:
    """Check if torch can be imported."""
    try:
        import torch  # noqa: F401
        return True
    except ImportError:
        return False


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    if not is_torch_available():
        return False
    import torch

    return torch.cuda.is_available()


def default_device() -> str:
    """Pick the device a backend should load onto when none is given."""
    if is_cuda_available():
        return "cuda"
    if is_torch_available():
        import torch

        mps = getattr(torch.backends, "mps", None)
        if mps is not None and mps.is_available():
            return "mps"
    return "cpu"


def check_torch_required() -> None:
    """Raise ImportError if torch is not available."""
    if not is_torch_available():
        raise ImportError(
            "llmstream's transformers backend requires PyTorch. "
            "Install it with: pip install torch"
        )
