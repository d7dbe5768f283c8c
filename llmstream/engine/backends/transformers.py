"""Backend running Hugging Face causal language models with PyTorch."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

from ...runtime import check_torch_required, default_device
from .base import BaseBackend

if TYPE_CHECKING:
    import torch

    from .sampling import Candidates

logger = logging.getLogger(__name__)

_DECODE_OK = 0
_DECODE_NO_ROOM = 1
_DECODE_FAILED = -1


def _dtype_from_string(dtype: str) -> Any:
    import torch

    dt = dtype.strip().lower()
    if dt in {"fp16", "float16", "half"}:
        return torch.float16
    if dt in {"bf16", "bfloat16"}:
        return torch.bfloat16
    if dt in {"fp32", "float32", "float"}:
        return torch.float32
    raise ValueError(f"Unknown dtype: {dtype!r}")


# =============================================================================
# Context State
# =============================================================================


@dataclass
class _Context:
    """Internal state of one context.

    `cells` lists the (position, token) pairs resident in `past_key_values`,
    in cache order. Keys are stored with their rotary embedding applied, so
    after a shift or a removal that is not a plain truncation the cache is
    marked stale and recomputed from `cells` before the next decode.
    """

    n_ctx: int
    generator: torch.Generator
    past_key_values: Any = None
    cells: list[tuple[int, int]] = field(default_factory=list)
    stale: bool = False
    logits_pos: int | None = None
    logits: torch.Tensor | None = None


# =============================================================================
# Backend
# =============================================================================


class TransformersBackend(BaseBackend):
    """
    Backend for `transformers` causal LMs.

    Each context owns a `DynamicCache`. Positions are passed explicitly as
    `position_ids`, so cache slots and token positions are kept apart and the
    session layer can renumber positions after evicting a prefix.

    Example:
        >>> backend = TransformersBackend()
        >>> backend.load("gpt2", device="cpu")
        >>> ctx = backend.new_context(n_ctx=backend.n_ctx_train, seed=42)
        >>> backend.decode(ctx, 0, backend.tokenize("Hello"))
        0
    """

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def __init__(self) -> None:
        self._model = None
        self._tokenizer = None
        self._model_path: str | None = None
        self._device: str = "cpu"
        self._dtype = None
        self._n_ctx_train: int = 0
        self._n_vocab: int = 0
        self._nl: int | None = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def model(self):
        """Access the underlying model (for advanced use cases)."""
        return self._model

    @property
    def tokenizer(self):
        """Access the tokenizer."""
        return self._tokenizer

    @property
    def n_ctx_train(self) -> int:
        return self._n_ctx_train

    @property
    def n_vocab(self) -> int:
        return self._n_vocab

    @property
    def model_info(self) -> dict[str, Any]:
        """Return model metadata."""
        return {
            "model_path": self._model_path,
            "device": self._device,
            "dtype": str(self._dtype),
            "loaded": self._model is not None,
            "n_ctx_train": self._n_ctx_train,
            "n_vocab": self._n_vocab,
        }

    def token_bos(self) -> int | None:
        return None if self._tokenizer is None else self._tokenizer.bos_token_id

    def token_eos(self) -> int | None:
        return None if self._tokenizer is None else self._tokenizer.eos_token_id

    def token_nl(self) -> int | None:
        return self._nl

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, model_path: str, **kwargs) -> None:
        """Load a causal LM and its tokenizer.

        Args:
            model_path: Path to the model (local or HF hub).
            device: Device to load the model on (default: best available).
            dtype: Torch dtype or its name (default: float32 on CPU, float16 otherwise).
            **kwargs: Additional kwargs passed to from_pretrained().
        """
        check_torch_required()
        import torch
        from transformers import AutoModelForCausalLM, AutoTokenizer

        self._model_path = model_path
        self._device = kwargs.pop("device", None) or default_device()
        dtype = kwargs.pop("dtype", None)
        if isinstance(dtype, str):
            dtype = _dtype_from_string(dtype)
        if dtype is None:
            dtype = torch.float32 if self._device == "cpu" else torch.float16
        self._dtype = dtype

        trust_remote_code = kwargs.pop("trust_remote_code", False)

        self._tokenizer = AutoTokenizer.from_pretrained(
            model_path,
            trust_remote_code=trust_remote_code,
        )
        model = AutoModelForCausalLM.from_pretrained(
            model_path,
            torch_dtype=self._dtype,
            trust_remote_code=trust_remote_code,
            **kwargs,
        )
        model.to(self._device)
        self.attach(model, self._tokenizer, model_path=model_path)

    def attach(self, model, tokenizer, *, model_path: str | None = None) -> None:
        """Use an already constructed causal LM and tokenizer.

        The model stays on its current device and dtype.
        """
        self._model = model
        self._tokenizer = tokenizer
        self._model_path = model_path
        self._device = str(model.device)
        self._dtype = model.dtype
        self._model.eval()

        config = self._model.config
        n_ctx = getattr(config, "max_position_embeddings", None) or getattr(config, "n_positions", None)
        self._n_ctx_train = int(n_ctx or 0)
        self._n_vocab = int(getattr(config, "vocab_size", 0) or len(self._tokenizer))

        nl = self._tokenizer.encode("\n", add_special_tokens=False)
        self._nl = nl[-1] if nl else None

        logger.info(
            "loaded %s on %s (%s): n_ctx_train=%d n_vocab=%d",
            model_path,
            self._device,
            self._dtype,
            self._n_ctx_train,
            self._n_vocab,
        )

    def unload(self) -> None:
        """Unload the model and free GPU memory."""
        import gc

        import torch

        del self._model
        del self._tokenizer
        self._model = None
        self._tokenizer = None

        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    def _ensure_loaded(self) -> None:
        if self._model is None or self._tokenizer is None:
            raise RuntimeError("Model not loaded. Call load() first.")

    # -------------------------------------------------------------------------
    # Tokenization
    # -------------------------------------------------------------------------

    def tokenize(self, text: str) -> list[int]:
        self._ensure_loaded()
        return list(self._tokenizer.encode(text, add_special_tokens=False))

    def detokenize(self, tokens: Sequence[int]) -> str:
        self._ensure_loaded()
        return self._tokenizer.decode(list(tokens), skip_special_tokens=False)

    # -------------------------------------------------------------------------
    # Contexts
    # -------------------------------------------------------------------------

    def new_context(self, n_ctx: int, seed: int) -> _Context | None:
        import torch

        self._ensure_loaded()
        generator = torch.Generator(device="cpu")
        generator.manual_seed(seed)
        return _Context(n_ctx=n_ctx, generator=generator)

    def set_seed(self, context: _Context, seed: int) -> None:
        context.generator.manual_seed(seed)

    def free_context(self, context: _Context) -> None:
        context.past_key_values = None
        context.cells.clear()
        context.logits = None
        context.logits_pos = None

    def decode(self, context: _Context, start_pos: int, tokens: Sequence[int]) -> int:
        import torch

        tokens = list(tokens)
        if not tokens:
            return _DECODE_OK
        if len(context.cells) + len(tokens) > context.n_ctx:
            return _DECODE_NO_ROOM

        positions = list(range(start_pos, start_pos + len(tokens)))
        try:
            if context.stale:
                self._rebuild_cache(context)
            outputs = self._forward(context, tokens, positions)
        except torch.cuda.OutOfMemoryError:
            logger.exception("out of memory while decoding %d tokens", len(tokens))
            return _DECODE_NO_ROOM
        except RuntimeError:
            logger.exception("decode of %d tokens at position %d failed", len(tokens), start_pos)
            return _DECODE_FAILED

        context.past_key_values = outputs.past_key_values
        context.cells.extend(zip(positions, tokens))
        context.logits = outputs.logits[0, -1].detach()
        context.logits_pos = positions[-1]
        return _DECODE_OK

    def _forward(self, context: _Context, tokens: list[int], positions: list[int]):
        import torch
        from transformers import DynamicCache

        self._ensure_loaded()
        device = self._model.device
        if context.past_key_values is None:
            context.past_key_values = DynamicCache()
        first_slot = len(context.cells)

        input_ids = torch.tensor([tokens], dtype=torch.long, device=device)
        position_ids = torch.tensor([positions], dtype=torch.long, device=device)
        cache_position = torch.arange(first_slot, first_slot + len(tokens), device=device)

        with torch.no_grad():
            return self._model(
                input_ids=input_ids,
                position_ids=position_ids,
                cache_position=cache_position,
                past_key_values=context.past_key_values,
                use_cache=True,
            )

    def _rebuild_cache(self, context: _Context) -> None:
        """Recompute the KV cache from the surviving cells at their current positions."""
        cells = list(context.cells)
        context.past_key_values = None
        context.cells = []
        context.stale = False
        if not cells:
            return
        logger.debug("recomputing KV cache for %d cells", len(cells))
        positions = [pos for pos, _ in cells]
        tokens = [tok for _, tok in cells]
        outputs = self._forward(context, tokens, positions)
        context.past_key_values = outputs.past_key_values
        context.cells = cells

    def candidates(self, context: _Context, pos: int) -> Candidates | None:
        from .sampling import Candidates

        if context.logits is None or context.logits_pos != pos:
            return None
        return Candidates.from_logits(context.logits)

    def cache_remove(self, context: _Context, seq_id: int, start: int, stop: int) -> None:
        if stop < 0:
            stop = 1 << 62
        keep = [cell for cell in context.cells if not start <= cell[0] < stop]
        if len(keep) == len(context.cells):
            return
        if context.logits_pos is not None and start <= context.logits_pos < stop:
            context.logits = None
            context.logits_pos = None

        if not keep:
            context.past_key_values = None
            context.stale = False
        elif keep == context.cells[: len(keep)] and not context.stale:
            # A negative count drops that many trailing slots on every
            # transformers release; positive lengths are rejected by 5.x.
            context.past_key_values.crop(len(keep) - len(context.cells))
        else:
            context.stale = True
        context.cells = keep

    def cache_shift(self, context: _Context, seq_id: int, start: int, stop: int, delta: int) -> None:
        if delta == 0:
            return
        moved = False
        cells = []
        for pos, tok in context.cells:
            if start <= pos < stop:
                pos += delta
                moved = True
            cells.append((pos, tok))
        if not moved:
            return
        context.cells = cells
        context.stale = True
        if context.logits_pos is not None and start <= context.logits_pos < stop:
            context.logits_pos += delta

    # -------------------------------------------------------------------------
    # Sampling kernels
    # -------------------------------------------------------------------------

    def apply_repetition_penalties(
        self,
        context: _Context,
        candidates: Candidates,
        last_tokens: Sequence[int],
        repeat_penalty: float,
        frequency_penalty: float,
        presence_penalty: float,
    ) -> None:
        from . import sampling

        sampling.repetition_penalties(
            candidates, last_tokens, repeat_penalty, frequency_penalty, presence_penalty
        )

    def apply_temperature(self, context: _Context, candidates: Candidates, temperature: float) -> None:
        from . import sampling

        sampling.temperature(candidates, temperature)

    def apply_top_k(self, context: _Context, candidates: Candidates, k: int, min_keep: int = 1) -> None:
        from . import sampling

        sampling.top_k(candidates, k, min_keep)

    def apply_tail_free(self, context: _Context, candidates: Candidates, z: float, min_keep: int = 1) -> None:
        from . import sampling

        sampling.tail_free(candidates, z, min_keep)

    def apply_typical(self, context: _Context, candidates: Candidates, p: float, min_keep: int = 1) -> None:
        from . import sampling

        sampling.typical(candidates, p, min_keep)

    def apply_top_p(self, context: _Context, candidates: Candidates, p: float, min_keep: int = 1) -> None:
        from . import sampling

        sampling.top_p(candidates, p, min_keep)

    def sample_greedy(self, context: _Context, candidates: Candidates) -> int:
        from . import sampling

        return sampling.greedy(candidates)

    def sample_token(self, context: _Context, candidates: Candidates) -> int:
        from . import sampling

        return sampling.draw(candidates, context.generator)

    def sample_mirostat(
        self, context: _Context, candidates: Candidates, tau: float, eta: float, m: int, mu: float
    ) -> tuple[int, float]:
        from . import sampling

        return sampling.mirostat(candidates, tau, eta, m, mu, context.generator)

    def sample_mirostat_v2(
        self, context: _Context, candidates: Candidates, tau: float, eta: float, mu: float
    ) -> tuple[int, float]:
        from . import sampling

        return sampling.mirostat_v2(candidates, tau, eta, mu, context.generator)
