import os
import sys
from dataclasses import dataclass, field

import pytest


# Ensure the repository root is on sys.path so tests can import local entrypoints
# like apps.server.app without requiring an editable install.
_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)


from llmstream.engine.backends.base import BaseBackend  # noqa: E402
from llmstream.engine.model import Model  # noqa: E402


@dataclass
class FakeContext:
    n_ctx: int
    seed: int
    cells: list = field(default_factory=list)  # (position, token) in cache order
    logits_pos: int | None = None
    corrupted: bool = False
    freed: bool = False


@dataclass
class FakeCandidates:
    logits: list


class FakeBackend(BaseBackend):
    """In-memory backend that mimics a position-indexed KV cache.

    - `decode` refuses (code 99) to append to a cache whose positions are not
      exactly 0..len-1 or at a position other than the next free one.
    - A shift onto an occupied position marks the context corrupted.
    - Greedy/draw pick the arg-max; `script` decides which token has the
      highest logit on each `candidates()` call (default: `default_token`).
    """

    def __init__(self, *, n_ctx_train: int = 2048, n_vocab: int = 32, bos=1, eos=2, nl=13) -> None:
        self._n_ctx_train = n_ctx_train
        self._n_vocab = n_vocab
        self.bos, self.eos, self.nl = bos, eos, nl
        self.loaded = False
        self.unloaded = 0
        self.contexts: list[FakeContext] = []
        self.decoded: list[tuple[int, list[int]]] = []
        self.ops: list[tuple] = []
        self.calls: list[str] = []
        self.penalty_windows: list[list[int]] = []
        self.script: list[int] = []
        self.default_token = 7
        self.fail_code: int | None = None
        self.sample_result: int | None = None

    # loading / metadata
    def load(self, model_path: str, **kwargs) -> None:
        self.loaded = True
        self.load_kwargs = kwargs

    def unload(self) -> None:
        self.unloaded += 1

    @property
    def n_ctx_train(self) -> int:
        return self._n_ctx_train

    @property
    def n_vocab(self) -> int:
        return self._n_vocab

    def token_bos(self):
        return self.bos

    def token_eos(self):
        return self.eos

    def token_nl(self):
        return self.nl

    # tokenization: one token per character, "a" -> 20, "b" -> 21, ...; " " -> 3
    def tokenize(self, text: str) -> list[int]:
        return [3 if ch == " " else 20 + (ord(ch) - ord("a")) % 10 for ch in text]

    def detokenize(self, tokens) -> str:
        pieces = []
        for t in tokens:
            if t == 3:
                pieces.append(" ")
            elif t == self.nl:
                pieces.append("\n")
            elif 20 <= t < 30:
                pieces.append(chr(ord("a") + t - 20))
            elif t == 7:
                pieces.append(" x")
            else:
                pieces.append(f"<{t}>")
        return "".join(pieces)

    # contexts
    def new_context(self, n_ctx: int, seed: int):
        ctx = FakeContext(n_ctx=n_ctx, seed=seed)
        self.contexts.append(ctx)
        return ctx

    def set_seed(self, context, seed: int) -> None:
        context.seed = seed

    def free_context(self, context) -> None:
        context.freed = True
        context.cells.clear()

    def decode(self, context, start_pos, tokens) -> int:
        tokens = list(tokens)
        if self.fail_code is not None:
            return self.fail_code
        if len(context.cells) + len(tokens) > context.n_ctx:
            return 1
        if [pos for pos, _ in context.cells] != list(range(len(context.cells))):
            return 99
        if start_pos != len(context.cells):
            return 99
        for i, tok in enumerate(tokens):
            context.cells.append((start_pos + i, tok))
        context.logits_pos = start_pos + len(tokens) - 1
        self.decoded.append((start_pos, tokens))
        return 0

    def candidates(self, context, pos):
        if context.logits_pos != pos:
            return None
        token = self.script.pop(0) if self.script else self.default_token
        logits = [0.0] * self._n_vocab
        logits[token] = 10.0
        return FakeCandidates(logits)

    def cache_remove(self, context, seq_id, start, stop) -> None:
        self.ops.append(("rm", seq_id, start, stop))
        end = float("inf") if stop < 0 else stop
        context.cells = [c for c in context.cells if not start <= c[0] < end]
        if context.logits_pos is not None and start <= context.logits_pos < end:
            context.logits_pos = None

    def cache_shift(self, context, seq_id, start, stop, delta) -> None:
        self.ops.append(("shift", seq_id, start, stop, delta))
        cells = []
        for pos, tok in context.cells:
            cells.append((pos + delta, tok) if start <= pos < stop else (pos, tok))
        if len({pos for pos, _ in cells}) != len(cells):
            context.corrupted = True
        context.cells = cells
        if context.logits_pos is not None and start <= context.logits_pos < stop:
            context.logits_pos += delta

    # sampling kernels
    def apply_repetition_penalties(self, context, candidates, last_tokens, repeat, freq, presence) -> None:
        self.calls.append("penalties")
        self.penalty_windows.append(list(last_tokens))

    def apply_temperature(self, context, candidates, temperature) -> None:
        self.calls.append("temperature")

    def apply_top_k(self, context, candidates, k, min_keep=1) -> None:
        self.calls.append("top_k")

    def apply_tail_free(self, context, candidates, z, min_keep=1) -> None:
        self.calls.append("tail_free")

    def apply_typical(self, context, candidates, p, min_keep=1) -> None:
        self.calls.append("typical")

    def apply_top_p(self, context, candidates, p, min_keep=1) -> None:
        self.calls.append("top_p")

    def _argmax(self, candidates) -> int:
        if self.sample_result is not None:
            return self.sample_result
        return max(range(len(candidates.logits)), key=candidates.logits.__getitem__)

    def sample_greedy(self, context, candidates) -> int:
        self.calls.append("greedy")
        return self._argmax(candidates)

    def sample_token(self, context, candidates) -> int:
        self.calls.append("draw")
        return self._argmax(candidates)

    def sample_mirostat(self, context, candidates, tau, eta, m, mu):
        self.calls.append(f"mirostat(mu={mu})")
        return self._argmax(candidates), mu - eta

    def sample_mirostat_v2(self, context, candidates, tau, eta, mu):
        self.calls.append(f"mirostat_v2(mu={mu})")
        return self._argmax(candidates), mu - eta


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def model(backend) -> Model:
    m = Model(backend, model_path="fake")
    yield m
    m.close()


@pytest.fixture
def make_backend():
    return FakeBackend
