"""Next-token selection policy.

The numeric work (penalties, filters, draws) is done by the backend's
sampling kernels. This module decides which kernels run and in which order:

1. temperature <= 0 -> greedy arg-max
2. mirostat == 1    -> temperature, then Mirostat v1
3. mirostat == 2    -> temperature, then Mirostat v2
4. otherwise        -> top-k, tail free, typical, top-p, temperature, draw
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from .backends.base import NULL_TOKEN
from .errors import SamplingError
from .types import Parameters, Token

logger = logging.getLogger(__name__)

# Number of candidates Mirostat v1 uses to estimate the Zipf exponent.
MIROSTAT_M = 100


@dataclass
class MirostatState:
    """Feedback state carried across the tokens of one request."""

    mu: float

    @classmethod
    def initial(cls, params: Parameters) -> "MirostatState":
        return cls(mu=2.0 * params.mirostat_tau)


def select_strategy(params: Parameters) -> str:
    if params.temperature <= 0:
        return "greedy"
    if params.mirostat == 1:
        return "mirostat"
    if params.mirostat == 2:
        return "mirostat_v2"
    return "standard"


def _greedy(backend, context, candidates, params: Parameters, state: MirostatState) -> int:
    return backend.sample_greedy(context, candidates)


def _mirostat(backend, context, candidates, params: Parameters, state: MirostatState) -> int:
    backend.apply_temperature(context, candidates, params.temperature)
    token, state.mu = backend.sample_mirostat(
        context, candidates, params.mirostat_tau, params.mirostat_eta, MIROSTAT_M, state.mu
    )
    return token


def _mirostat_v2(backend, context, candidates, params: Parameters, state: MirostatState) -> int:
    backend.apply_temperature(context, candidates, params.temperature)
    token, state.mu = backend.sample_mirostat_v2(
        context, candidates, params.mirostat_tau, params.mirostat_eta, state.mu
    )
    return token


def _standard(backend, context, candidates, params: Parameters, state: MirostatState) -> int:
    backend.apply_top_k(context, candidates, params.top_k, 1)
    backend.apply_tail_free(context, candidates, params.tfs_z, 1)
    backend.apply_typical(context, candidates, params.typical_p, 1)
    backend.apply_top_p(context, candidates, params.top_p, 1)
    backend.apply_temperature(context, candidates, params.temperature)
    return backend.sample_token(context, candidates)


_STRATEGIES: dict[str, Callable[..., int]] = {
    "greedy": _greedy,
    "mirostat": _mirostat,
    "mirostat_v2": _mirostat_v2,
    "standard": _standard,
}


def penalty_window(history: Sequence[Token], params: Parameters, nl: Token | None) -> list[Token]:
    """Tokens whose repetition is penalized.

    The newline token is left out unless `penalize_newline` is set.
    """
    n = params.repeat_last_n
    if n == 0 or params.repeat_penalty == 0:
        return []
    window = list(history if n < 0 else history[-n:])
    if not params.penalize_newline and nl is not None:
        window = [t for t in window if t != nl]
    return window


def sample(session: Any, position: int) -> Token:
    """Pick the next token from the logits at `position` of the session's context."""
    backend = session.backend
    context = session.context
    params: Parameters = session.params

    candidates = backend.candidates(context, position)
    if candidates is None:
        raise SamplingError(f"no output available at position {position}")

    window = penalty_window(session.history, params, session.model.nl)
    if window:
        backend.apply_repetition_penalties(
            context,
            candidates,
            window,
            params.repeat_penalty,
            params.frequency_penalty,
            params.presence_penalty,
        )

    strategy = select_strategy(params)
    token = _STRATEGIES[strategy](backend, context, candidates, params, session.mirostat)
    logger.debug("sampled token %s at position %d (%s)", token, position, strategy)
    if token is None or token == NULL_TOKEN or not 0 <= token < backend.n_vocab:
        raise SamplingError("backend failed to produce a token")
    return Token(token)
