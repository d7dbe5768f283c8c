"""Appending tokens to a session's evaluated history."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from .errors import CacheOverflowError, EvaluationError
from .types import Token

logger = logging.getLogger(__name__)

DECODE_OK = 0
DECODE_CACHE_OVERFLOW = 1


def evaluate(session: Any, tokens: Sequence[Token]) -> None:
    """Decode `tokens` into the session's context right after its history.

    The tokens are placed at positions len(history), len(history) + 1, ...
    and only the last one produces logits. `session.history` is extended only
    once the backend reports success, so it always mirrors the cache.
    """
    if not tokens:
        return

    tokens = list(tokens)
    pos = len(session.history)
    logger.debug("evaluating %d tokens at position %d", len(tokens), pos)
    code = session.backend.decode(session.context, pos, tokens)
    if code == DECODE_OK:
        session.history.extend(tokens)
        return
    if code == DECODE_CACHE_OVERFLOW:
        raise CacheOverflowError()
    raise EvaluationError(code)
