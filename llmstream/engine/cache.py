"""Edits of a backend context's position-indexed KV cache.

The backend cache has no snapshot or undo. Callers must remove every range
they are discarding before shifting the range they keep: shifting onto
positions that are still occupied corrupts the cache.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .backends.base import BaseBackend

logger = logging.getLogger(__name__)

# Sessions never batch several sequences through one context.
SEQUENCE_ID = 0


def remove_range(backend: BaseBackend, context: Any, start: int, stop: int = -1) -> None:
    """Evict positions [start, stop) from the cache. stop == -1 means to the end."""
    if stop != -1 and stop <= start:
        return
    logger.debug("removing cache positions [%d, %d)", start, stop)
    backend.cache_remove(context, SEQUENCE_ID, start, stop)


def shift_range(backend: BaseBackend, context: Any, start: int, stop: int, delta: int) -> None:
    """Renumber positions [start, stop) by delta."""
    if delta == 0 or stop <= start:
        return
    logger.debug("shifting cache positions [%d, %d) by %d", start, stop, delta)
    backend.cache_shift(context, SEQUENCE_ID, start, stop, delta)
