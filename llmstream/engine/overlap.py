"""Overlap detection between a new request and the tokens already in a cache.

A follow-up request against a session usually repeats most of the previous
transcript. Finding the longest run of the cached history that matches the
start of the new request tells the session how much of the KV cache can be
kept and how much has to be evaluated again.
"""

from __future__ import annotations

from typing import Sequence


def prefix_function(seq: Sequence[int]) -> list[int]:
    """Classic KMP prefix-function (pi array) for a sequence of ints.

    pi[i] = length of the longest proper prefix of seq[:i+1]
            that is also a suffix of seq[:i+1].
    """
    n = len(seq)
    pi = [0] * n
    j = 0
    for i in range(1, n):
        while j > 0 and seq[i] != seq[j]:
            j = pi[j - 1]
        if j < n and seq[i] == seq[j]:
            j += 1
        pi[i] = j
    return pi


def overlap(tokens: Sequence[int], history: Sequence[int]) -> tuple[int, int]:
    """Find the longest prefix of `tokens` that occurs in `history`.

    Returns `(length, offset)` such that
    `history[offset:offset + length] == tokens[:length]`, with `length`
    maximal and, among equally long matches, the smallest `offset`.
    Returns `(0, 0)` when the sequences share nothing.

    Runs in O(len(tokens) + len(history)): the KMP automaton of `tokens` is
    driven over `history`, and its state after each step is the longest
    prefix of `tokens` ending at that point.
    """
    n = len(tokens)
    if n == 0 or not history:
        return 0, 0

    pi = prefix_function(tokens)
    best_len, best_pos = 0, 0
    j = 0
    for i, token in enumerate(history):
        while j > 0 and (j == n or token != tokens[j]):
            j = pi[j - 1]
        if token == tokens[j]:
            j += 1
        if j > best_len:
            best_len = j
            best_pos = i + 1 - j
            if best_len == n:
                break
    return best_len, best_pos
