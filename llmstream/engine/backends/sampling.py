"""Torch sampling kernels operating on candidate lists.

The kernels follow llama.cpp's sampling semantics. Candidates live on the CPU
in float32: the vocabulary is small enough that the copy is cheap, and fp32
avoids softmax overflow with fp16 logits at low temperature.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import torch


@dataclass
class Candidates:
    """Token ids with their logits (and probabilities once normalized)."""

    ids: torch.Tensor
    logits: torch.Tensor
    probs: torch.Tensor | None = None
    sorted: bool = False

    @classmethod
    def from_logits(cls, logits: torch.Tensor) -> "Candidates":
        logits = logits.detach().float().cpu().reshape(-1)
        return cls(ids=torch.arange(logits.numel(), dtype=torch.long), logits=logits.clone())

    def __len__(self) -> int:
        return int(self.ids.numel())

    def _keep(self, index: torch.Tensor | slice) -> None:
        self.ids = self.ids[index]
        self.logits = self.logits[index]
        if self.probs is not None:
            self.probs = self.probs[index]

    def sort(self) -> None:
        if self.sorted:
            return
        order = torch.argsort(self.logits, descending=True, stable=True)
        self._keep(order)
        self.sorted = True

    def truncate(self, size: int) -> None:
        self._keep(slice(0, max(int(size), 0)))


def softmax(c: Candidates) -> None:
    """Sort candidates by logit and fill in their probabilities."""
    c.sort()
    c.probs = torch.softmax(c.logits, dim=-1)


def repetition_penalties(
    c: Candidates,
    last_tokens: Sequence[int],
    repeat_penalty: float,
    frequency_penalty: float,
    presence_penalty: float,
) -> None:
    if not last_tokens:
        return
    if repeat_penalty == 1.0 and frequency_penalty == 0.0 and presence_penalty == 0.0:
        return

    window = torch.tensor(list(last_tokens), dtype=torch.long)
    size = max(int(c.ids.max().item()), int(window.max().item())) + 1
    counts = torch.bincount(window, minlength=size)[c.ids].to(c.logits.dtype)
    seen = counts > 0

    logits = c.logits
    penalized = torch.where(logits <= 0, logits * repeat_penalty, logits / repeat_penalty)
    logits = torch.where(seen, penalized, logits)
    logits = logits - counts * frequency_penalty - seen.to(logits.dtype) * presence_penalty
    c.logits = logits
    c.probs = None
    c.sorted = False


def temperature(c: Candidates, temp: float) -> None:
    c.logits = c.logits / temp
    c.probs = None


def top_k(c: Candidates, k: int, min_keep: int = 1) -> None:
    n = len(c)
    if k <= 0:
        k = n
    k = min(max(k, min_keep), n)
    c.sort()
    c.truncate(k)


def tail_free(c: Candidates, z: float, min_keep: int = 1) -> None:
    if z >= 1.0 or len(c) <= 2:
        return
    softmax(c)
    first = c.probs[:-1] - c.probs[1:]
    second = (first[:-1] - first[1:]).abs()
    total = second.sum()
    if total > 0:
        second = second / total
    else:
        second = torch.full_like(second, 1.0 / second.numel())

    last_idx = len(c)
    cum = 0.0
    for i, value in enumerate(second.tolist()):
        cum += value
        if cum > z and i >= min_keep:
            last_idx = i
            break
    c.truncate(last_idx)


def typical(c: Candidates, p: float, min_keep: int = 1) -> None:
    if p >= 1.0:
        return
    softmax(c)
    probs = c.probs
    log_probs = torch.log(probs.clamp_min(torch.finfo(probs.dtype).tiny))
    entropy = -(probs * log_probs).sum()
    shifted = (-log_probs - entropy).abs()
    order = torch.argsort(shifted, stable=True)

    last_idx = len(c)
    cum = 0.0
    for i, value in enumerate(probs[order].tolist()):
        cum += value
        if cum > p and i >= min_keep - 1:
            last_idx = i + 1
            break
    c._keep(order[:last_idx])
    c.sorted = False


def top_p(c: Candidates, p: float, min_keep: int = 1) -> None:
    if p >= 1.0:
        return
    softmax(c)
    last_idx = len(c)
    cum = 0.0
    for i, value in enumerate(c.probs.tolist()):
        cum += value
        if cum >= p and i + 1 >= min_keep:
            last_idx = i + 1
            break
    c.truncate(last_idx)


def greedy(c: Candidates) -> int:
    return int(c.ids[int(torch.argmax(c.logits).item())].item())


def draw(c: Candidates, generator: torch.Generator | None = None) -> int:
    softmax(c)
    probs = c.probs
    if not torch.isfinite(probs).all() or float(probs.sum()) <= 0:
        probs = torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0).clamp_min(0.0)
        if float(probs.sum()) <= 0:
            return greedy(c)
    idx = int(torch.multinomial(probs, 1, generator=generator).item())
    return int(c.ids[idx].item())


def _surprise(c: Candidates, token: int) -> float:
    p = float(c.probs[c.ids == token][0].item())
    return -math.log2(p) if p > 0 else float("inf")


def mirostat(
    c: Candidates,
    tau: float,
    eta: float,
    m: int,
    mu: float,
    generator: torch.Generator | None = None,
) -> tuple[int, float]:
    """Mirostat v1: estimate the Zipf exponent, derive k from mu, draw, update mu."""
    n_vocab = len(c)
    softmax(c)

    probs = c.probs.tolist()
    sum_ti_bi = 0.0
    sum_ti_sq = 0.0
    for i in range(min(m, n_vocab) - 1):
        if probs[i + 1] <= 0:
            break
        t_i = math.log((i + 2) / (i + 1))
        b_i = math.log(probs[i] / probs[i + 1])
        sum_ti_bi += t_i * b_i
        sum_ti_sq += t_i * t_i

    k = n_vocab
    if sum_ti_sq > 0:
        s_hat = sum_ti_bi / sum_ti_sq
        epsilon_hat = s_hat - 1
        try:
            denom = 1 - n_vocab ** (-epsilon_hat)
            k_float = ((epsilon_hat * 2.0**mu) / denom) ** (1 / s_hat)
        except (OverflowError, ZeroDivisionError):
            k_float = float("nan")
        if isinstance(k_float, float) and math.isfinite(k_float) and k_float >= 1:
            k = int(min(k_float, n_vocab))

    top_k(c, k, 1)
    token = draw(c, generator)
    observed = _surprise(c, token)
    mu = mu - eta * (observed - tau)
    return token, mu


def mirostat_v2(
    c: Candidates,
    tau: float,
    eta: float,
    mu: float,
    generator: torch.Generator | None = None,
) -> tuple[int, float]:
    """Mirostat 2.0: drop candidates more surprising than mu, draw, update mu."""
    softmax(c)
    surprise = -torch.log2(c.probs.clamp_min(torch.finfo(c.probs.dtype).tiny))
    over = torch.nonzero(surprise > mu)
    keep = int(over[0].item()) if over.numel() else len(c)
    c.truncate(max(keep, 1))

    token = draw(c, generator)
    observed = _surprise(c, token)
    mu = mu - eta * (observed - tau)
    return token, mu
