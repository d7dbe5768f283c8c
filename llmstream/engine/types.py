"""Engine value types: tokens, sampling parameters, completion request/response.

These types are used internally by the engine and backends.
They are independent of any HTTP/API layer.
"""

from __future__ import annotations

import random
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any

Token = int

# JSON names follow the llama.cpp server API; compatibility with its knobs
# matters more than nicer names.
_JSON_NAMES: dict[str, str] = {
    "penalize_newline": "penalize_nl",
    "tfs_z": "tfsz",
}
_FIELD_NAMES: dict[str, str] = {v: k for k, v in _JSON_NAMES.items()}


@dataclass(frozen=True)
class Parameters:
    """Sampling configuration for one prediction request.

    Notes:
    - `temperature <= 0` selects greedy sampling.
    - `seed == 0` asks for a fresh random seed; use `resolve_seed()` to obtain
      the concrete value instead of mutating the caller's copy.
    - `n_predict` is not used by the session itself; it bounds the generation
      loop in `engine.generate`.
    """

    temperature: float = 0.0
    penalize_newline: bool = False
    top_k: int = 40
    top_p: float = 0.9
    n_predict: int = 128
    tfs_z: float = 1.0
    typical_p: float = 1.0
    repeat_penalty: float = 1.1
    repeat_last_n: int = 64
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    mirostat: int = 0
    mirostat_tau: float = 5.0
    mirostat_eta: float = 0.1
    seed: int = 0

    def validate(self) -> None:
        if self.mirostat not in (0, 1, 2):
            raise ValueError("'mirostat' must be 0, 1 or 2.")
        if self.n_predict < -1:
            raise ValueError("'n_predict' must be >= -1.")
        if self.repeat_last_n < -1:
            raise ValueError("'repeat_last_n' must be >= -1.")
        if not 0.0 <= self.top_p <= 1.0:
            raise ValueError("'top_p' must be within [0, 1].")
        if self.typical_p <= 0.0:
            raise ValueError("'typical_p' must be > 0.")
        if self.tfs_z <= 0.0:
            raise ValueError("'tfsz' must be > 0.")
        if self.repeat_penalty < 0.0:
            raise ValueError("'repeat_penalty' must be >= 0.")
        if self.mirostat_tau <= 0.0:
            raise ValueError("'mirostat_tau' must be > 0.")
        if self.mirostat_eta < 0.0:
            raise ValueError("'mirostat_eta' must be >= 0.")
        if not 0 <= self.seed < (1 << 32):
            raise ValueError("'seed' must be an unsigned 32-bit integer.")

    def resolve_seed(self, rng: random.Random | None = None) -> "Parameters":
        """Return a copy whose seed is nonzero, picking a random one if unset."""
        if self.seed != 0:
            return self
        rng = rng or random.SystemRandom()
        while True:
            seed = rng.getrandbits(32)
            if seed != 0:
                return replace(self, seed=seed)

    def merged(self, override: Any | None) -> "Parameters":
        """Merge a request-level override (a JSON object using llama.cpp names)."""
        if override is None:
            return self
        if isinstance(override, Parameters):
            override.validate()
            return override
        if not isinstance(override, dict):
            raise ValueError("'parameters' must be an object.")

        known = {f.name: f for f in fields(self)}
        updates: dict[str, Any] = {}
        for key, value in override.items():
            name = _FIELD_NAMES.get(key, key)
            field_def = known.get(name)
            if field_def is None:
                continue
            updates[name] = _coerce(value, field_def.type, key)

        merged = replace(self, **updates)
        merged.validate()
        return merged

    def to_dict(self) -> dict[str, Any]:
        return {_JSON_NAMES.get(k, k): v for k, v in asdict(self).items()}


def _coerce(value: Any, type_name: Any, key: str) -> Any:
    if type_name in ("bool", bool):
        if not isinstance(value, bool):
            raise ValueError(f"'{key}' must be a boolean.")
        return value
    if type_name in ("int", int):
        if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
            raise ValueError(f"'{key}' must be an integer.")
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"'{key}' must be an integer.") from exc
    if isinstance(value, bool):
        raise ValueError(f"'{key}' must be a number.")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{key}' must be a number.") from exc


@dataclass(frozen=True)
class CompletionRequest:
    """Request for text completion."""

    prompt: str
    parameters: Parameters = field(default_factory=Parameters)
    stop: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, defaults: Parameters | None = None) -> "CompletionRequest":
        """Build a request from a llama.cpp-style JSON body."""
        prompt = data.get("prompt", "")
        if not isinstance(prompt, str):
            raise ValueError("'prompt' must be a string.")
        stop = data.get("stop") or []
        if isinstance(stop, str):
            stop = [stop]
        if not isinstance(stop, list) or not all(isinstance(s, str) for s in stop):
            raise ValueError("'stop' must be a string or a list of strings.")
        params = (defaults or Parameters()).merged(
            {k: v for k, v in data.items() if k not in ("prompt", "stop", "stream")}
        )
        return cls(prompt=prompt, parameters=params, stop=list(stop))


@dataclass
class Completion:
    """Result of a text completion."""

    text: str
    tokens: list[Token] = field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    finish_reason: str = "stop"  # "stop", "length"
    seed: int = 0
