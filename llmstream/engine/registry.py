"""Backend lookup for `load_model`.

Built-in backends are recorded as "module:Class" paths and imported on first
use, so `import llmstream` never pulls in torch. Applications can register
their own backend classes (or import paths) under new names.
"""

from __future__ import annotations

import importlib
from typing import Type, Union

from .backends.base import BaseBackend

BackendEntry = Union[str, Type[BaseBackend]]

_BACKENDS: dict[str, BackendEntry] = {
    "transformers": "llmstream.engine.backends.transformers:TransformersBackend",
}


def _resolve(name: str, entry: BackendEntry) -> Type[BaseBackend]:
    if isinstance(entry, str):
        module_name, _, attr = entry.partition(":")
        entry = getattr(importlib.import_module(module_name), attr)
        _BACKENDS[name] = entry
    if not (isinstance(entry, type) and issubclass(entry, BaseBackend)):
        raise TypeError(f"backend {name!r} is not a BaseBackend subclass: {entry!r}")
    return entry


def get_backend(name: str) -> BaseBackend:
    """Instantiate the (unloaded) backend registered as `name`.

    Raises:
        ValueError: If no backend is registered under that name.
    """
    entry = _BACKENDS.get(name)
    if entry is None:
        available = ", ".join(sorted(_BACKENDS))
        raise ValueError(f"Unknown backend: {name!r}. Available: {available}")
    return _resolve(name, entry)()


def resolve_backend(backend: str | BaseBackend) -> BaseBackend:
    """Accept either a registered name or a backend instance."""
    if isinstance(backend, BaseBackend):
        return backend
    if isinstance(backend, str):
        return get_backend(backend)
    raise TypeError(f"expected a backend name or BaseBackend instance, got {type(backend).__name__}")


def register_backend(name: str, backend: BackendEntry, *, replace: bool = False) -> None:
    """Register a backend class, or a "module:Class" path imported on first use.

    Raises:
        ValueError: If `name` is taken and `replace` is false.
        TypeError: If a class is given that does not derive from BaseBackend.
    """
    if name in _BACKENDS and not replace:
        raise ValueError(f"backend {name!r} is already registered")
    if not isinstance(backend, str) and not (isinstance(backend, type) and issubclass(backend, BaseBackend)):
        raise TypeError(f"backend {name!r} must be a BaseBackend subclass or an import path")
    _BACKENDS[name] = backend


def list_backends() -> list[str]:
    return sorted(_BACKENDS)
