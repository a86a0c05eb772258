"""Storage backend registry."""

from typing import Any, Type

from ..errors import UnavailableError
from .base import StorageBackend

# Registry of all available backends
_BACKENDS: dict[str, Type[StorageBackend]] = {}


def register_backend(backend_class: Type[StorageBackend]) -> Type[StorageBackend]:
    """Decorator to register a backend class."""
    _BACKENDS[backend_class.name] = backend_class
    return backend_class


def create_backend(name: str, config: dict[str, Any] | None = None) -> StorageBackend:
    """Construct a registered backend from its config dict."""
    backend_class = _BACKENDS.get(name)
    if backend_class is None:
        raise UnavailableError(name, list(_BACKENDS))
    return backend_class(config or {})


def get_available_backends() -> list[str]:
    """Names of all registered backends."""
    return sorted(_BACKENDS)


def is_backend_available(name: str) -> bool:
    return name in _BACKENDS


def get_backend_class(name: str) -> Type[StorageBackend] | None:
    return _BACKENDS.get(name)


__all__ = [
    "StorageBackend",
    "register_backend",
    "create_backend",
    "get_available_backends",
    "is_backend_available",
    "get_backend_class",
]

# Import backends to trigger registration
from . import filesystem  # noqa: F401, E402
from . import memory  # noqa: F401, E402
from . import sqlite  # noqa: F401, E402
