"""Aggregated ratings and Trakt-reconciled watch progress."""

from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "1.0.0"
__all__ = ["app", "create_app", "__version__"]

_LAZY = {"app", "create_app"}


def __getattr__(name: str) -> Any:
    # Importing the FastAPI app reads settings; defer until it is asked for.
    if name in _LAZY:
        return getattr(import_module("reelsync.main"), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
