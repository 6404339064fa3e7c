"""Top-level package for the amicii coordination service."""

from __future__ import annotations

from typing import Any

__version__ = "0.1.0"


def build_coordinator(*args: Any, **kwargs: Any) -> Any:
    """Lazily import and build a Coordinator to keep package import cheap."""
    from .app import build_coordinator as _build_coordinator

    return _build_coordinator(*args, **kwargs)


__all__ = ["__version__", "build_coordinator"]
