"""Backend API for the Carrera Kart venue website."""

from __future__ import annotations

from typing import Any

__version__ = "1.0.0"

from .config import resolve_database_path
from .database import Database


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the configured API application."""

    from .api import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "Database",
    "__version__",
    "create_app",
    "resolve_database_path",
]
