"""HomeMap visualization client core."""

from __future__ import annotations

from .const import APP_VERSION

__version__ = APP_VERSION

__all__ = ["__version__"]
