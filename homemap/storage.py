"""Versioned JSON persistence for HomeMap data files."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

_LOGGER = logging.getLogger(__name__)


class Store:
    """Persist dictionaries to JSON files wrapped in a version envelope."""

    def __init__(self, base_path: Path | str, version: int, key: str) -> None:
        """Bind the store to ``<base_path>/.storage/<key>``."""

        self.version = version
        self.key = key
        self._path = Path(base_path) / ".storage" / key
        self._minor_version = 1

    @property
    def path(self) -> Path:
        """Return the location of the backing file."""

        return self._path

    async def async_load(self) -> dict[str, Any] | None:
        """Load the stored payload, or ``None`` when absent or unreadable."""

        def _read() -> dict[str, Any] | None:
            if not self._path.exists():
                return None
            text = self._path.read_text(encoding="utf-8")
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                _LOGGER.error("Discarding corrupt storage file %s", self._path)
                return None
            if isinstance(data, dict) and "data" in data:
                inner = data.get("data")
                return inner if isinstance(inner, dict) else None
            return data if isinstance(data, dict) else None

        return await asyncio.to_thread(_read)

    async def async_save(self, data: dict[str, Any]) -> None:
        """Persist ``data`` using the storage envelope."""

        def _write() -> None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            envelope = {
                "version": self.version,
                "minor_version": self._minor_version,
                "key": self.key,
                "data": data,
            }
            tmp_path = self._path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(envelope, indent=2), encoding="utf-8")
            tmp_path.replace(self._path)

        await asyncio.to_thread(_write)

    async def async_remove(self) -> None:
        """Delete the stored file if present."""

        def _remove() -> None:
            if self._path.exists():
                self._path.unlink()

        await asyncio.to_thread(_remove)


async def async_read_json(path: Path) -> Any | None:
    """Read a plain JSON document, returning ``None`` when it does not exist."""

    def _read() -> Any | None:
        if not path.is_file():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    return await asyncio.to_thread(_read)


async def async_write_json(path: Path, payload: Any) -> None:
    """Write ``payload`` as an indented JSON document."""

    def _write() -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    await asyncio.to_thread(_write)


__all__ = ["Store", "async_read_json", "async_write_json"]
