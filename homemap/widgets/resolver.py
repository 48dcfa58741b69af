"""Resolve widget definitions and icon sets for device types."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from ..const import BUILT_IN_PACKAGE, MIN_WIDGET_VERSION
from ..errors import ProtocolDecodeError, ResolutionMiss, VersionIncompatible
from ..utils import ensure_widget_version
from .models import WidgetDefinition
from .packages import PackageRegistry

_LOGGER = logging.getLogger(__name__)

ICON_EXTENSIONS = (".svg", ".png", ".jpg", ".jpeg")

_BUILT_IN_PREFIX = "icons/built-in/"
_PACKAGES_PREFIX = "icons/packages/"
_ROOT_PREFIX = "icons/"


@dataclass(frozen=True, slots=True)
class IconSetInfo:
    """An icon set found in the data directory."""

    name: str
    location: str
    path: str
    package_id: str | None


def normalize_icon_set_ref(
    name: str, package_id: str | None = None
) -> tuple[str, str | None]:
    """Turn legacy icon set paths into a ``(name, package_id)`` pair.

    ``icons/built-in/X``, ``icons/packages/P/X`` and ``icons/X`` are all
    accepted. Plain names keep the supplied ``package_id``.
    """

    ref = name.strip().strip("/")
    if ref.startswith(_BUILT_IN_PREFIX):
        return ref[len(_BUILT_IN_PREFIX) :], BUILT_IN_PACKAGE
    if ref.startswith(_PACKAGES_PREFIX):
        package, _, set_name = ref[len(_PACKAGES_PREFIX) :].partition("/")
        if package and set_name:
            return set_name, package
    if ref.startswith(_ROOT_PREFIX):
        return ref[len(_ROOT_PREFIX) :], package_id
    return ref, package_id


class WidgetResolver:
    """Resolve the widget definition governing each device type.

    Resolution order is an explicit ``package/widget`` reference, then the
    persisted type mapping, then a built-in widget named after the type, then
    the first installed package (by package id) whose manifest claims the type.
    Results, including misses, are cached until :meth:`clear_cache`.
    """

    def __init__(
        self,
        registry: PackageRegistry,
        data_path: Path | str | None = None,
        *,
        min_widget_version: str = MIN_WIDGET_VERSION,
    ) -> None:
        """Bind the resolver to the package registry and data directory."""

        self._registry = registry
        self._data_path = Path(data_path) if data_path else registry.data_path
        self._min_widget_version = min_widget_version
        self._widgets: dict[tuple[str, str | None], WidgetDefinition | None] = {}
        self._icon_sets: dict[tuple[str | None, str], dict[str, str]] = {}
        self._lock = asyncio.Lock()

    @property
    def data_path(self) -> Path:
        """Return the HomeMap data directory."""

        return self._data_path

    def clear_cache(self) -> None:
        """Forget resolved widgets and icon sets so they reload from disk."""

        self._widgets.clear()
        self._icon_sets.clear()

    def cached_widget(
        self, device_type: str, explicit_ref: str | None = None
    ) -> WidgetDefinition | None:
        """Return a previously resolved widget without touching disk."""

        return self._widgets.get((device_type, explicit_ref or None))

    async def async_resolve(
        self, device_type: str, explicit_ref: str | None = None
    ) -> WidgetDefinition | None:
        """Return the widget definition for ``device_type`` or ``None``."""

        key = (device_type, explicit_ref or None)
        async with self._lock:
            if key in self._widgets:
                return self._widgets[key]
            widget = await self._async_resolve_uncached(device_type, explicit_ref)
            if widget is not None:
                try:
                    ensure_widget_version(
                        widget.widget_version, self._min_widget_version
                    )
                except VersionIncompatible as err:
                    _LOGGER.error("Rejecting widget for %s: %s", device_type, err)
                    widget = None
            self._widgets[key] = widget
            return widget

    async def _async_resolve_uncached(
        self, device_type: str, explicit_ref: str | None
    ) -> WidgetDefinition | None:
        if explicit_ref:
            package_id, _, widget_id = explicit_ref.partition("/")
            if package_id and widget_id and "/" not in widget_id:
                return await self._async_try_load(
                    [self._package_widget_path(package_id, widget_id)], package_id
                )
            _LOGGER.warning("Ignoring malformed widget reference %r", explicit_ref)

        mapping = self._registry.get_mapping(device_type)
        if mapping is not None:
            return await self._async_try_load(
                [self._package_widget_path(mapping.package, mapping.widget)],
                mapping.package,
            )

        built_in = await self._async_try_load(
            [
                self._data_path / "widgets" / "built-in" / f"{device_type}.json",
                self._data_path / "widgets" / f"{device_type}.json",
            ],
            BUILT_IN_PACKAGE,
        )
        if built_in is not None:
            return built_in

        claimants = self._registry.packages_for_device_type(device_type)
        if len(claimants) > 1:
            _LOGGER.debug(
                "Packages %s all claim %s; using the lowest package id",
                [manifest.id for manifest in claimants],
                device_type,
            )
        for manifest in claimants:
            for widget_id in manifest.provides.widgets:
                widget = await self._async_try_load(
                    [self._package_widget_path(manifest.id, widget_id)], manifest.id
                )
                if widget is not None and widget.type == device_type:
                    return widget

        _LOGGER.debug("No widget definition found for %s", device_type)
        return None

    def _package_widget_path(self, package_id: str, widget_id: str) -> Path:
        return self._data_path / "widgets" / "packages" / package_id / f"{widget_id}.json"

    async def _async_try_load(
        self, candidates: list[Path], package_id: str
    ) -> WidgetDefinition | None:
        """Load the first existing candidate file, logging decode failures."""

        try:
            return await self._async_load_widget(candidates, package_id)
        except ResolutionMiss:
            return None
        except ProtocolDecodeError as err:
            _LOGGER.error("%s", err)
            return None

    async def _async_load_widget(
        self, candidates: list[Path], package_id: str
    ) -> WidgetDefinition:
        def _read() -> tuple[Path, str] | None:
            for candidate in candidates:
                if candidate.is_file():
                    return candidate, candidate.read_text(encoding="utf-8")
            return None

        found = await asyncio.to_thread(_read)
        if found is None:
            msg = f"No widget file among {[str(path) for path in candidates]}"
            raise ResolutionMiss(msg)
        path, text = found
        try:
            payload = json.loads(text)
            if not isinstance(payload, dict):
                msg = f"Widget file {path} does not contain an object"
                raise ProtocolDecodeError(msg)
            payload["_package"] = package_id
            return WidgetDefinition.model_validate(payload)
        except (json.JSONDecodeError, ValidationError) as err:
            msg = f"Invalid widget file {path}: {err}"
            raise ProtocolDecodeError(msg) from err

    async def async_load_icon_set(
        self, name: str, package_id: str | None = None
    ) -> dict[str, str]:
        """Return ``{icon name: relative path}`` for an icon set.

        A missing icon set yields an empty mapping. Built-in sets fall back to
        the root icon directory and root sets fall back to the built-in one.
        """

        if not name:
            return {}
        set_name, set_package = normalize_icon_set_ref(name, package_id)
        key = (set_package, set_name)
        cached = self._icon_sets.get(key)
        if cached is not None:
            return cached
        icons = await asyncio.to_thread(self._scan_icon_set, set_name, set_package)
        if not icons:
            _LOGGER.warning(
                "Icon set %s not found (package %s)", set_name, set_package or "-"
            )
            return {}
        self._icon_sets[key] = icons
        return icons

    def _icon_set_candidates(self, name: str, package_id: str | None) -> list[str]:
        if package_id == BUILT_IN_PACKAGE:
            return [f"{_BUILT_IN_PREFIX}{name}", f"{_ROOT_PREFIX}{name}"]
        if package_id:
            return [f"{_PACKAGES_PREFIX}{package_id}/{name}"]
        return [f"{_ROOT_PREFIX}{name}", f"{_BUILT_IN_PREFIX}{name}"]

    def _scan_icon_set(self, name: str, package_id: str | None) -> dict[str, str]:
        for relative in self._icon_set_candidates(name, package_id):
            directory = self._data_path / relative
            if not directory.is_dir():
                continue
            icons = {
                entry.stem: f"{relative}/{entry.name}"
                for entry in sorted(directory.iterdir())
                if entry.is_file() and entry.suffix.lower() in ICON_EXTENSIONS
            }
            if icons:
                return icons
        return {}

    async def async_discover_icon_sets(self) -> list[IconSetInfo]:
        """List the built-in, package and root-level icon sets on disk."""

        return await asyncio.to_thread(self._discover_icon_sets)

    def _discover_icon_sets(self) -> list[IconSetInfo]:
        icons_root = self._data_path / "icons"
        found: list[IconSetInfo] = []

        built_in = icons_root / "built-in"
        for directory in _subdirectories(built_in):
            found.append(
                IconSetInfo(
                    name=directory.name,
                    location="built-in",
                    path=f"{_BUILT_IN_PREFIX}{directory.name}",
                    package_id=BUILT_IN_PACKAGE,
                )
            )

        for directory in _subdirectories(icons_root):
            if directory.name in ("built-in", "packages"):
                continue
            found.append(
                IconSetInfo(
                    name=directory.name,
                    location="user",
                    path=f"{_ROOT_PREFIX}{directory.name}",
                    package_id=None,
                )
            )

        for package_dir in _subdirectories(icons_root / "packages"):
            for directory in _subdirectories(package_dir):
                found.append(
                    IconSetInfo(
                        name=directory.name,
                        location=f"package: {package_dir.name}",
                        path=f"{_PACKAGES_PREFIX}{package_dir.name}/{directory.name}",
                        package_id=package_dir.name,
                    )
                )

        _LOGGER.debug("Discovered %d icon sets", len(found))
        return found


def _subdirectories(path: Path) -> list[Path]:
    if not path.is_dir():
        return []
    return sorted(entry for entry in path.iterdir() if entry.is_dir())
