"""Installed widget package and device type mapping registry."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from ..const import INSTALLED_PACKAGES_FILE, WIDGET_MAPPINGS_FILE
from ..errors import ProtocolDecodeError
from ..storage import async_read_json, async_write_json
from .models import (
    InstalledPackages,
    PackageManifest,
    WidgetMapping,
    WidgetMappings,
)

_LOGGER = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=BaseModel)


class PackageRegistry:
    """Read installed packages and maintain device type mappings."""

    def __init__(self, data_path: Path | str) -> None:
        """Bind the registry to the HomeMap data directory."""

        self._data_path = Path(data_path)
        self._packages = InstalledPackages()
        self._mappings = WidgetMappings()

    @property
    def data_path(self) -> Path:
        """Return the HomeMap data directory."""

        return self._data_path

    async def async_load(self) -> None:
        """Load both registry files, creating empty ones when missing."""

        self._packages = await self._async_load_file(
            INSTALLED_PACKAGES_FILE, InstalledPackages
        )
        self._mappings = await self._async_load_file(
            WIDGET_MAPPINGS_FILE, WidgetMappings
        )
        _LOGGER.info(
            "Loaded %d installed packages and %d widget mappings",
            len(self._packages.packages),
            len(self._mappings.mappings),
        )

    async def _async_load_file(self, name: str, model: type[_ModelT]) -> _ModelT:
        """Validate one registry file, falling back to an empty document."""

        path = self._data_path / name
        try:
            payload = await async_read_json(path)
        except json.JSONDecodeError as err:
            _LOGGER.error("Ignoring unreadable registry file %s: %s", path, err)
            return model()
        if payload is None:
            document = model()
            await async_write_json(path, document.model_dump(by_alias=True))
            return document
        try:
            return model.model_validate(payload)
        except ValidationError as err:
            _LOGGER.error("Ignoring invalid registry file %s: %s", path, err)
            return model()

    def list_packages(self) -> list[PackageManifest]:
        """Return installed package manifests ordered by package id."""

        return [
            self._packages.packages[package_id].manifest
            for package_id in sorted(self._packages.packages)
        ]

    def packages_for_device_type(self, device_type: str) -> list[PackageManifest]:
        """Return manifests claiming ``device_type``, lowest package id first."""

        return [
            manifest
            for manifest in self.list_packages()
            if device_type in manifest.device_types
        ]

    def find_installed_widget(self, widget_id: str) -> str | None:
        """Return the id of the package providing ``widget_id``."""

        for manifest in self.list_packages():
            if widget_id in manifest.provides.widgets:
                return manifest.id
        return None

    def find_installed_icon_set(self, icon_set: str) -> str | None:
        """Return the id of the package providing ``icon_set``."""

        for manifest in self.list_packages():
            if icon_set in manifest.provides.icon_sets:
                return manifest.id
        return None

    def get_mapping(self, device_type: str) -> WidgetMapping | None:
        """Return the explicit mapping for ``device_type``."""

        return self._mappings.mappings.get(device_type)

    async def async_set_mapping(
        self, device_type: str, package_id: str, widget_id: str
    ) -> None:
        """Map ``device_type`` onto a package widget and persist the table."""

        if not device_type or not package_id or not widget_id:
            msg = "Device type, package and widget are required"
            raise ProtocolDecodeError(msg)
        self._mappings.mappings[device_type] = WidgetMapping(
            package=package_id, widget=widget_id
        )
        await self._async_save_mappings()

    async def async_remove_mapping(self, device_type: str) -> None:
        """Drop the mapping for ``device_type`` and persist the table."""

        if self._mappings.mappings.pop(device_type, None) is None:
            return
        await self._async_save_mappings()

    async def _async_save_mappings(self) -> None:
        await async_write_json(
            self._data_path / WIDGET_MAPPINGS_FILE,
            self._mappings.model_dump(by_alias=True),
        )
