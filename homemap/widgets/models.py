"""Data models for widget definitions and widget packages."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _WidgetModel(BaseModel):
    """Base model accepting the camelCase keys used in widget files."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)


class IconCondition(_WidgetModel):
    """One ``when`` predicate of a conditional icon rule."""

    when: str
    icon: str


class IconRule(_WidgetModel):
    """Select the icon shown for a device."""

    type: Literal["static", "conditional"]
    icon: str | None = None
    property: str | None = None
    conditions: list[IconCondition] = Field(default_factory=list)


class SubtextRule(_WidgetModel):
    """Text rendered below the icon with an optional visibility predicate."""

    template: str
    visible: str | None = None


class RenderRule(_WidgetModel):
    """Rendering instructions of a widget."""

    icon: IconRule | None = None
    subtext: SubtextRule | None = None
    style: dict[str, str] = Field(default_factory=dict)


class Getter(_WidgetModel):
    """Remote read rule populating one state key."""

    api: str
    path: str = ""


class Action(_WidgetModel):
    """Remote write rule invoked from the UI."""

    api: str
    method: str = "GET"
    body: Any = None

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        """Normalise the HTTP method."""

        return value.upper()


class EventRule(_WidgetModel):
    """Map a controller event type onto device state keys."""

    id: str = "data.id"
    updates: dict[str, str] = Field(default_factory=dict)


class WidgetDefinition(_WidgetModel):
    """Describe how a device type is rendered and controlled."""

    type: str | None = None
    name: str | None = None
    widget_version: str | None = Field(default=None, alias="widgetVersion")
    icon_set: str | None = Field(default=None, alias="iconSet")
    icon_package: str | None = Field(default=None, alias="iconPackage")
    state: dict[str, Any] = Field(default_factory=dict)
    render: RenderRule | None = None
    getters: dict[str, Getter] = Field(default_factory=dict)
    actions: dict[str, Action] = Field(default_factory=dict)
    events: dict[str, EventRule] = Field(default_factory=dict)
    ui: Any = None
    package_id: str | None = Field(default=None, alias="_package")

    def default_state(self) -> dict[str, Any]:
        """Return a fresh copy of the declared default state."""

        return dict(self.state)


class PackageProvides(_WidgetModel):
    """Widgets and icon sets shipped by a package."""

    widgets: list[str] = Field(default_factory=list)
    icon_sets: list[str] = Field(default_factory=list, alias="iconSets")


class PackageManifest(_WidgetModel):
    """Manifest of an installed widget package."""

    id: str
    name: str | None = None
    version: str | None = None
    device_types: list[str] = Field(default_factory=list, alias="deviceTypes")
    provides: PackageProvides = Field(default_factory=PackageProvides)


class InstalledPackage(_WidgetModel):
    """Registry entry for one installed package."""

    version: str | None = None
    installed_at: str | None = Field(default=None, alias="installedAt")
    installed_from: str | None = Field(default=None, alias="installedFrom")
    manifest: PackageManifest
    files: list[str] = Field(default_factory=list)


class InstalledPackages(BaseModel):
    """Contents of ``installed-packages.json``."""

    model_config = ConfigDict(extra="allow")

    version: str = "1.0"
    packages: dict[str, InstalledPackage] = Field(default_factory=dict)


class WidgetMapping(BaseModel):
    """Explicit device type to package widget mapping."""

    package: str
    widget: str


class WidgetMappings(BaseModel):
    """Contents of ``widget-mappings.json``."""

    model_config = ConfigDict(extra="allow")

    version: str = "1.0"
    mappings: dict[str, WidgetMapping] = Field(default_factory=dict)
    defaults: dict[str, Any] = Field(default_factory=dict)
