"""Models for peripheral registrations, messages and widget instances."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..const import POSITION_TOLERANCE
from ..render import RenderSurface


def _as_text(value: Any) -> Any:
    """Coerce numeric identifiers to strings."""

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value)) if float(value).is_integer() else str(value)
    return value


class RemoteWidget(BaseModel):
    """Widget offered by a peripheral in its registration."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    id: str
    name: str | None = None
    label: str | None = None
    icon_set: str | None = Field(default=None, alias="iconSet")
    icon_package: str | None = Field(default=None, alias="iconPackage")
    ui: Any = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        """Accept numeric widget ids."""

        return _as_text(value)

    @property
    def display_name(self) -> str:
        """Return the label, falling back to the name and id."""

        return self.label or self.name or self.id


class RegisterWidgetsMessage(BaseModel):
    """``register-widgets`` message sent by a peripheral."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    peripheral_id: str = Field(validation_alias=AliasChoices("peripheralId", "qaId"))
    peripheral_name: str | None = Field(
        default=None, validation_alias=AliasChoices("peripheralName", "qaName")
    )
    widgets: list[RemoteWidget]

    @field_validator("peripheral_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        """Accept numeric peripheral ids."""

        return _as_text(value)


class WidgetChanges(BaseModel):
    """Partial visual update carried by ``widget-update``."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    icon_set: str | None = Field(default=None, alias="iconSet")
    label: str | None = None
    color: str | None = None
    background_color: str | None = Field(default=None, alias="backgroundColor")
    state: dict[str, Any] | None = None
    style: dict[str, str] | None = None


class WidgetUpdateMessage(BaseModel):
    """``widget-update`` message sent by a peripheral."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    widget_id: str = Field(alias="widgetId")
    changes: WidgetChanges

    @field_validator("widget_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        """Accept numeric widget ids."""

        return _as_text(value)


class UnregisterWidgetsMessage(BaseModel):
    """``unregister-widgets`` message sent by a peripheral."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    peripheral_id: str | None = Field(
        default=None, validation_alias=AliasChoices("peripheralId", "qaId")
    )

    @field_validator("peripheral_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        """Accept numeric peripheral ids."""

        return _as_text(value)


class PlacementRecord(BaseModel):
    """Persisted placement of a remote widget instance."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    peripheral_id: str = Field(
        validation_alias=AliasChoices("peripheralId", "qaId"),
        serialization_alias="peripheralId",
    )
    widget_id: str = Field(
        validation_alias=AliasChoices("widgetId", "widget_id"),
        serialization_alias="widgetId",
    )
    floor: str
    x: float
    y: float
    parameters: dict[str, Any] = Field(default_factory=dict)
    custom_label: str | None = Field(
        default=None,
        validation_alias=AliasChoices("customLabel", "custom_label"),
        serialization_alias="customLabel",
    )
    custom_icon_set: str | None = Field(
        default=None,
        validation_alias=AliasChoices("customIconSet", "custom_icon_set"),
        serialization_alias="customIconSet",
    )
    custom_icon_package: str | None = Field(
        default=None,
        validation_alias=AliasChoices("customIconPackage", "custom_icon_package"),
        serialization_alias="customIconPackage",
    )

    @field_validator("peripheral_id", "widget_id", "floor", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> Any:
        """Accept numeric identifiers."""

        return _as_text(value)

    @property
    def key(self) -> PlacementKey:
        """Return the stable placement key of the record."""

        return PlacementKey(self.peripheral_id, self.widget_id, self.floor, self.x, self.y)

    def to_dict(self) -> dict[str, Any]:
        """Serialise without unset optional overrides."""

        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass(frozen=True, slots=True)
class PlacementKey:
    """Identity of a placement that survives restarts and reconnects."""

    peripheral_id: str
    widget_id: str
    floor: str
    x: float
    y: float

    @property
    def bucket(self) -> tuple[str, str, str]:
        """Return the exact-match part of the key used for indexing."""

        return (self.peripheral_id, self.widget_id, self.floor)

    def matches(self, other: PlacementKey, tolerance: float = POSITION_TOLERANCE) -> bool:
        """Return whether ``other`` denotes the same placement."""

        return (
            self.bucket == other.bucket
            and abs(self.x - other.x) < tolerance
            and abs(self.y - other.y) < tolerance
        )


@dataclass(slots=True)
class RemoteClient:
    """A registered peripheral connection."""

    connection_id: str
    peripheral_id: str
    peripheral_name: str
    widgets: list[RemoteWidget] = field(default_factory=list)

    def widget(self, widget_id: str) -> RemoteWidget | None:
        """Return the offered widget with ``widget_id``."""

        for widget in self.widgets:
            if widget.id == widget_id:
                return widget
        return None

    @property
    def widget_ids(self) -> set[str]:
        """Return the ids of every offered widget."""

        return {widget.id for widget in self.widgets}


@dataclass(slots=True)
class WidgetInstance:
    """A remote widget placed on a floor."""

    instance_id: str
    peripheral_id: str
    widget: RemoteWidget
    connection_id: str | None
    floor: str
    x: float
    y: float
    parameters: dict[str, Any] = field(default_factory=dict)
    custom_label: str | None = None
    custom_icon_set: str | None = None
    custom_icon_package: str | None = None
    label: str | None = None
    icon_set: str | None = None
    color: str | None = None
    background_color: str | None = None
    style: dict[str, str] = field(default_factory=dict)
    state: dict[str, Any] = field(default_factory=dict)
    disconnected: bool = False
    placeholder: bool = False
    surface: RenderSurface = field(default_factory=RenderSurface)

    @property
    def key(self) -> PlacementKey:
        """Return the stable placement key of the instance."""

        return PlacementKey(self.peripheral_id, self.widget.id, self.floor, self.x, self.y)

    @property
    def display_label(self) -> str:
        """Return the label currently shown for the instance."""

        return self.custom_label or self.label or self.widget.display_name

    def to_record(self) -> PlacementRecord:
        """Return the persisted form of the instance."""

        return PlacementRecord(
            peripheral_id=self.peripheral_id,
            widget_id=self.widget.id,
            floor=self.floor,
            x=self.x,
            y=self.y,
            parameters=dict(self.parameters),
            custom_label=self.custom_label or None,
            custom_icon_set=self.custom_icon_set or None,
            custom_icon_package=self.custom_icon_package or None,
        )
