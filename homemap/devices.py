"""Placed device records and their floor placements."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import ProtocolDecodeError

_LOGGER = logging.getLogger(__name__)

DEFAULT_POSITION = (500.0, 300.0)


@dataclass(slots=True)
class FloorPlacement:
    """Position of a device on one floor plan."""

    floor_id: str
    x: float
    y: float

    @classmethod
    def from_dict(cls, floor_id: str, position: Mapping[str, Any] | None) -> FloorPlacement:
        """Build a placement from a ``{"x", "y"}`` position record."""

        position = position or {}
        return cls(
            floor_id=str(floor_id),
            x=float(position.get("x", DEFAULT_POSITION[0])),
            y=float(position.get("y", DEFAULT_POSITION[1])),
        )

    def position_dict(self) -> dict[str, float]:
        """Return the position as a serialisable mapping."""

        return {"x": self.x, "y": self.y}


@dataclass(slots=True)
class Device:
    """A controller device placed on one or more floors."""

    id: int | str
    name: str
    type: str
    widget: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    state: dict[str, Any] | None = None
    floors: list[FloorPlacement] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Device:
        """Create a device from a floor-plan document entry.

        Both the multi-floor ``floors`` list and the legacy ``floor_id`` plus
        ``position`` fields are accepted.
        """

        if "id" not in payload or "type" not in payload:
            msg = f"Device entry requires 'id' and 'type': {dict(payload)!r}"
            raise ProtocolDecodeError(msg)
        floors: list[FloorPlacement] = []
        if isinstance(payload.get("floors"), list):
            for entry in payload["floors"]:
                if isinstance(entry, Mapping) and entry.get("floor_id") is not None:
                    floors.append(
                        FloorPlacement.from_dict(entry["floor_id"], entry.get("position"))
                    )
        elif payload.get("floor_id") is not None:
            floors.append(
                FloorPlacement.from_dict(payload["floor_id"], payload.get("position"))
            )
        state = payload.get("state")
        return cls(
            id=payload["id"],
            name=str(payload.get("name", payload["id"])),
            type=str(payload["type"]),
            widget=payload.get("widget"),
            params=dict(payload.get("params") or {}),
            state=dict(state) if isinstance(state, Mapping) else None,
            floors=floors,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise the device, collapsing a single floor to the legacy fields."""

        payload: dict[str, Any] = {"id": self.id, "name": self.name, "type": self.type}
        if self.widget:
            payload["widget"] = self.widget
        if self.params:
            payload["params"] = dict(self.params)
        if len(self.floors) == 1:
            payload["floor_id"] = self.floors[0].floor_id
            payload["position"] = self.floors[0].position_dict()
        elif self.floors:
            payload["floors"] = [
                {"floor_id": placement.floor_id, "position": placement.position_dict()}
                for placement in self.floors
            ]
        return payload

    @property
    def floor_ids(self) -> list[str]:
        """Return the floors this device is placed on."""

        return [placement.floor_id for placement in self.floors]

    def is_on_floor(self, floor_id: str) -> bool:
        """Return whether the device is placed on ``floor_id``."""

        return any(placement.floor_id == floor_id for placement in self.floors)

    def placement(self, floor_id: str) -> FloorPlacement | None:
        """Return the placement on ``floor_id`` if any."""

        for placement in self.floors:
            if placement.floor_id == floor_id:
                return placement
        return None

    def move(self, floor_id: str, x: float, y: float) -> None:
        """Update the position on a floor the device is already placed on."""

        placement = self.placement(floor_id)
        if placement is None:
            _LOGGER.warning("Device %s is not placed on floor %s", self.id, floor_id)
            return
        placement.x = x
        placement.y = y

    def add_to_floor(
        self,
        floor_id: str,
        x: float = DEFAULT_POSITION[0],
        y: float = DEFAULT_POSITION[1],
    ) -> None:
        """Place the device on another floor, keeping existing placements."""

        if self.is_on_floor(floor_id):
            return
        self.floors.append(FloorPlacement(floor_id=floor_id, x=x, y=y))

    def remove_from_floor(self, floor_id: str) -> None:
        """Remove the placement on ``floor_id``."""

        self.floors = [
            placement for placement in self.floors if placement.floor_id != floor_id
        ]
