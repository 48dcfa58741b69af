"""Push peripherals registering widgets over WebSocket."""

from __future__ import annotations

from .manager import RemoteWidgetManager
from .models import PlacementKey, PlacementRecord, RemoteWidget, WidgetInstance
from .server import PeripheralServer

__all__ = [
    "PeripheralServer",
    "PlacementKey",
    "PlacementRecord",
    "RemoteWidget",
    "RemoteWidgetManager",
    "WidgetInstance",
]
