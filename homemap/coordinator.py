"""Composition root wiring controller, widgets, events and peripherals."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from .api import ControllerClient
from .config import HomeMapSettings
from .const import APP_VERSION, MIN_WIDGET_VERSION
from .devices import Device
from .errors import AuthenticationError, HomeMapError, ProtocolDecodeError
from .events import EventDispatcher, widget_key
from .remote.manager import Notifier, RemoteWidgetManager, log_notification
from .remote.server import PeripheralServer
from .render import DeviceRenderer, RenderSurface, RenderTarget
from .storage import async_read_json, async_write_json
from .widgets.models import WidgetDefinition
from .widgets.packages import PackageRegistry
from .widgets.resolver import WidgetResolver

_LOGGER = logging.getLogger(__name__)

FLOOR_PLAN_FILE = "config.json"


class HomeMapCoordinator:
    """Own the device set and every engine acting on it."""

    def __init__(
        self,
        settings: HomeMapSettings,
        *,
        client: ControllerClient | None = None,
        server: PeripheralServer | None = None,
        notifier: Notifier | None = None,
        min_widget_version: str = MIN_WIDGET_VERSION,
    ) -> None:
        """Build every collaborator from ``settings``."""

        self.settings = settings
        self._notify = notifier or log_notification
        self.client = client or ControllerClient(settings.controller)
        self.registry = PackageRegistry(settings.data_path)
        self.resolver = WidgetResolver(
            self.registry, settings.data_path, min_widget_version=min_widget_version
        )
        self.renderer = DeviceRenderer(self.resolver, self.client)
        self.dispatcher = EventDispatcher(
            self.client,
            self.renderer,
            target_lookup=self.target_for,
            on_auth_failure=self._handle_auth_failure,
        )
        self.server = server or PeripheralServer()
        self.remote = RemoteWidgetManager(
            self.resolver, transport=self.server, notifier=self._notify
        )
        self.server.attach_handler(self.remote)

        self.devices: dict[str, Device] = {}
        self.floors: list[dict[str, Any]] = []
        self.widgets: dict[str, WidgetDefinition] = {}
        self.active_floor: str | None = None
        self._targets: dict[str, RenderTarget] = {}
        self._floor_plan: dict[str, Any] = {}

    @property
    def floor_plan_path(self) -> Path:
        """Return the location of the floor-plan document."""

        return self.settings.data_path / FLOOR_PLAN_FILE

    # Setup

    async def async_setup(self) -> None:
        """Load data, resolve widgets and restore saved remote placements."""

        _LOGGER.info("HomeMap %s using data in %s", APP_VERSION, self.settings.data_path)
        await self.registry.async_load()
        try:
            document = await async_read_json(self.floor_plan_path)
        except json.JSONDecodeError as err:
            _LOGGER.error("Ignoring unreadable floor plan %s: %s", self.floor_plan_path, err)
            document = None
        self._floor_plan = document if isinstance(document, dict) else {}
        self.floors = list(self._floor_plan.get("floors") or [])
        self.load_devices(self._floor_plan.get("devices") or [])
        await self.async_resolve_widgets()
        self.rebuild_dispatch_table()

        await self.remote.async_load(self._floor_plan.get("remoteWidgets"))
        await self.remote.async_restore_all_saved_widgets()

        websocket = self.settings.websocket
        if websocket.enabled and websocket.auto_start:
            await self.remote.async_start_server(websocket.port, websocket.bind_address)

        if self.active_floor is None and self.floors:
            await self.async_show_floor(str(self.floors[0].get("id")))

    def load_devices(self, entries: Iterable[Mapping[str, Any]]) -> None:
        """Replace the device set with ``entries`` from the floor-plan document."""

        devices: dict[str, Device] = {}
        for entry in entries:
            try:
                device = Device.from_dict(entry)
            except ProtocolDecodeError as err:
                _LOGGER.warning("Skipping device entry: %s", err)
                continue
            devices[str(device.id)] = device
        self.devices = devices
        self._targets.clear()
        _LOGGER.info("Loaded %d devices", len(devices))

    async def async_resolve_widgets(self) -> dict[str, WidgetDefinition]:
        """Resolve the widget of every device type in use."""

        widgets: dict[str, WidgetDefinition] = {}
        for device in self.devices.values():
            key = widget_key(device)
            if key in widgets:
                continue
            widget = await self.resolver.async_resolve(device.type, device.widget)
            if widget is None:
                _LOGGER.warning("No widget for device %s (%s)", device.id, device.type)
                continue
            widgets[key] = widget
        self.widgets = widgets
        return widgets

    async def async_save_floor_plan(self) -> None:
        """Write devices and remote placements back to the floor-plan document."""

        document = dict(self._floor_plan)
        document["floors"] = self.floors
        document["devices"] = [device.to_dict() for device in self.devices.values()]
        document["remoteWidgets"] = [record.to_dict() for record in self.remote.placements]
        self._floor_plan = document
        await async_write_json(self.floor_plan_path, document)

    # Queries

    def get_resolved_widget(self, device: Device | str) -> WidgetDefinition | None:
        """Return the widget resolved for a device or device id."""

        if not isinstance(device, Device):
            found = self.devices.get(str(device))
            if found is None:
                return None
            device = found
        return self.widgets.get(widget_key(device))

    def target_for(self, device: Device) -> RenderTarget | None:
        """Return the visible render target of ``device``, if any."""

        if self.active_floor is None or not device.is_on_floor(self.active_floor):
            return None
        return self._targets.get(str(device.id))

    def register_target(self, device_id: str, target: RenderTarget) -> None:
        """Use ``target`` to draw ``device_id`` while its floor is shown."""

        self._targets[str(device_id)] = target

    def rebuild_dispatch_table(self) -> None:
        """Rebuild event routing after devices or widgets changed."""

        self.dispatcher.rebuild(self.devices.values(), self.widgets)

    # Floors

    async def async_show_floor(self, floor_id: str) -> list[Device]:
        """Make ``floor_id`` active and refresh the devices placed on it."""

        self.active_floor = floor_id
        shown: list[Device] = []
        for device in self.devices.values():
            if not device.is_on_floor(floor_id):
                continue
            widget = self.get_resolved_widget(device)
            if widget is None:
                continue
            target = self._targets.setdefault(str(device.id), RenderSurface())
            await self.renderer.async_refresh(device, widget, target)
            shown.append(device)
        _LOGGER.debug("Showing floor %s with %d devices", floor_id, len(shown))
        return shown

    # Actions

    async def async_execute_action(
        self, device_id: str, action_name: str, value: Any = None
    ) -> Any:
        """Run a widget action for a device, notifying on failure."""

        device = self.devices.get(str(device_id))
        widget = self.get_resolved_widget(device) if device else None
        if device is None or widget is None:
            self._notify(f"Unknown device {device_id}", "error")
            return None
        action = widget.actions.get(action_name)
        if action is None:
            self._notify(f"Action {action_name} not defined for {device.name}", "error")
            return None
        try:
            return await self.client.async_execute_action(device.id, action, value)
        except HomeMapError as err:
            _LOGGER.error("Action %s failed for %s: %s", action_name, device.id, err)
            self._notify(f"Action failed: {err}", "error")
            return None

    # Remote widgets

    async def async_place_remote_widget(
        self, connection_id: str, widget_id: str, floor: str, x: float, y: float
    ) -> str:
        """Place a peripheral widget on ``floor``."""

        return await self.remote.async_place_widget(connection_id, widget_id, floor, x, y)

    async def async_remove_instance(self, instance_id: str) -> bool:
        """Remove a placed remote widget instance."""

        return await self.remote.async_remove_instance(instance_id)

    # Polling

    def start_polling(self) -> None:
        """Start following the controller event feed."""

        self.dispatcher.start()

    async def async_stop_polling(self) -> None:
        """Stop the event feed and wait for the loop to exit."""

        self.dispatcher.stop()
        await self.dispatcher.async_wait_stopped()

    def _handle_auth_failure(self, err: AuthenticationError) -> None:
        self._notify(f"Controller rejected credentials: {err}", "error")

    async def async_shutdown(self) -> None:
        """Stop every background activity and release connections."""

        self.dispatcher.stop()
        if self.remote_server_running:
            await self.remote.async_stop_server()
        await self.client.async_close()

    @property
    def remote_server_running(self) -> bool:
        """Return whether the peripheral server is listening."""

        return self.server.is_running
